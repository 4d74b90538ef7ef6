from __future__ import annotations

from httpx import AsyncClient

from tests.conftest import FakeGraphAPI


async def _send(client: AsyncClient, name: str, event_id: str, product_id: str) -> None:
    await client.post(
        "/api/v1/events/track",
        json={"eventName": name, "eventId": event_id, "eventData": {"product_id": product_id}},
    )


async def test_top_viewed_products_count_delivered_view_content(
    client: AsyncClient, admin_headers: dict, graph_api: FakeGraphAPI
) -> None:
    await _send(client, "ViewContent", "view-1", "w-1")
    await _send(client, "ViewContent", "view-2", "w-1")
    await _send(client, "ViewContent", "view-3", "w-2")
    await _send(client, "ViewContent", "view-1", "w-1")  # duplicate, not counted
    await _send(client, "AddToCart", "cart-1", "w-2")

    response = await client.get("/api/v1/admin/analytics/top_viewed_products", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == [{"product_id": "w-1", "views": 2}, {"product_id": "w-2", "views": 1}]


async def test_events_summary_splits_outcomes(
    client: AsyncClient, admin_headers: dict, graph_api: FakeGraphAPI
) -> None:
    graph_api.failing_event_ids.add("cart-down")
    await _send(client, "ViewContent", "view-1", "w-1")
    await _send(client, "ViewContent", "view-2", "w-1")
    await _send(client, "ViewContent", "view-1", "w-1")
    await _send(client, "AddToCart", "cart-down", "w-1")

    response = await client.get("/api/v1/admin/analytics/events?days=1", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["days"] == 1
    assert body["events"] == [
        {"eventName": "ViewContent", "total": 3, "successful": 2, "duplicates": 1, "failed": 0},
        {"eventName": "AddToCart", "total": 1, "successful": 0, "duplicates": 0, "failed": 1},
    ]


async def test_admin_analytics_requires_key(client: AsyncClient, admin_headers: dict) -> None:
    assert (await client.get("/api/v1/admin/analytics/events")).status_code == 403
