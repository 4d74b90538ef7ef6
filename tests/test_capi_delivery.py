from __future__ import annotations

import asyncio

import httpx
import pytest

from tests.conftest import ACCESS_TOKEN, PIXEL_ID, FakeClock, FakeGraphAPI, RecordingSleep
from tracking.services.dedup import EventDeduplicator
from tracking.services.meta_capi import DUPLICATE_EVENT_ERROR, MetaCAPIService
from tracking.services.retry_queue import RetryQueue
from tracking.utils.request_context import RequestContext


async def test_same_event_id_is_delivered_once(capi_service: MetaCAPIService, graph_api: FakeGraphAPI) -> None:
    first = await capi_service.track_event("AddToCart", {"product_id": "w-1", "price": 4200}, "evt-1")
    second = await capi_service.track_event("AddToCart", {"product_id": "w-1", "price": 4200}, "evt-1")

    assert first.success is True
    assert first.data == {"events_received": 1, "fbtrace_id": "AbCdEf"}
    assert second.success is False
    assert second.error == DUPLICATE_EVENT_ERROR
    assert len(graph_api.requests) == 1


async def test_concurrent_sends_of_one_event_id_deliver_once(
    capi_service: MetaCAPIService, graph_api: FakeGraphAPI
) -> None:
    results = await asyncio.gather(
        *(capi_service.track_event("Purchase", {"total_value": 99}, "evt-race") for _ in range(5))
    )

    assert sum(r.success for r in results) == 1
    assert sum(r.error == DUPLICATE_EVENT_ERROR for r in results) == 4
    assert graph_api.event_ids() == ["evt-race"]


async def test_expired_event_id_is_delivered_again(graph_api: FakeGraphAPI, sleeps: RecordingSleep) -> None:
    clock = FakeClock()
    service = MetaCAPIService(
        access_token=ACCESS_TOKEN,
        pixel_id=PIXEL_ID,
        deduplicator=EventDeduplicator(ttl_seconds=24 * 60 * 60, clock=clock),
        transport=httpx.MockTransport(graph_api),
        sleep=sleeps,
    )
    try:
        assert (await service.track_event("Lead", {"type": "whatsapp"}, "evt-1")).success
        clock.advance(24 * 60 * 60 + 1)
        assert (await service.track_event("Lead", {"type": "whatsapp"}, "evt-1")).success
    finally:
        await service.close_client()

    assert graph_api.event_ids() == ["evt-1", "evt-1"]


async def test_exhausted_retries_queue_the_event(
    capi_service: MetaCAPIService, graph_api: FakeGraphAPI, sleeps: RecordingSleep
) -> None:
    graph_api.failing_event_ids.add("evt-fail")

    result = await capi_service.track_event("Purchase", {"order_id": "ORD-9", "total_value": 150}, "evt-fail")

    assert result.success is False
    assert result.error == "Service temporarily unavailable"
    # one initial attempt plus max_retries retries, each retry waiting twice as long
    assert len(sleeps.delays) == capi_service.max_retries
    assert sleeps.delays == [1.0, 2.0, 4.0]
    assert len(graph_api.requests) == capi_service.max_retries + 1
    assert [e.event_id for e in capi_service.retry_queue.snapshot()] == ["evt-fail"]
    assert not capi_service.deduplicator.is_duplicate("evt-fail")


async def test_failed_event_id_is_not_blocked_for_a_later_send(
    capi_service: MetaCAPIService, graph_api: FakeGraphAPI
) -> None:
    graph_api.statuses = [500, 500, 500, 500]
    assert not (await capi_service.track_event("Lead", {}, "evt-2")).success

    result = await capi_service.track_event("Lead", {}, "evt-2")

    assert result.success is True
    assert capi_service.deduplicator.is_duplicate("evt-2")


async def test_recovers_within_retry_budget(
    capi_service: MetaCAPIService, graph_api: FakeGraphAPI, sleeps: RecordingSleep
) -> None:
    graph_api.statuses = [503, 500]

    result = await capi_service.track_event("ViewContent", {"product_id": "w-3"}, "evt-3")

    assert result.success is True
    assert sleeps.delays == [1.0, 2.0]
    assert len(capi_service.retry_queue) == 0


async def test_network_errors_are_retried_then_queued(sleeps: RecordingSleep) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    service = MetaCAPIService(
        access_token=ACCESS_TOKEN,
        pixel_id=PIXEL_ID,
        max_retries=2,
        retry_delay=0.5,
        transport=httpx.MockTransport(refuse),
        sleep=sleeps,
    )
    try:
        result = await service.track_event("PageView", {}, "evt-net")
    finally:
        await service.close_client()

    assert result.success is False
    assert "Network error" in result.error
    assert sleeps.delays == [0.5, 1.0]
    assert len(service.retry_queue) == 1


async def test_drain_keeps_only_events_that_fail_again(
    capi_service: MetaCAPIService, graph_api: FakeGraphAPI
) -> None:
    graph_api.failing_event_ids.update({"evt-a", "evt-b"})
    await capi_service.track_event("AddToCart", {"product_id": "w-1"}, "evt-a")
    await capi_service.track_event("AddToCart", {"product_id": "w-2"}, "evt-b")
    assert len(capi_service.retry_queue) == 2

    graph_api.failing_event_ids.discard("evt-a")
    drained = await capi_service.retry_queued_events()

    assert drained.processed == 1
    assert drained.failed == 1
    assert drained.remaining == 1
    remaining = capi_service.retry_queue.snapshot()
    assert [e.event_id for e in remaining] == ["evt-b"]
    assert remaining[0].attempts == 2
    assert capi_service.deduplicator.is_duplicate("evt-a")


async def test_drain_drops_events_delivered_in_the_meantime(
    capi_service: MetaCAPIService, graph_api: FakeGraphAPI
) -> None:
    graph_api.failing_event_ids.add("evt-x")
    await capi_service.track_event("Lead", {}, "evt-x")
    graph_api.failing_event_ids.clear()
    assert (await capi_service.track_event("Lead", {}, "evt-x")).success
    requests_before = len(graph_api.requests)

    drained = await capi_service.retry_queued_events()

    assert drained.processed == 1
    assert drained.remaining == 0
    assert len(graph_api.requests) == requests_before


async def test_missing_input_and_credentials_are_not_queued(graph_api: FakeGraphAPI) -> None:
    unconfigured = MetaCAPIService(access_token=None, pixel_id=None, transport=httpx.MockTransport(graph_api))
    try:
        assert not (await unconfigured.track_event("Lead", {}, "evt-1")).success
        assert len(unconfigured.retry_queue) == 0
    finally:
        await unconfigured.close_client()

    assert graph_api.requests == []


async def test_payload_carries_credentials_and_enriched_event(
    graph_api: FakeGraphAPI, sleeps: RecordingSleep
) -> None:
    service = MetaCAPIService(
        access_token=ACCESS_TOKEN,
        pixel_id=PIXEL_ID,
        test_event_code="TEST123",
        transport=httpx.MockTransport(graph_api),
        sleep=sleeps,
    )
    context = RequestContext(user_agent="UA/1.0", forwarded_for="203.0.113.9", referer="https://shop.test/checkout")
    try:
        await service.track_event("InitiateCheckout", {"email": "a@b.co", "total_value": 10}, "evt-p", context)
    finally:
        await service.close_client()

    body = graph_api.requests[0]
    assert body["access_token"] == ACCESS_TOKEN
    assert body["test_event_code"] == "TEST123"
    event = body["data"][0]
    assert event["event_name"] == "InitiateCheckout"
    assert event["event_source_url"] == "https://shop.test/checkout"
    assert event["user_data"]["client_ip_address"] == "203.0.113.9"
    assert event["user_data"]["ua"] == "UA/1.0"
    assert "a@b.co" not in str(body)
    assert event["custom_data"] == {"value": "10.00", "currency": "USD"}
    assert service.endpoint == f"https://graph.facebook.com/v18.0/{PIXEL_ID}/events"


async def test_injected_stores_are_kept(graph_api: FakeGraphAPI, sleeps: RecordingSleep) -> None:
    deduplicator = EventDeduplicator(ttl_seconds=5)
    retry_queue = RetryQueue(max_size=3)
    service = MetaCAPIService(
        access_token=ACCESS_TOKEN,
        pixel_id=PIXEL_ID,
        deduplicator=deduplicator,
        retry_queue=retry_queue,
        transport=httpx.MockTransport(graph_api),
        sleep=sleeps,
    )
    try:
        assert service.deduplicator is deduplicator
        assert service.retry_queue is retry_queue
        assert (await service.track_event("Lead", {}, "evt-1")).success
    finally:
        await service.close_client()

    assert "evt-1" in deduplicator


async def test_payload_build_error_is_a_failure_and_frees_the_event_id(
    capi_service: MetaCAPIService, graph_api: FakeGraphAPI, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_build_event(*args, **kwargs):
        raise ValueError("bad event data")

    monkeypatch.setattr("tracking.services.meta_capi.build_event", broken_build_event)
    result = await capi_service.track_event("Purchase", {"order_id": "ORD-1"}, "evt-bad")

    assert result.success is False
    assert result.error == "bad event data"
    assert graph_api.requests == []

    monkeypatch.undo()
    assert (await capi_service.track_event("Purchase", {"order_id": "ORD-1"}, "evt-bad")).success


async def test_non_list_items_do_not_break_delivery(capi_service: MetaCAPIService, graph_api: FakeGraphAPI) -> None:
    result = await capi_service.track_event("Purchase", {"items": 5, "total_value": 10}, "evt-items")

    assert result.success is True
    assert graph_api.requests[0]["data"][0]["custom_data"] == {"value": "10.00", "currency": "USD"}


class CancellingSleep:
    def __init__(self) -> None:
        self.cancel = False

    async def __call__(self, delay: float) -> None:
        if self.cancel:
            raise asyncio.CancelledError()


async def test_cancelled_drain_keeps_unprocessed_events(graph_api: FakeGraphAPI) -> None:
    sleep = CancellingSleep()
    service = MetaCAPIService(
        access_token=ACCESS_TOKEN,
        pixel_id=PIXEL_ID,
        max_retries=1,
        transport=httpx.MockTransport(graph_api),
        sleep=sleep,
    )
    graph_api.failing_event_ids.update({"evt-a", "evt-b"})
    try:
        await service.track_event("Lead", {}, "evt-a")
        await service.track_event("Lead", {}, "evt-b")

        sleep.cancel = True
        with pytest.raises(asyncio.CancelledError):
            await service.retry_queued_events()
    finally:
        await service.close_client()

    assert [e.event_id for e in service.retry_queue.snapshot()] == ["evt-a", "evt-b"]
    assert service.deduplicator.reserve("evt-a")
