from __future__ import annotations

import json
from collections.abc import AsyncGenerator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tracking.core.config import settings
from tracking.core.db import get_db, get_session_factory
from tracking.main import app
from tracking.models.analytics import Base
from tracking.services.meta_capi import MetaCAPIService

ADMIN_KEY = "test-admin-key"
PIXEL_ID = "1234567890"
ACCESS_TOKEN = "test-access-token"


class FakeGraphAPI:
    """Stands in for graph.facebook.com: records every payload, answers from a script."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.statuses: list[int] = []  # consumed one per request, 200 once empty
        self.failing_event_ids: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        event_id = body["data"][0]["event_id"]
        status = 500 if event_id in self.failing_event_ids else (self.statuses.pop(0) if self.statuses else 200)
        if status >= 400:
            return httpx.Response(status, json={"error": {"message": "Service temporarily unavailable", "code": 2}})
        return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "AbCdEf"})

    def event_ids(self) -> list[str]:
        return [body["data"][0]["event_id"] for body in self.requests]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def graph_api() -> FakeGraphAPI:
    return FakeGraphAPI()


@pytest.fixture()
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
async def capi_service(graph_api: FakeGraphAPI, sleeps: RecordingSleep) -> AsyncGenerator[MetaCAPIService, None]:
    service = MetaCAPIService(
        access_token=ACCESS_TOKEN,
        pixel_id=PIXEL_ID,
        test_event_code=None,
        max_retries=3,
        retry_delay=1.0,
        transport=httpx.MockTransport(graph_api),
        sleep=sleeps,
    )
    yield service
    await service.close_client()


@pytest.fixture()
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
def admin_headers(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return {"X-Admin-API-Key": ADMIN_KEY}


@pytest.fixture()
async def client(
    capi_service: MetaCAPIService, session_factory: async_sessionmaker
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.capi_service = capi_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    app.state.capi_service = None
