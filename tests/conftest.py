from __future__ import annotations

import asyncio
import json
import os
from unittest.mock import patch

# Settings are cached on first use, so configure the environment up front
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SERVICE_API_KEY"] = "test-service-key"
os.environ["ANALYSIS_SERVICE_URL"] = "http://analysis.test"
os.environ["ANALYSIS_SUBMIT_RETRIES"] = "1"
os.environ["DEBUG"] = "false"

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from market_scan.db.models import Base
from market_scan.schemas.scans import VehicleDescriptor
from market_scan.services.persistence import PersistenceAdapter


class AnalysisServiceStub:
    """Stands in for the external price analysis service."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.requests: list[dict] = []
        self.status_code = 202
        self.body: dict = {"message": "accepted"}
        self.error: Exception | None = None
        self.attempts = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.attempts += 1
        if self.error is not None:
            raise self.error
        self.requests.append(json.loads(request.content))
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture(scope="session")
def analysis_service() -> AnalysisServiceStub:
    return AnalysisServiceStub()


@pytest.fixture(autouse=True)
def _reset_analysis_service(analysis_service: AnalysisServiceStub):
    analysis_service.reset()
    yield


@pytest.fixture
def vehicles() -> list[VehicleDescriptor]:
    return [
        VehicleDescriptor(item_id="inv-1", make="Toyota", model="Corolla", year=2019, mileage=64000),
        VehicleDescriptor(item_id="inv-2", make="BMW", model="320d", year=2018, mileage=98000),
        VehicleDescriptor(item_id="inv-3", make="Fiat", model="Panda", year=2012, mileage=151000),
    ]


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def persistence(session_factory) -> PersistenceAdapter:
    return PersistenceAdapter(session_factory)


@pytest_asyncio.fixture
async def fake_redis():
    redis = fakeredis.aioredis.FakeRedis()
    yield redis
    await redis.flushall()
    await redis.aclose()


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    """Poll until predicate() is truthy or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


# ---------- Application ----------


@pytest.fixture(scope="session")
def app(analysis_service: AnalysisServiceStub):
    """Create a test FastAPI application backed by SQLite and fakeredis."""
    from market_scan.main import create_app

    with patch(
        "market_scan.main.create_redis_client",
        lambda url: fakeredis.aioredis.FakeRedis(),
    ), patch(
        "market_scan.main.create_http_client",
        lambda settings: httpx.AsyncClient(transport=httpx.MockTransport(analysis_service)),
    ):
        yield create_app()


@pytest.fixture(scope="session")
def client(app):
    """Create a test HTTP client."""
    with TestClient(app) as c:
        yield c
