"""Shared test fixtures for fedbroker."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qsl

import httpx
import pytest
from fastapi import Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from fedbroker.api.deps import build_controller, get_controller, load_settings
from fedbroker.core.app import create_app
from fedbroker.db.base import BaseEntity
from fedbroker.db.engine import get_store
from fedbroker.db.kv_store import SqlKeyValueStore

ISSUER = "https://broker.example.com"
TENANT_ID = "tenant-123"
CLIENT_ID = "client-456"
INTERNAL_TOKEN = "test-internal-token"


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StubAuthority:
    """Token endpoint double keyed by service name."""

    def __init__(self) -> None:
        self.tokens: dict[str, tuple[str, int]] = {}
        self.failures: set[str] = set()
        self.requests: list[dict[str, str]] = []

    def issue(self, service: str, token: str, expires_in: int) -> None:
        self.tokens[service] = (token, expires_in)

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.requests.append(form)
        service = form["scope"].removeprefix("https://").split(".")[0]
        if service in self.failures or service not in self.tokens:
            return httpx.Response(
                400,
                json={
                    "error": "invalid_client",
                    "error_description": "No matching federated identity record found",
                },
            )
        token, expires_in = self.tokens[service]
        return httpx.Response(
            200,
            json={
                "access_token": token,
                "token_type": "Bearer",
                "expires_in": expires_in,
            },
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def _set_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for test settings."""
    monkeypatch.setenv("BROKER_ISSUER_URL", ISSUER)
    monkeypatch.setenv("BROKER_TENANT_ID", TENANT_ID)
    monkeypatch.setenv("BROKER_CLIENT_ID", CLIENT_ID)
    monkeypatch.setenv("BROKER_SERVICES", '["management","graph"]')
    monkeypatch.setenv("BROKER_SETUP_COMPLETE", "true")
    monkeypatch.setenv("BROKER_INTERNAL_TOKEN", INTERNAL_TOKEN)
    monkeypatch.setenv("BROKER_REFRESH_INTERVAL_SECONDS", "0")


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to the current second."""
    return FixedClock(datetime.now(UTC).replace(microsecond=0))


@pytest.fixture
def authority() -> StubAuthority:
    return StubAuthority()


@pytest.fixture
async def store() -> AsyncIterator[SqlKeyValueStore]:
    """In-memory SQLite key-value store."""
    engine = create_async_engine(
        "sqlite+aiosqlite://", echo=False, poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(BaseEntity.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlKeyValueStore(factory)

    await engine.dispose()


@pytest.fixture
async def client(
    store: SqlKeyValueStore,
    clock: FixedClock,
    authority: StubAuthority,
) -> AsyncIterator[AsyncClient]:
    """Create an httpx test client wired to the in-memory store and stub authority."""
    app = create_app()

    def _override_controller(request: Request):
        return build_controller(
            store,
            load_settings(),
            clock=clock,
            transport=authority.transport,
            lock=request.app.state.sync_lock,
        )

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_controller] = _override_controller

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
