"""FastAPI dependency injection for broker components and internal auth."""

import asyncio
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fedbroker.core.clock import Clock, system_clock
from fedbroker.core.settings import BrokerSettings
from fedbroker.crypto.assertion import AssertionMinter
from fedbroker.db.engine import get_store
from fedbroker.db.kv_store import KeyValueStore
from fedbroker.db.repo_keys import KeyStore
from fedbroker.oidc.discovery import DiscoveryPublisher
from fedbroker.oidc.exchange import TokenExchanger
from fedbroker.oidc.refresh import RefreshController

_security = HTTPBearer()


def load_settings() -> BrokerSettings:
    return BrokerSettings()


Settings = Annotated[BrokerSettings, Depends(load_settings)]
Store = Annotated[KeyValueStore, Depends(get_store)]


def build_controller(
    store: KeyValueStore,
    settings: BrokerSettings,
    *,
    clock: Clock = system_clock,
    transport: httpx.AsyncBaseTransport | None = None,
    lock: asyncio.Lock | None = None,
) -> RefreshController:
    """Wire a refresh controller from settings."""
    exchanger = TokenExchanger(
        authority_host=settings.authority_host,
        scope_template=settings.scope_template,
        timeout=settings.exchange_timeout,
        clock=clock,
        transport=transport,
    )
    return RefreshController(
        store=store,
        key_store=KeyStore(store, settings.signing_key_encryption_key),
        exchanger=exchanger,
        minter=AssertionMinter(clock),
        clock=clock,
        lock=lock,
    )


def get_key_store(store: Store, settings: Settings) -> KeyStore:
    return KeyStore(store, settings.signing_key_encryption_key)


def get_publisher(
    key_store: Annotated[KeyStore, Depends(get_key_store)],
) -> DiscoveryPublisher:
    return DiscoveryPublisher(key_store)


def get_controller(
    request: Request, store: Store, settings: Settings
) -> RefreshController:
    return build_controller(store, settings, lock=request.app.state.sync_lock)


async def require_internal_token(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_security)],
    settings: Settings,
) -> str:
    """Verify the BROKER_INTERNAL_TOKEN Bearer token."""
    expected = settings.internal_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    if credentials.credentials != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    return credentials.credentials
