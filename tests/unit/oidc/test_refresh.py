"""Tests for RefreshController cycles."""

import asyncio
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import jwt
import pytest

from fedbroker.core.clock import to_epoch_ms
from fedbroker.core.errors import StorageUnavailable
from fedbroker.core.settings import AUTHORITY_HOST_DEFAULT, SCOPE_TEMPLATE_DEFAULT
from fedbroker.crypto.assertion import AssertionMinter
from fedbroker.db.kv_store import (
    ACCESS_TOKENS,
    CONFIG_FINGERPRINT,
    EXPIRES_AT,
    SqlKeyValueStore,
)
from fedbroker.db.repo_keys import KeyStore
from fedbroker.oidc.exchange import TokenExchanger
from fedbroker.oidc.refresh import (
    SETUP_PENDING_DESCRIPTION,
    BrokerStatus,
    RefreshController,
)
from fedbroker.oidc.types import BrokerConfig

ISSUER = "https://broker.example.com"


def _config(**overrides) -> BrokerConfig:
    values = {
        "tenant_id": "tenant-123",
        "client_id": "client-456",
        "services": ["management", "graph"],
        "setup_complete": True,
    }
    values.update(overrides)
    return BrokerConfig(**values)


def _controller(store, clock, authority, lock=None) -> RefreshController:
    exchanger = TokenExchanger(
        authority_host=AUTHORITY_HOST_DEFAULT,
        scope_template=SCOPE_TEMPLATE_DEFAULT,
        clock=clock,
        transport=authority.transport,
    )
    return RefreshController(
        store=store,
        key_store=KeyStore(store),
        exchanger=exchanger,
        minter=AssertionMinter(clock),
        clock=clock,
        lock=lock,
    )


class FailingWritesStore:
    """Delegates reads but refuses token writes."""

    def __init__(self, inner: SqlKeyValueStore) -> None:
        self._inner = inner

    async def get(self, key: str) -> Any:
        return await self._inner.get(key)

    async def get_many(self, keys):
        return await self._inner.get_many(keys)

    async def set_many(self, items: Mapping[str, Any]) -> None:
        if ACCESS_TOKENS in items:
            raise StorageUnavailable("disk full")
        await self._inner.set_many(items)


class TestSync:
    """Full decision cycles."""

    async def test_awaiting_setup_makes_key_but_no_exchange(
        self, store, clock, authority
    ) -> None:
        controller = _controller(store, clock, authority)
        result = await controller.sync(_config(setup_complete=False), ISSUER)
        assert result.status is BrokerStatus.AWAITING_SETUP
        assert result.description == SETUP_PENDING_DESCRIPTION
        assert authority.requests == []
        assert await KeyStore(store).get_public_key() is not None
        assert await controller.current_tokens() is None

    async def test_missing_identity_reports_awaiting_setup(
        self, store, clock, authority
    ) -> None:
        result = await _controller(store, clock, authority).sync(
            _config(tenant_id=""), ISSUER
        )
        assert result.status is BrokerStatus.AWAITING_SETUP
        assert result.error == "ConfigurationIncomplete"
        assert "tenant_id" in result.description
        assert authority.requests == []

    async def test_first_cycle_persists_tokens(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 1800)
        controller = _controller(store, clock, authority)
        result = await controller.sync(_config(), ISSUER)

        assert result.status is BrokerStatus.READY
        assert result.tokens is not None
        assert result.tokens.access_tokens == {"management": "T1", "graph": "T2"}
        stored = await store.get_many([ACCESS_TOKENS, EXPIRES_AT, CONFIG_FINGERPRINT])
        assert stored[ACCESS_TOKENS] == {"management": "T1", "graph": "T2"}
        assert stored[EXPIRES_AT] == to_epoch_ms(clock() + timedelta(seconds=1800))
        assert stored[CONFIG_FINGERPRINT] == _config().fingerprint()

    async def test_assertions_signed_with_stored_key(
        self, store, clock, authority
    ) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        await _controller(store, clock, authority).sync(_config(), ISSUER)
        key = await KeyStore(store).get_key()
        assert key is not None
        jtis = set()
        for request in authority.requests:
            token = request["client_assertion"]
            assert jwt.get_unverified_header(token)["kid"] == key.kid
            claims = jwt.decode(
                token,
                key.public_key_pem,
                algorithms=["RS256"],
                audience="api://AzureADTokenExchange",
                issuer=ISSUER,
            )
            assert claims["sub"] == "broker.example.com"
            jtis.add(claims["jti"])
        assert len(jtis) == 2

    async def test_second_cycle_skips_when_fresh(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(), ISSUER)
        clock.advance(60)
        result = await controller.sync(_config(), ISSUER)
        assert result.status is BrokerStatus.READY
        assert result.tokens is None
        assert len(authority.requests) == 2

    async def test_config_change_forces_exchange(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(services=["management"]), ISSUER)
        result = await controller.sync(_config(), ISSUER)
        assert result.tokens is not None
        assert set(result.tokens.access_tokens) == {"management", "graph"}

    async def test_near_expiry_forces_exchange(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(), ISSUER)
        clock.advance(3600 - 599)
        authority.issue("management", "T3", 3600)
        result = await controller.sync(_config(), ISSUER)
        assert result.tokens is not None
        assert result.tokens.access_tokens["management"] == "T3"

    async def test_failed_exchange_keeps_previous_tokens(
        self, store, clock, authority
    ) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(), ISSUER)
        before = await store.get_many([ACCESS_TOKENS, EXPIRES_AT, CONFIG_FINGERPRINT])

        authority.failures.add("graph")
        result = await controller.sync(_config(audience="api://other"), ISSUER)

        assert result.status is BrokerStatus.FAILED
        assert result.error == "ExchangeFailed"
        assert result.description.startswith("Azure sync failed: ")
        after = await store.get_many([ACCESS_TOKENS, EXPIRES_AT, CONFIG_FINGERPRINT])
        assert after == before

    async def test_failed_first_cycle_persists_nothing(
        self, store, clock, authority
    ) -> None:
        authority.issue("management", "T1", 3600)
        authority.failures.add("graph")
        controller = _controller(store, clock, authority)
        result = await controller.sync(_config(), ISSUER)
        assert result.status is BrokerStatus.FAILED
        assert await controller.current_tokens() is None

    async def test_failed_write_reports_failure(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(FailingWritesStore(store), clock, authority)
        result = await controller.sync(_config(), ISSUER)
        assert result.status is BrokerStatus.FAILED
        assert result.error == "StorageUnavailable"

    async def test_recovers_after_failure(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.failures.add("graph")
        controller = _controller(store, clock, authority)
        assert (await controller.sync(_config(), ISSUER)).status is BrokerStatus.FAILED

        authority.failures.clear()
        authority.issue("graph", "T2", 3600)
        result = await controller.sync(_config(), ISSUER)
        assert result.status is BrokerStatus.READY
        assert controller.status is BrokerStatus.READY


class TestConcurrentTriggers:
    """Overlapping triggers run one after the other."""

    async def test_same_controller_runs_cycles_in_turn(
        self, store, clock, authority
    ) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)

        results = await asyncio.gather(
            controller.sync(_config(), ISSUER), controller.sync(_config(), ISSUER)
        )

        assert [r.status for r in results] == [BrokerStatus.READY] * 2
        assert len(authority.requests) == 2

    async def test_controllers_sharing_a_lock_keep_one_key(
        self, store, clock, authority
    ) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        lock = asyncio.Lock()
        scheduled = _controller(store, clock, authority, lock=lock)
        requested = _controller(store, clock, authority, lock=lock)

        results = await asyncio.gather(
            scheduled.sync(_config(), ISSUER), requested.sync(_config(), ISSUER)
        )

        assert [r.status for r in results] == [BrokerStatus.READY] * 2
        key = await KeyStore(store).get_key()
        assert key is not None
        kids = {
            jwt.get_unverified_header(r["client_assertion"])["kid"]
            for r in authority.requests
        }
        assert kids == {key.kid}
        # only the first cycle reached the authority
        assert len(authority.requests) == 2


class TestOnSchedule:
    """Lightweight periodic path."""

    async def test_runs_sync_when_nothing_recorded(
        self, store, clock, authority
    ) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        result = await _controller(store, clock, authority).on_schedule(
            _config(), ISSUER
        )
        assert result is not None
        assert result.status is BrokerStatus.READY

    async def test_skips_when_expiry_far_off(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(), ISSUER)
        clock.advance(600)
        assert await controller.on_schedule(_config(), ISSUER) is None
        assert len(authority.requests) == 2

    async def test_ignores_config_change_until_expiry_nears(
        self, store, clock, authority
    ) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(services=["management"]), ISSUER)
        assert await controller.on_schedule(_config(), ISSUER) is None

    async def test_refreshes_inside_buffer(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 3600)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(), ISSUER)
        clock.advance(3100)
        result = await controller.on_schedule(_config(), ISSUER)
        assert result is not None
        assert result.tokens is not None
        assert len(authority.requests) == 4

    async def test_storage_failure_reported(self, clock, authority) -> None:
        class DownStore:
            async def get(self, key: str) -> Any:
                raise StorageUnavailable("down")

        controller = RefreshController(
            store=DownStore(),
            key_store=None,
            exchanger=None,
            minter=AssertionMinter(clock),
            clock=clock,
        )
        result = await controller.on_schedule(_config(), ISSUER)
        assert result is not None
        assert result.status is BrokerStatus.FAILED


class TestCurrentTokens:
    """Read-only token view."""

    async def test_round_trips_expiry(self, store, clock, authority) -> None:
        authority.issue("management", "T1", 3600)
        authority.issue("graph", "T2", 1800)
        controller = _controller(store, clock, authority)
        await controller.sync(_config(), ISSUER)
        tokens = await controller.current_tokens()
        assert tokens is not None
        assert tokens.expires_at == clock() + timedelta(seconds=1800)


@pytest.mark.parametrize("services", [["management"], ["graph", "management"]])
async def test_token_keys_match_configured_services(
    store, clock, authority, services: list[str]
) -> None:
    authority.issue("management", "T1", 3600)
    authority.issue("graph", "T2", 1200)
    result = await _controller(store, clock, authority).sync(
        _config(services=services), ISSUER
    )
    assert result.tokens is not None
    assert set(result.tokens.access_tokens) == set(services)
    expected = min(3600 if s == "management" else 1200 for s in services)
    assert result.tokens.expires_at == clock() + timedelta(seconds=expected)
