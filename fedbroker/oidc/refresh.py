"""Refresh decision and the key → assertion → exchange cycle.

A cycle always starts from ``UNINITIALIZED`` and walks the lifecycle below.
``FAILED`` only ends the current cycle; the next trigger starts over.

    UNINITIALIZED --KEY_READY--> AWAITING_SETUP
    AWAITING_SETUP --TOKENS_VALID--> READY
    AWAITING_SETUP --REFRESH_STARTED--> REFRESHING
    READY --TOKENS_VALID--> READY
    READY --REFRESH_STARTED--> REFRESHING
    REFRESHING --REFRESH_SUCCEEDED--> READY
    any --CYCLE_FAILED--> FAILED
    any --RESET--> UNINITIALIZED
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel

from fedbroker.core.clock import Clock, from_epoch_ms, system_clock, to_epoch_ms
from fedbroker.core.errors import (
    BrokerError,
    ConfigurationIncomplete,
    InvalidTransition,
    StorageUnavailable,
)
from fedbroker.crypto.assertion import AssertionMinter
from fedbroker.db.kv_store import (
    ACCESS_TOKENS,
    CONFIG_FINGERPRINT,
    EXPIRES_AT,
    KeyValueStore,
)
from fedbroker.db.repo_keys import KeyStore
from fedbroker.oidc.exchange import TokenExchanger
from fedbroker.oidc.types import BrokerConfig, RefreshState, ServiceTokenSet

logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(seconds=600)

SETUP_PENDING_DESCRIPTION = (
    "Waiting for Azure setup to be completed. Please complete Azure app "
    "registration and federated credential setup, then set 'Azure Setup "
    "Complete' to true."
)


class BrokerStatus(StrEnum):
    """Lifecycle state reported after each trigger."""

    UNINITIALIZED = "uninitialized"
    AWAITING_SETUP = "awaiting_setup"
    READY = "ready"
    REFRESHING = "refreshing"
    FAILED = "failed"


class LifecycleEvent(StrEnum):
    """Events that move the lifecycle between states."""

    KEY_READY = "key_ready"
    TOKENS_VALID = "tokens_valid"
    REFRESH_STARTED = "refresh_started"
    REFRESH_SUCCEEDED = "refresh_succeeded"
    CYCLE_FAILED = "cycle_failed"
    RESET = "reset"


_TRANSITIONS: dict[tuple[BrokerStatus, LifecycleEvent], BrokerStatus] = {
    (BrokerStatus.UNINITIALIZED, LifecycleEvent.KEY_READY): BrokerStatus.AWAITING_SETUP,
    (BrokerStatus.AWAITING_SETUP, LifecycleEvent.TOKENS_VALID): BrokerStatus.READY,
    (BrokerStatus.AWAITING_SETUP, LifecycleEvent.REFRESH_STARTED): BrokerStatus.REFRESHING,
    (BrokerStatus.READY, LifecycleEvent.TOKENS_VALID): BrokerStatus.READY,
    (BrokerStatus.READY, LifecycleEvent.REFRESH_STARTED): BrokerStatus.REFRESHING,
    (BrokerStatus.REFRESHING, LifecycleEvent.REFRESH_SUCCEEDED): BrokerStatus.READY,
}


def transition(state: BrokerStatus, event: LifecycleEvent) -> BrokerStatus:
    """Return the state reached from ``state`` on ``event``."""
    if event is LifecycleEvent.RESET:
        return BrokerStatus.UNINITIALIZED
    if event is LifecycleEvent.CYCLE_FAILED:
        return BrokerStatus.FAILED
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"Cannot apply {event} in state {state}") from None


def needs_exchange(config: BrokerConfig, state: RefreshState, now: datetime) -> bool:
    """Decide whether the current cycle must run a full exchange."""
    if state.last_expiry is None or state.last_config_fingerprint is None:
        return True
    if config.fingerprint() != state.last_config_fingerprint:
        return True
    return now + REFRESH_BUFFER >= state.last_expiry


class SyncResult(BaseModel):
    """Outcome of one trigger."""

    status: BrokerStatus
    description: str | None = None
    tokens: ServiceTokenSet | None = None
    error: str | None = None


class RefreshController:
    """Keeps the persisted token map valid.

    Triggers sharing ``lock`` run one at a time; pass the same lock to every
    controller built over one store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key_store: KeyStore,
        exchanger: TokenExchanger,
        minter: AssertionMinter,
        clock: Clock = system_clock,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._store = store
        self._lock = lock if lock is not None else asyncio.Lock()
        self._key_store = key_store
        self._exchanger = exchanger
        self._minter = minter
        self._clock = clock
        self._status = BrokerStatus.UNINITIALIZED

    @property
    def status(self) -> BrokerStatus:
        """State reached by the most recent trigger."""
        return self._status

    def _advance(self, event: LifecycleEvent) -> None:
        self._status = transition(self._status, event)

    async def read_state(self) -> RefreshState:
        """Load what the last successful cycle recorded."""
        values = await self._store.get_many([EXPIRES_AT, CONFIG_FINGERPRINT])
        expires_at = values[EXPIRES_AT]
        return RefreshState(
            last_expiry=from_epoch_ms(expires_at) if expires_at is not None else None,
            last_config_fingerprint=values[CONFIG_FINGERPRINT],
        )

    async def current_tokens(self) -> ServiceTokenSet | None:
        """Return the persisted token set, if a cycle has ever succeeded."""
        values = await self._store.get_many([ACCESS_TOKENS, EXPIRES_AT])
        if values[ACCESS_TOKENS] is None or values[EXPIRES_AT] is None:
            return None
        return ServiceTokenSet(
            access_tokens=values[ACCESS_TOKENS],
            expires_at=from_epoch_ms(values[EXPIRES_AT]),
        )

    async def sync(self, config: BrokerConfig, issuer: str) -> SyncResult:
        """Run the full decision algorithm and, if needed, an exchange."""
        async with self._lock:
            return await self._run_cycle(config, issuer)

    async def _run_cycle(self, config: BrokerConfig, issuer: str) -> SyncResult:
        self._advance(LifecycleEvent.RESET)
        try:
            material = await self._key_store.ensure_key()
            self._advance(LifecycleEvent.KEY_READY)

            if not config.setup_complete:
                return SyncResult(
                    status=self._status, description=SETUP_PENDING_DESCRIPTION
                )
            _require_identity(config)

            state = await self.read_state()
            if not needs_exchange(config, state, self._clock()):
                self._advance(LifecycleEvent.TOKENS_VALID)
                return SyncResult(status=self._status)

            self._advance(LifecycleEvent.REFRESH_STARTED)
            tokens = await self._exchanger.exchange(
                config.tenant_id,
                config.client_id,
                config.services,
                self._minter.factory(issuer, config.audience, material),
            )
            await self._store.set_many(
                {
                    ACCESS_TOKENS: tokens.access_tokens,
                    EXPIRES_AT: to_epoch_ms(tokens.expires_at),
                    CONFIG_FINGERPRINT: config.fingerprint(),
                }
            )
            self._advance(LifecycleEvent.REFRESH_SUCCEEDED)
            return SyncResult(status=self._status, tokens=tokens)
        except ConfigurationIncomplete as exc:
            return SyncResult(
                status=self._status,
                description=exc.message,
                error=type(exc).__name__,
            )
        except BrokerError as exc:
            logger.error("Failed to sync token broker: %s", exc.message)
            self._advance(LifecycleEvent.CYCLE_FAILED)
            return SyncResult(
                status=self._status,
                description=f"Azure sync failed: {exc.message}",
                error=type(exc).__name__,
            )

    async def on_schedule(self, config: BrokerConfig, issuer: str) -> SyncResult | None:
        """Periodic tick: skip entirely while the recorded expiry is far off.

        Only the expiry is read here; a configuration change is picked up by
        the next full ``sync``.
        """
        try:
            expires_at = await self._store.get(EXPIRES_AT)
        except StorageUnavailable as exc:
            logger.error("Error in token refresh schedule: %s", exc.message)
            self._advance(LifecycleEvent.CYCLE_FAILED)
            return SyncResult(
                status=self._status,
                description=f"Azure sync failed: {exc.message}",
                error=type(exc).__name__,
            )

        if expires_at is not None:
            threshold = self._clock() + REFRESH_BUFFER
            if from_epoch_ms(expires_at) > threshold:
                logger.debug("Tokens valid until %s; skipping refresh", expires_at)
                return None
        return await self.sync(config, issuer)


def _require_identity(config: BrokerConfig) -> None:
    missing = [
        name for name in ("tenant_id", "client_id") if not getattr(config, name)
    ]
    if missing:
        raise ConfigurationIncomplete(
            f"Missing required configuration: {', '.join(missing)}"
        )
