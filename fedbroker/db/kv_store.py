"""Key-value persistence used by the key store and refresh controller."""

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fedbroker.core.errors import StorageUnavailable
from fedbroker.db.models_kv import KVEntryEntity

logger = logging.getLogger(__name__)

# Persisted keys
PRIVATE_KEY = "privateKey"
PUBLIC_KEY = "publicKey"
KEY_ID = "keyId"
ACCESS_TOKENS = "accessTokens"
EXPIRES_AT = "expiresAt"
CONFIG_FINGERPRINT = "configFingerprint"

# Dialects with a native INSERT .. ON CONFLICT; others fall back to merge
_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class KeyValueStore(Protocol):
    """Storage substrate with all-or-nothing batch writes."""

    async def get(self, key: str) -> Any: ...

    async def get_many(self, keys: Sequence[str]) -> dict[str, Any]: ...

    async def set_many(self, items: Mapping[str, Any]) -> None: ...


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Key-value store %s failed: %s", action, exc)
        raise StorageUnavailable(f"Storage {action} failed: {exc}") from exc


class SqlKeyValueStore:
    """KeyValueStore backed by the ``kv_entries`` table."""

    def __init__(self, factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = factory

    async def get(self, key: str) -> Any:
        """Return the value stored under ``key`` or None."""
        values = await self.get_many([key])
        return values[key]

    async def get_many(self, keys: Sequence[str]) -> dict[str, Any]:
        """Return a mapping with an entry (possibly None) for every key."""
        with _storage_errors("read"):
            async with self._factory() as session:
                stmt = select(KVEntryEntity).where(KVEntryEntity.key.in_(keys))
                result = await session.execute(stmt)
                found = {row.key: row.value for row in result.scalars().all()}
        return {key: found.get(key) for key in keys}

    async def set_many(self, items: Mapping[str, Any]) -> None:
        """Upsert every pair in one transaction."""
        if not items:
            return
        rows = [{"key": key, "value": value} for key, value in items.items()]
        with _storage_errors("write"):
            async with self._factory() as session, session.begin():
                dialect = session.get_bind().dialect.name
                if dialect not in _UPSERT_INSERTS:
                    for row in rows:
                        await session.merge(KVEntryEntity(**row))
                    return
                stmt = _UPSERT_INSERTS[dialect](KVEntryEntity).values(rows)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[KVEntryEntity.key],
                    set_={"value": stmt.excluded["value"], "updated_at": func.now()},
                )
                await session.execute(stmt)
