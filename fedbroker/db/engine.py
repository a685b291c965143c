"""Async SQLAlchemy engine and session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fedbroker.core.settings import DatabaseSettings
from fedbroker.db.base import BaseEntity
from fedbroker.db.kv_store import SqlKeyValueStore


class _EngineHolder:
    """Lazy singleton for the engine and the store built on it."""

    engine: AsyncEngine | None = None
    store: SqlKeyValueStore | None = None


_holder = _EngineHolder()


def _get_engine() -> AsyncEngine:
    """Lazily create the async engine."""
    if _holder.engine is None:
        db = DatabaseSettings()
        _holder.engine = create_async_engine(db.url, echo=db.echo)
    return _holder.engine


def get_store() -> SqlKeyValueStore:
    """FastAPI dependency that returns the shared key-value store."""
    if _holder.store is None:
        factory = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
        _holder.store = SqlKeyValueStore(factory)
    return _holder.store


async def init_models(engine: AsyncEngine | None = None) -> None:
    """Create the key-value table if it does not exist yet."""
    target = engine or _get_engine()
    async with target.begin() as conn:
        await conn.run_sync(BaseEntity.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    if _holder.engine is not None:
        await _holder.engine.dispose()
        _holder.engine = None
        _holder.store = None
