"""Idempotency key stores and the factory that picks one from options."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.storage.base import IdempotencyKeyStore
from idempotency_filter.storage.cache import DistributedCacheStore
from idempotency_filter.storage.memory import MemoryStore
from idempotency_filter.storage.sql import SqlAlchemyStore


def create_store(
    options: IdempotencyOptions,
    redis_client: Any = None,
    engine: AsyncEngine | None = None,
) -> IdempotencyKeyStore:
    """Build the store selected by ``options.storage_adapter``.

    Args:
        options: Filter options.
        redis_client: Existing async Redis client; one is created from
            ``options.redis_url`` when omitted.
        engine: Existing async engine; one is created from
            ``options.database_url`` when omitted.

    Returns:
        A MemoryStore, DistributedCacheStore or SqlAlchemyStore.
    """
    if options.storage_adapter == "redis":
        if redis_client is None:
            import redis.asyncio as redis

            redis_client = redis.from_url(options.redis_url, decode_responses=True)
        return DistributedCacheStore(redis_client, options)

    if options.storage_adapter == "sql":
        if engine is None:
            from sqlalchemy.ext.asyncio import create_async_engine

            engine = create_async_engine(options.database_url)
        return SqlAlchemyStore(engine, options)

    return MemoryStore()


__all__ = [
    "IdempotencyKeyStore",
    "MemoryStore",
    "DistributedCacheStore",
    "SqlAlchemyStore",
    "create_store",
]
