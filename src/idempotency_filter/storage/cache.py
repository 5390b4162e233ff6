"""Distributed-cache idempotency key store backed by Redis.

The store keeps one JSON-serialized CachedResponse per composite key under
``{prefix}{sanitized composite key}`` with a Redis TTL matching the
response's ``expires_at``.

Failure policy:
    - Reads fail open. A Redis error, a timeout or a corrupt entry is logged
      and reported as "not processed", so an unhealthy cache never blocks
      the request.
    - Writes fail safe. A Redis error or a timeout is logged and swallowed,
      and ``mark_processed`` returns False. The caller still gets its
      response and a later duplicate is simply reprocessed.

Concurrency:
    There is no atomic insert-if-absent here. Two concurrent first requests
    for the same key can both miss in ``is_processed``, both run the
    handler and both write; the last write wins. Duplicates are suppressed
    only once the first request has completed and been cached. Use
    SqlAlchemyStore when exactly-once execution under concurrency matters.

Examples:
    Wiring with redis-py::

        import redis.asyncio as redis

        from idempotency_filter.config import IdempotencyOptions
        from idempotency_filter.storage.cache import DistributedCacheStore

        client = redis.from_url("redis://localhost:6379/0", decode_responses=True)
        store = DistributedCacheStore(client, IdempotencyOptions())
"""

import asyncio
import math
from typing import Any

from pydantic import ValidationError
from redis.exceptions import RedisError

from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.keys import CompositeKey
from idempotency_filter.models import CachedResponse, utc_now
from idempotency_filter.observability.logging import get_logger
from idempotency_filter.observability.metrics import record_store_failure
from idempotency_filter.storage.base import IdempotencyKeyStore

logger = get_logger(__name__)

BACKEND = "redis"


class DistributedCacheStore(IdempotencyKeyStore):
    """Idempotency key store on a Redis-compatible async client.

    Attributes:
        client: Async client exposing ``get``, ``set(..., ex=...)`` and ``delete``
        options: Filter options (cache prefix, store timeout)
    """

    def __init__(self, client: Any, options: IdempotencyOptions | None = None) -> None:
        self.client = client
        self.options = options or IdempotencyOptions()

    def cache_key(self, composite: CompositeKey) -> str:
        """Build the cache key for a composite key.

        Slashes become underscores and CR/LF are removed, then the whole
        key is upper-cased.

        Example:
            >>> store.cache_key(CompositeKey.build("POST", "/orders", "abc"))
            'IDEM:POST:_ORDERS_ABC'
        """
        sanitized = composite.value.replace("/", "_").replace("\n", "").replace("\r", "")
        return f"{self.options.cache_prefix}{sanitized}".upper()

    async def is_processed(self, composite: CompositeKey) -> tuple[bool, CachedResponse | None]:
        cache_key = self.cache_key(composite)
        logger.debug("store.lookup", backend=BACKEND, cache_key=cache_key)

        try:
            raw = await asyncio.wait_for(
                self.client.get(cache_key),
                timeout=self.options.store_timeout_seconds,
            )
        except (RedisError, TimeoutError) as e:
            logger.warning(
                "store.read_failed",
                backend=BACKEND,
                cache_key=cache_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            record_store_failure(BACKEND, "read")
            return False, None

        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        if raw is None or not raw.strip():
            logger.debug("store.miss", backend=BACKEND, cache_key=cache_key)
            return False, None

        try:
            cached = CachedResponse.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "store.entry_corrupt",
                backend=BACKEND,
                cache_key=cache_key,
                error=str(e),
            )
            record_store_failure(BACKEND, "read")
            return False, None

        if cached.is_expired:
            logger.debug("store.expired", backend=BACKEND, cache_key=cache_key)
            await self._remove(cache_key)
            return False, None

        logger.debug(
            "store.hit",
            backend=BACKEND,
            cache_key=cache_key,
            status_code=cached.status_code,
        )
        return True, cached

    async def mark_processed(self, composite: CompositeKey, response: CachedResponse) -> bool:
        cache_key = self.cache_key(composite)
        ttl_seconds = max(1, math.ceil((response.expires_at - utc_now()).total_seconds()))

        try:
            await asyncio.wait_for(
                self.client.set(cache_key, response.model_dump_json(), ex=ttl_seconds),
                timeout=self.options.store_timeout_seconds,
            )
        except (RedisError, TimeoutError) as e:
            logger.error(
                "store.write_failed",
                backend=BACKEND,
                cache_key=cache_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            record_store_failure(BACKEND, "write")
            return False

        logger.info(
            "store.written",
            backend=BACKEND,
            cache_key=cache_key,
            status_code=response.status_code,
            ttl_seconds=ttl_seconds,
        )
        return True

    async def _remove(self, cache_key: str) -> None:
        """Best-effort removal of an expired entry."""
        try:
            await asyncio.wait_for(
                self.client.delete(cache_key),
                timeout=self.options.store_timeout_seconds,
            )
        except (RedisError, TimeoutError) as e:
            logger.warning(
                "store.remove_failed",
                backend=BACKEND,
                cache_key=cache_key,
                error=str(e),
            )
            record_store_failure(BACKEND, "remove")
