"""In-memory idempotency key store.

The MemoryStore is suitable for:
    - Single-process applications
    - Development and testing

For deduplication across processes use DistributedCacheStore, and for
durable exactly-once semantics use SqlAlchemyStore.

Concurrency:
    Every method completes its check-and-update without awaiting, so under
    a single event loop ``mark_processed`` is an atomic insert-if-absent:
    the first writer for a key wins and later writers are discarded until
    the record expires.

Examples:
    Basic usage::

        from idempotency_filter.storage.memory import MemoryStore

        store = MemoryStore()
        await store.mark_processed(composite, cached)
        processed, response = await store.is_processed(composite)
"""

from idempotency_filter.keys import CompositeKey
from idempotency_filter.models import CachedResponse, utc_now
from idempotency_filter.observability.logging import get_logger
from idempotency_filter.observability.metrics import record_cleanup
from idempotency_filter.storage.base import IdempotencyKeyStore

logger = get_logger(__name__)


class MemoryStore(IdempotencyKeyStore):
    """Dictionary-backed idempotency key store.

    Attributes:
        _store: Dictionary mapping composite keys to cached responses.
    """

    def __init__(self) -> None:
        self._store: dict[str, CachedResponse] = {}

    async def is_processed(self, composite: CompositeKey) -> tuple[bool, CachedResponse | None]:
        """Look up a composite key, dropping the record if it expired."""
        cached = self._store.get(composite.value)
        if cached is None:
            return False, None

        if cached.is_expired:
            # Only drop the exact record we inspected
            if self._store.get(composite.value) is cached:
                del self._store[composite.value]
            return False, None

        return True, cached

    async def mark_processed(self, composite: CompositeKey, response: CachedResponse) -> bool:
        """Store a response unless a live record already exists for the key."""
        existing = self._store.get(composite.value)
        if existing is not None and not existing.is_expired:
            logger.info("store.write_race", backend="memory", composite_key=composite.value)
            return False

        self._store[composite.value] = response
        return True

    async def purge_expired(self) -> int:
        """Remove expired records.

        Returns:
            The number of records removed.
        """
        now = utc_now()
        expired_keys = [key for key, cached in self._store.items() if cached.expires_at <= now]
        for key in expired_keys:
            del self._store[key]

        record_cleanup(len(expired_keys))
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._store)
