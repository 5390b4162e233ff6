"""Store protocol for the idempotency filter.

This module defines the contract every idempotency key store implements.
The filter depends only on this protocol, so a volatile cache store can be
swapped for a durable relational store without touching orchestration.

Examples:
    Implementing a custom store::

        from idempotency_filter.keys import CompositeKey
        from idempotency_filter.models import CachedResponse

        class MyStore:
            async def is_processed(
                self, composite: CompositeKey
            ) -> tuple[bool, CachedResponse | None]:
                raw = await self.backend.get(composite.value)
                if raw is None:
                    return False, None
                cached = CachedResponse.model_validate_json(raw)
                if cached.is_expired:
                    return False, None
                return True, cached

            async def mark_processed(
                self, composite: CompositeKey, response: CachedResponse
            ) -> bool:
                await self.backend.set(composite.value, response.model_dump_json())
                return True

Contract:
    1. **Expiry**: a record whose ``expires_at`` has passed is reported as
       ``(False, None)``, exactly like a missing record.

    2. **Lost races are benign**: ``mark_processed`` may be called for a key
       another in-flight request already stored. It must not raise or
       corrupt state; the first stored record stays authoritative where the
       backend can guarantee it. A lost race returns False.

    3. **Write result**: ``mark_processed`` returns True only when this
       response is now the stored record. A recovered write failure returns
       False so the caller does not advertise an expiry nobody will honor.

    4. **Shared instance**: one store instance serves all concurrent
       requests. Stores keep no per-request state.
"""

from typing import Protocol, runtime_checkable

from idempotency_filter.keys import CompositeKey
from idempotency_filter.models import CachedResponse


@runtime_checkable
class IdempotencyKeyStore(Protocol):
    """Protocol defining the interface for idempotency key stores.

    All methods are async; they are the only points where the filter
    waits on I/O.
    """

    async def is_processed(self, composite: CompositeKey) -> tuple[bool, CachedResponse | None]:
        """Look up a composite key.

        Args:
            composite: The endpoint-scoped key.

        Returns:
            ``(True, response)`` for a live record, ``(False, None)`` when
            no record exists or it has expired.
        """
        ...

    async def mark_processed(self, composite: CompositeKey, response: CachedResponse) -> bool:
        """Persist a completed response for a composite key.

        Args:
            composite: The endpoint-scoped key.
            response: The snapshot to store until ``response.expires_at``.

        Returns:
            True when this response was stored, False when the write was
            lost to a concurrent writer or failed and was recovered.
        """
        ...
