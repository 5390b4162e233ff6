"""
Idempotency key filter for Python web applications.

This package deduplicates unsafe HTTP requests by a client-supplied
idempotency key, replaying or rejecting repeats, with in-memory, Redis and
SQL stores.
"""

from idempotency_filter.adapters.asgi import ASGIIdempotencyMiddleware, idempotent
from idempotency_filter.config import ConflictHandling, IdempotencyOptions
from idempotency_filter.core.filter import IdempotencyEndpointFilter
from idempotency_filter.exceptions import (
    ConflictError,
    IdempotencyError,
    InvalidKeyError,
    StorageError,
)
from idempotency_filter.keys import CompositeKey, IdempotencyKey, KeyFailure
from idempotency_filter.models import CachedResponse, EndpointRequest, EndpointResponse
from idempotency_filter.storage import (
    DistributedCacheStore,
    IdempotencyKeyStore,
    MemoryStore,
    SqlAlchemyStore,
    create_store,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ASGIIdempotencyMiddleware",
    "idempotent",
    "IdempotencyEndpointFilter",
    "IdempotencyOptions",
    "ConflictHandling",
    "IdempotencyKey",
    "CompositeKey",
    "KeyFailure",
    "CachedResponse",
    "EndpointRequest",
    "EndpointResponse",
    "IdempotencyKeyStore",
    "MemoryStore",
    "DistributedCacheStore",
    "SqlAlchemyStore",
    "create_store",
    "IdempotencyError",
    "InvalidKeyError",
    "ConflictError",
    "StorageError",
]
