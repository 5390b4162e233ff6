"""
Pytest configuration and shared fixtures for idempotency_filter tests.
"""

import pytest

from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.keys import CompositeKey, IdempotencyKey
from idempotency_filter.models import CachedResponse


@pytest.fixture
def sample_idempotency_key() -> str:
    """Provide a sample idempotency key for tests."""
    return "test-key-12345"


@pytest.fixture
def sample_request_body() -> bytes:
    """Provide a sample request body for tests."""
    return b'{"data": "test"}'


@pytest.fixture
def options() -> IdempotencyOptions:
    """Default options with a short store timeout."""
    return IdempotencyOptions(store_timeout_seconds=1.0)


@pytest.fixture
def composite(sample_idempotency_key: str) -> CompositeKey:
    """A composite key for POST /api/orders."""
    return CompositeKey.build("POST", "/api/orders", IdempotencyKey.parse(sample_idempotency_key))


@pytest.fixture
def cached_response() -> CachedResponse:
    """A live cached 201 response."""
    return CachedResponse.create(
        status_code=201,
        body='{"id": "ord_1"}',
        content_type="application/json",
        ttl_seconds=3600,
    )
