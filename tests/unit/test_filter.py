"""Unit tests for IdempotencyEndpointFilter.

The filter is driven directly with EndpointRequest objects and async
handlers, so every branch of the per-request flow is covered without a web
framework:

- Missing and invalid keys (400, store untouched)
- New keys (handler runs, result persisted, "created" marker)
- Duplicates in ConflictResponse and CachedResult modes
- Inconsistent store metadata (409 fallback)
- Non-cacheable statuses and non-text bodies (returned, not persisted)
- Handler and store failures propagating
"""

import asyncio
import json

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.core.filter import PROBLEM_CONTENT_TYPE, IdempotencyEndpointFilter
from idempotency_filter.fingerprint import compute_body_hash
from idempotency_filter.keys import CompositeKey
from idempotency_filter.models import CachedResponse, EndpointRequest, EndpointResponse
from idempotency_filter.storage.cache import DistributedCacheStore
from idempotency_filter.storage.memory import MemoryStore
from idempotency_filter.utils.headers import EXPIRES_HEADER, STATUS_HEADER


class CountingHandler:
    """Async handler that counts invocations and returns a fixed response."""

    def __init__(
        self,
        status: int = 201,
        body: bytes = b'{"id": "ord_1"}',
        content_type: str = "application/json",
        delay: float = 0.0,
    ) -> None:
        self.status = status
        self.body = body
        self.content_type = content_type
        self.delay = delay
        self.calls = 0

    async def __call__(self, request: EndpointRequest) -> EndpointResponse:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return EndpointResponse(
            status=self.status,
            headers={"content-type": self.content_type},
            body=self.body,
        )


class InconsistentStore:
    """Store that reports a key as processed but has no response for it."""

    async def is_processed(self, composite):
        return True, None

    async def mark_processed(self, composite, response):
        raise AssertionError("should not be called")


class RecordingStore(MemoryStore):
    """MemoryStore that records every call."""

    def __init__(self) -> None:
        super().__init__()
        self.lookups: list[str] = []
        self.writes: list[tuple[str, CachedResponse]] = []

    async def is_processed(self, composite):
        self.lookups.append(composite.value)
        return await super().is_processed(composite)

    async def mark_processed(self, composite, response):
        self.writes.append((composite.value, response))
        return await super().mark_processed(composite, response)


class BrokenStore:
    """Store whose reads fail with an error it chose to propagate."""

    async def is_processed(self, composite):
        raise RuntimeError("database unavailable")

    async def mark_processed(self, composite, response):
        raise RuntimeError("database unavailable")


def make_request(
    key: str | None = "order-123",
    method: str = "POST",
    route: str = "/api/orders",
    body: bytes = b'{"item": "book"}',
    header_name: str = "Idempotency-Key",
) -> EndpointRequest:
    headers = {"content-type": "application/json"}
    if key is not None:
        headers[header_name] = key
    return EndpointRequest(method=method, route=route, headers=headers, body=body)


def problem(response: EndpointResponse) -> dict:
    assert response.headers["content-type"] == PROBLEM_CONTENT_TYPE
    return json.loads(response.body)


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def handler():
    return CountingHandler()


@pytest.fixture
def conflict_filter(store):
    return IdempotencyEndpointFilter(store, IdempotencyOptions(conflict_handling="ConflictResponse"))


@pytest.fixture
def replay_filter(store):
    return IdempotencyEndpointFilter(store, IdempotencyOptions(conflict_handling="CachedResult"))


# ============================================================================
# Key validation
# ============================================================================


@pytest.mark.asyncio
async def test_missing_key_returns_400(conflict_filter, store, handler):
    response = await conflict_filter.invoke(make_request(key=None), handler)

    assert response.status == 400
    body = problem(response)
    assert body["status"] == 400
    assert body["title"] == "Bad Request"
    assert body["detail"] == "The 'Idempotency-Key' header is required for idempotent requests."
    assert handler.calls == 0
    assert store.lookups == []


@pytest.mark.asyncio
async def test_blank_key_returns_400(conflict_filter, handler):
    response = await conflict_filter.invoke(make_request(key="   "), handler)

    assert response.status == 400
    assert handler.calls == 0


@pytest.mark.asyncio
async def test_invalid_characters_return_400(conflict_filter, store, handler):
    response = await conflict_filter.invoke(make_request(key="../etc/passwd"), handler)

    assert response.status == 400
    assert "format is invalid" in problem(response)["detail"]
    assert handler.calls == 0
    assert store.lookups == []


@pytest.mark.asyncio
async def test_too_long_key_returns_400(store, handler):
    endpoint_filter = IdempotencyEndpointFilter(store, IdempotencyOptions(max_key_length=8))

    response = await endpoint_filter.invoke(make_request(key="a" * 9), handler)

    assert response.status == 400
    assert problem(response)["detail"] == "Idempotency key must not exceed 8 characters."


@pytest.mark.asyncio
async def test_custom_header_name(store, handler):
    endpoint_filter = IdempotencyEndpointFilter(
        store, IdempotencyOptions(header_name="X-Request-Key")
    )

    missing = await endpoint_filter.invoke(make_request(), handler)
    assert missing.status == 400
    assert "'X-Request-Key'" in problem(missing)["detail"]

    accepted = await endpoint_filter.invoke(
        make_request(header_name="x-request-key"),
        handler,
    )
    assert accepted.status == 201


# ============================================================================
# New keys
# ============================================================================


@pytest.mark.asyncio
async def test_new_key_executes_and_persists(conflict_filter, store, handler):
    request = make_request()

    response = await conflict_filter.invoke(request, handler)

    assert response.status == 201
    assert response.body == b'{"id": "ord_1"}'
    assert response.headers[STATUS_HEADER] == "created"
    assert EXPIRES_HEADER in response.headers
    assert handler.calls == 1

    assert len(store.writes) == 1
    composite_value, cached = store.writes[0]
    assert composite_value == "POST:/API/ORDERS_ORDER-123"
    assert cached.status_code == 201
    assert cached.body == '{"id": "ord_1"}'
    assert cached.content_type == "application/json"
    assert cached.request_body_hash == compute_body_hash(request.body)
    assert response.headers[EXPIRES_HEADER] == cached.expires_at.isoformat()


@pytest.mark.asyncio
async def test_key_is_trimmed_before_lookup(conflict_filter, store, handler):
    await conflict_filter.invoke(make_request(key="  order-123  "), handler)

    assert store.lookups == ["POST:/API/ORDERS_ORDER-123"]


@pytest.mark.asyncio
async def test_expiration_comes_from_options(store, handler):
    endpoint_filter = IdempotencyEndpointFilter(store, IdempotencyOptions(expiration_seconds=60))

    await endpoint_filter.invoke(make_request(), handler)

    _, cached = store.writes[0]
    assert (cached.expires_at - cached.created_at).total_seconds() == 60


@pytest.mark.asyncio
async def test_empty_body_is_persisted_as_none(conflict_filter, store):
    handler = CountingHandler(status=204, body=b"")

    response = await conflict_filter.invoke(make_request(), handler)

    assert response.status == 204
    assert store.writes[0][1].body is None


# ============================================================================
# Duplicates
# ============================================================================


@pytest.mark.asyncio
async def test_duplicate_in_conflict_mode_returns_409(conflict_filter, handler):
    await conflict_filter.invoke(make_request(), handler)

    response = await conflict_filter.invoke(make_request(), handler)

    assert response.status == 409
    body = problem(response)
    assert body["title"] == "Conflict"
    assert body["detail"] == (
        "The request with the same idempotent key `order-123` has already been processed."
    )
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_duplicate_in_cached_mode_replays(replay_filter, handler):
    first = await replay_filter.invoke(make_request(), handler)

    second = await replay_filter.invoke(make_request(), handler)

    assert second.status == first.status == 201
    assert second.body == first.body
    assert second.headers["content-type"] == "application/json"
    assert second.headers[STATUS_HEADER] == "cached"
    assert second.headers[EXPIRES_HEADER] == first.headers[EXPIRES_HEADER]
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_replay_of_empty_body(replay_filter):
    handler = CountingHandler(status=204, body=b"")
    await replay_filter.invoke(make_request(), handler)

    replay = await replay_filter.invoke(make_request(), handler)

    assert replay.status == 204
    assert replay.body == b""
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_key_case_variants_are_duplicates(conflict_filter, handler):
    await conflict_filter.invoke(make_request(key="order-abc"), handler)

    response = await conflict_filter.invoke(make_request(key="ORDER-ABC"), handler)

    assert response.status == 409
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_same_key_on_other_route_is_new(conflict_filter, handler):
    await conflict_filter.invoke(make_request(route="/api/orders"), handler)

    response = await conflict_filter.invoke(make_request(route="/api/payments"), handler)

    assert response.status == 201
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_inconsistent_metadata_returns_409(handler):
    endpoint_filter = IdempotencyEndpointFilter(
        InconsistentStore(), IdempotencyOptions(conflict_handling="CachedResult")
    )

    response = await endpoint_filter.invoke(make_request(), handler)

    assert response.status == 409
    assert handler.calls == 0


@pytest.mark.asyncio
async def test_expired_record_is_reprocessed(store, handler):
    endpoint_filter = IdempotencyEndpointFilter(store, IdempotencyOptions(expiration_seconds=1))
    await endpoint_filter.invoke(make_request(), handler)

    await asyncio.sleep(1.1)
    response = await endpoint_filter.invoke(make_request(), handler)

    assert response.status == 201
    assert response.headers[STATUS_HEADER] == "created"
    assert handler.calls == 2


# ============================================================================
# Non-cacheable results
# ============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 409, 422, 500, 503])
async def test_error_responses_are_not_persisted(conflict_filter, store, status):
    handler = CountingHandler(status=status, body=b'{"error": "nope"}')

    first = await conflict_filter.invoke(make_request(), handler)
    second = await conflict_filter.invoke(make_request(), handler)

    assert first.status == second.status == status
    assert first.headers[STATUS_HEADER] == "created"
    assert EXPIRES_HEADER not in first.headers
    assert store.writes == []
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_additional_cacheable_status_is_persisted(store):
    endpoint_filter = IdempotencyEndpointFilter(
        store,
        IdempotencyOptions(
            conflict_handling="CachedResult",
            additional_cacheable_status_codes=[422],
        ),
    )
    handler = CountingHandler(status=422, body=b'{"error": "invalid"}')

    await endpoint_filter.invoke(make_request(), handler)
    replay = await endpoint_filter.invoke(make_request(), handler)

    assert replay.status == 422
    assert replay.headers[STATUS_HEADER] == "cached"
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_binary_body_is_returned_uncached(conflict_filter, store):
    handler = CountingHandler(status=200, body=b"\xff\xfe\x00binary", content_type="image/png")

    response = await conflict_filter.invoke(make_request(), handler)

    assert response.status == 200
    assert response.body == b"\xff\xfe\x00binary"
    assert response.headers[STATUS_HEADER] == "created"
    assert store.writes == []


# ============================================================================
# Failures and concurrency
# ============================================================================


@pytest.mark.asyncio
async def test_handler_exception_propagates_and_nothing_is_stored(conflict_filter, store):
    async def failing_handler(request):
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        await conflict_filter.invoke(make_request(), failing_handler)

    assert store.writes == []


@pytest.mark.asyncio
async def test_propagated_store_error_is_not_caught(handler):
    endpoint_filter = IdempotencyEndpointFilter(BrokenStore(), IdempotencyOptions())

    with pytest.raises(RuntimeError, match="database unavailable"):
        await endpoint_filter.invoke(make_request(), handler)

    assert handler.calls == 0


@pytest.mark.asyncio
async def test_cache_store_outage_fails_open():
    class DownRedis:
        async def get(self, name):
            raise RedisConnectionError("down")

        async def set(self, name, value, ex=None):
            raise RedisConnectionError("down")

    store = DistributedCacheStore(DownRedis(), IdempotencyOptions(store_timeout_seconds=1))
    endpoint_filter = IdempotencyEndpointFilter(store, IdempotencyOptions())
    handler = CountingHandler()

    first = await endpoint_filter.invoke(make_request(), handler)
    second = await endpoint_filter.invoke(make_request(), handler)

    assert first.status == second.status == 201
    assert handler.calls == 2
    assert first.headers[STATUS_HEADER] == "created"
    assert EXPIRES_HEADER not in first.headers


@pytest.mark.asyncio
async def test_concurrent_first_requests_on_cache_store_both_execute():
    """Without an atomic insert, overlapping first requests both run the handler."""
    store = DistributedCacheStore(
        fakeredis.FakeAsyncRedis(decode_responses=True),
        IdempotencyOptions(),
    )
    endpoint_filter = IdempotencyEndpointFilter(
        store, IdempotencyOptions(conflict_handling="CachedResult")
    )
    handler = CountingHandler(delay=0.05)

    first, second = await asyncio.gather(
        endpoint_filter.invoke(make_request(), handler),
        endpoint_filter.invoke(make_request(), handler),
    )

    assert first.status == second.status == 201
    assert handler.calls == 2

    processed, _ = await store.is_processed(CompositeKey.build("POST", "/api/orders", "order-123"))
    assert processed is True


@pytest.mark.asyncio
async def test_failed_cache_write_omits_expiry():
    redis_client = fakeredis.FakeAsyncRedis(decode_responses=True)

    async def failing_set(name, value, ex=None):
        raise RedisConnectionError("write refused")

    redis_client.set = failing_set
    store = DistributedCacheStore(redis_client, IdempotencyOptions())
    endpoint_filter = IdempotencyEndpointFilter(store, IdempotencyOptions())

    response = await endpoint_filter.invoke(make_request(), CountingHandler())

    assert response.status == 201
    assert response.headers[STATUS_HEADER] == "created"
    assert EXPIRES_HEADER not in response.headers

    processed, _ = await store.is_processed(CompositeKey.build("POST", "/api/orders", "order-123"))
    assert processed is False


@pytest.mark.asyncio
async def test_lost_write_race_omits_expiry():
    class RacingStore(RecordingStore):
        """Reports a miss on lookup, as a concurrent request would see it."""

        async def is_processed(self, composite):
            self.lookups.append(composite.value)
            return False, None

    racing = RacingStore()
    endpoint_filter = IdempotencyEndpointFilter(racing, IdempotencyOptions())

    first = await endpoint_filter.invoke(make_request(), CountingHandler())
    second = await endpoint_filter.invoke(make_request(), CountingHandler())

    assert EXPIRES_HEADER in first.headers
    assert second.headers[STATUS_HEADER] == "created"
    assert EXPIRES_HEADER not in second.headers
    assert len(racing) == 1
