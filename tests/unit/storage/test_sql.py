"""Unit tests for SqlAlchemyStore.

The store runs against a file-backed SQLite database through aiosqlite so
that concurrent connections see each other's writes.

This test suite covers:
    - Schema creation
    - Round trip of every persisted column
    - Expiry on read and replacement of expired rows
    - Unique (route, method, key) under duplicate and concurrent writes
    - purge_expired
    - Error propagation and store timeouts
"""

import asyncio
from datetime import UTC, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, inspect, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine

from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.exceptions import StorageError
from idempotency_filter.keys import CompositeKey
from idempotency_filter.models import CachedResponse, utc_now
from idempotency_filter.storage.sql import SqlAlchemyStore, idempotency_keys


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'idempotency.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine, options):
    return SqlAlchemyStore(engine, options)


@pytest.fixture
def expired_response():
    return CachedResponse.create(
        status_code=201,
        body='{"id": "old"}',
        content_type="application/json",
        ttl_seconds=60,
        now=utc_now() - timedelta(hours=1),
    )


async def count_rows(engine) -> int:
    async with engine.connect() as conn:
        return (await conn.execute(select(func.count()).select_from(idempotency_keys))).scalar_one()


# ============================================================================
# Schema
# ============================================================================


@pytest.mark.asyncio
async def test_ensure_schema_creates_table_and_indexes(store, engine):
    await store.ensure_schema()

    def describe(sync_conn):
        inspector = inspect(sync_conn)
        return (
            inspector.get_table_names(),
            {index["name"] for index in inspector.get_indexes("idempotency_keys")},
        )

    async with engine.connect() as conn:
        tables, indexes = await conn.run_sync(describe)

    assert "idempotency_keys" in tables
    assert "ix_idempotency_keys_expires_at" in indexes
    assert "ix_idempotency_keys_route_created_at" in indexes


@pytest.mark.asyncio
async def test_concurrent_schema_creation_runs_once(store):
    await asyncio.gather(*(store.ensure_schema() for _ in range(5)))
    assert store._schema_ready is True


@pytest.mark.asyncio
async def test_missing_schema_error_propagates(engine, options, composite):
    store = SqlAlchemyStore(engine, options, auto_create_schema=False)

    with pytest.raises(OperationalError):
        await store.is_processed(composite)


# ============================================================================
# Round trip
# ============================================================================


@pytest.mark.asyncio
async def test_unknown_key_is_not_processed(store, composite):
    assert await store.is_processed(composite) == (False, None)


@pytest.mark.asyncio
async def test_mark_then_lookup(store, composite):
    response = CachedResponse.create(
        status_code=201,
        body='{"id": "ord_1"}',
        content_type="application/json; charset=utf-8",
        ttl_seconds=3600,
        request_body_hash="c" * 64,
    )

    await store.mark_processed(composite, response)
    processed, cached = await store.is_processed(composite)

    assert processed is True
    assert cached.status_code == 201
    assert cached.body == '{"id": "ord_1"}'
    assert cached.content_type == "application/json; charset=utf-8"
    assert cached.request_body_hash == "c" * 64
    assert cached.expires_at.tzinfo == UTC
    assert abs(cached.expires_at - response.expires_at) < timedelta(seconds=1)


@pytest.mark.asyncio
async def test_empty_body_round_trips_as_none(store, composite):
    await store.mark_processed(composite, CachedResponse.create(204, None, "text/plain", 60))

    _, cached = await store.is_processed(composite)
    assert cached.body is None


@pytest.mark.asyncio
async def test_row_stores_composite_parts(store, engine):
    composite = CompositeKey.build("put", "/orders/{id}", "key-1")
    await store.mark_processed(composite, CachedResponse.create(200, "ok", None, 60))

    async with engine.connect() as conn:
        row = (await conn.execute(select(idempotency_keys))).mappings().one()

    assert (row["method"], row["route"], row["key"]) == ("PUT", "/ORDERS/{ID}", "KEY-1")


# ============================================================================
# Expiry
# ============================================================================


@pytest.mark.asyncio
async def test_expired_row_is_not_processed(store, composite, expired_response):
    await store.mark_processed(composite, expired_response)

    assert await store.is_processed(composite) == (False, None)


@pytest.mark.asyncio
async def test_expired_row_is_replaced(store, engine, composite, expired_response, cached_response):
    await store.mark_processed(composite, expired_response)
    await store.mark_processed(composite, cached_response)

    _, cached = await store.is_processed(composite)
    assert cached.body == cached_response.body
    assert await count_rows(engine) == 1


@pytest.mark.asyncio
async def test_purge_expired(store, engine, expired_response, cached_response):
    await store.mark_processed(CompositeKey.build("POST", "/a", "k1"), expired_response)
    await store.mark_processed(CompositeKey.build("POST", "/b", "k2"), expired_response)
    await store.mark_processed(CompositeKey.build("POST", "/c", "k3"), cached_response)

    assert await store.purge_expired() == 2
    assert await count_rows(engine) == 1


# ============================================================================
# Uniqueness and races
# ============================================================================


@pytest.mark.asyncio
async def test_duplicate_write_keeps_first(store, engine, composite, cached_response):
    second = CachedResponse.create(200, "second", "text/plain", 3600)

    assert await store.mark_processed(composite, cached_response) is True
    assert await store.mark_processed(composite, second) is False

    _, cached = await store.is_processed(composite)
    assert cached.body == cached_response.body
    assert await count_rows(engine) == 1


@pytest.mark.asyncio
async def test_same_key_on_different_routes(store, engine, cached_response):
    await store.mark_processed(CompositeKey.build("POST", "/orders", "abc"), cached_response)
    await store.mark_processed(CompositeKey.build("POST", "/payments", "abc"), cached_response)
    await store.mark_processed(CompositeKey.build("PUT", "/orders", "abc"), cached_response)

    assert await count_rows(engine) == 3


@pytest.mark.asyncio
async def test_concurrent_writes_store_one_row(store, engine, composite):
    await store.ensure_schema()
    responses = [
        CachedResponse.create(201, f'{{"n": {i}}}', "application/json", 3600) for i in range(10)
    ]

    results = await asyncio.gather(
        *(store.mark_processed(composite, response) for response in responses),
        return_exceptions=True,
    )

    assert results.count(True) == 1
    assert results.count(False) == 9
    assert await count_rows(engine) == 1


@pytest.mark.asyncio
async def test_constraint_violation_without_live_row_raises(store, composite):
    now = utc_now()
    invalid = CachedResponse.model_construct(
        status_code=700,
        body="x",
        content_type="text/plain",
        created_at=now,
        expires_at=now + timedelta(hours=1),
        request_body_hash=None,
    )

    with pytest.raises(StorageError) as exc_info:
        await store.mark_processed(composite, invalid)

    assert exc_info.value.cause is not None
    assert await store.is_processed(composite) == (False, None)


# ============================================================================
# Timeouts
# ============================================================================


async def stall(*args, **kwargs):
    await asyncio.sleep(5)


@pytest.mark.asyncio
async def test_stalled_read_fails_open(engine, composite, monkeypatch):
    store = SqlAlchemyStore(engine, IdempotencyOptions(store_timeout_seconds=0.05))
    monkeypatch.setattr(store, "_fetch_live", stall)

    assert await store.is_processed(composite) == (False, None)


@pytest.mark.asyncio
async def test_stalled_write_is_not_reported_as_stored(
    engine, composite, cached_response, monkeypatch
):
    store = SqlAlchemyStore(engine, IdempotencyOptions(store_timeout_seconds=0.05))
    await store.ensure_schema()
    monkeypatch.setattr(store, "_insert", stall)

    assert await store.mark_processed(composite, cached_response) is False
    assert await count_rows(engine) == 0
