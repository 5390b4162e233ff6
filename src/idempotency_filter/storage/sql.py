"""Relational idempotency key store backed by SQLAlchemy.

Records live in the ``idempotency_keys`` table, one row per
``(route, method, key)``. The unique constraint on that triple is what makes
concurrent first writes safe: exactly one INSERT wins, and the losers see an
IntegrityError that is treated as a benign lost race.

Expiry is evaluated on read. An expired row is ignored by ``is_processed``
and replaced by the next ``mark_processed`` for the same key; rows nobody
touches again stay until :meth:`SqlAlchemyStore.purge_expired` removes them.

Both store calls are bounded by ``store_timeout_seconds``. A read that
times out is reported as "not processed" and a write that times out returns
False, as in the cache store. Database errors other than a lost race
propagate to the caller; unlike the cache store, this backend does not fail
open on them. ``purge_expired`` is an operator call and is not time-bounded.

Examples:
    Wiring with an async engine::

        from sqlalchemy.ext.asyncio import create_async_engine

        from idempotency_filter.storage.sql import SqlAlchemyStore

        engine = create_async_engine("sqlite+aiosqlite:///./idempotency.db")
        store = SqlAlchemyStore(engine)
        await store.ensure_schema()
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    delete,
    insert,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.types import TypeDecorator

from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.exceptions import StorageError
from idempotency_filter.keys import CompositeKey
from idempotency_filter.models import CachedResponse, utc_now
from idempotency_filter.observability.logging import get_logger
from idempotency_filter.observability.metrics import record_cleanup, record_store_failure
from idempotency_filter.storage.base import IdempotencyKeyStore

logger = get_logger(__name__)

BACKEND = "sql"


class UTCDateTime(TypeDecorator[datetime]):
    """Stores naive UTC timestamps and hands back aware ones.

    SQLite has no timezone support, so values are normalized to UTC and
    stripped of tzinfo on the way in.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


metadata = MetaData()

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("route", String(512), nullable=False),
    Column("method", String(16), nullable=False),
    Column("key", String(1024), nullable=False),
    Column("status_code", Integer, nullable=False),
    Column("body", Text, nullable=True),
    Column("content_type", String(255), nullable=False),
    Column("request_body_hash", String(64), nullable=True),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("expires_at", UTCDateTime(), nullable=False),
    UniqueConstraint("route", "method", "key", name="uq_idempotency_keys_route_method_key"),
    CheckConstraint(
        "status_code >= 100 AND status_code <= 599",
        name="ck_idempotency_keys_status_code",
    ),
    Index("ix_idempotency_keys_expires_at", "expires_at"),
    Index("ix_idempotency_keys_route_created_at", "route", "created_at"),
)


def _identity(composite: CompositeKey) -> Any:
    return and_(
        idempotency_keys.c.route == composite.route,
        idempotency_keys.c.method == composite.method,
        idempotency_keys.c.key == composite.key,
    )


class SqlAlchemyStore(IdempotencyKeyStore):
    """Idempotency key store on a SQLAlchemy async engine.

    Attributes:
        engine: The async engine (any dialect with an async driver)
        options: Filter options
        auto_create_schema: Create the table on first use when True
    """

    def __init__(
        self,
        engine: AsyncEngine,
        options: IdempotencyOptions | None = None,
        auto_create_schema: bool = True,
    ) -> None:
        self.engine = engine
        self.options = options or IdempotencyOptions()
        self.auto_create_schema = auto_create_schema
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        """Create the table and indexes if they do not exist.

        Runs at most once per store instance, even when many requests hit
        a fresh store at the same time.
        """
        if self._schema_ready:
            return

        async with self._schema_lock:
            if self._schema_ready:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            self._schema_ready = True
            logger.info("store.schema_ready", backend=BACKEND, table=idempotency_keys.name)

    async def _prepare(self) -> None:
        if self.auto_create_schema:
            await self.ensure_schema()

    async def _fetch_live(self, composite: CompositeKey) -> Any:
        await self._prepare()

        stmt = select(idempotency_keys).where(
            _identity(composite),
            idempotency_keys.c.expires_at > utc_now(),
        )
        async with self.engine.connect() as conn:
            return (await conn.execute(stmt)).mappings().first()

    async def is_processed(self, composite: CompositeKey) -> tuple[bool, CachedResponse | None]:
        try:
            row = await asyncio.wait_for(
                self._fetch_live(composite),
                timeout=self.options.store_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "store.read_failed",
                backend=BACKEND,
                composite_key=composite.value,
                error_type="TimeoutError",
                timeout_seconds=self.options.store_timeout_seconds,
            )
            record_store_failure(BACKEND, "read")
            return False, None

        if row is None:
            return False, None

        return True, CachedResponse(
            status_code=row["status_code"],
            body=row["body"],
            content_type=row["content_type"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            request_body_hash=row["request_body_hash"],
        )

    async def _insert(self, composite: CompositeKey, response: CachedResponse) -> None:
        await self._prepare()

        async with self.engine.begin() as conn:
            await conn.execute(
                delete(idempotency_keys).where(
                    _identity(composite),
                    idempotency_keys.c.expires_at <= utc_now(),
                )
            )
            await conn.execute(
                insert(idempotency_keys).values(
                    route=composite.route,
                    method=composite.method,
                    key=composite.key,
                    status_code=response.status_code,
                    body=response.body,
                    content_type=response.content_type,
                    request_body_hash=response.request_body_hash,
                    created_at=response.created_at,
                    expires_at=response.expires_at,
                )
            )

    async def mark_processed(self, composite: CompositeKey, response: CachedResponse) -> bool:
        """Insert the record, or quietly lose the race to a live one.

        An expired row for the same key is deleted in the same transaction
        so the unique constraint only ever guards live records.

        Returns:
            True when the row was inserted, False on a lost race or a timeout.

        Raises:
            StorageError: If the insert violates a constraint and no live
                row for the key exists, so it was not a lost race.
        """
        try:
            await asyncio.wait_for(
                self._insert(composite, response),
                timeout=self.options.store_timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                "store.write_failed",
                backend=BACKEND,
                composite_key=composite.value,
                error_type="TimeoutError",
                timeout_seconds=self.options.store_timeout_seconds,
            )
            record_store_failure(BACKEND, "write")
            return False
        except IntegrityError as e:
            processed, _ = await self.is_processed(composite)
            if not processed:
                raise StorageError(
                    f"Failed to persist idempotency record for {composite.value}", cause=e
                ) from e
            logger.info("store.write_race", backend=BACKEND, composite_key=composite.value)
            return False

        logger.info(
            "store.written",
            backend=BACKEND,
            composite_key=composite.value,
            status_code=response.status_code,
        )
        return True

    async def purge_expired(self) -> int:
        """Delete every expired row.

        Returns:
            The number of rows removed.
        """
        await self._prepare()

        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(idempotency_keys).where(idempotency_keys.c.expires_at <= utc_now())
            )

        removed = result.rowcount or 0
        record_cleanup(removed)
        logger.info("store.purged", backend=BACKEND, records_removed=removed)
        return removed
