"""Core type definitions for the idempotency filter.

This module provides the persisted response snapshot (:class:`CachedResponse`)
and the request/response shapes exchanged between a host pipeline and the
filter (:class:`EndpointRequest`, :class:`EndpointResponse`).

Examples:
    Snapshotting a handler result::

        from idempotency_filter.models import CachedResponse

        cached = CachedResponse.create(
            status_code=201,
            body='{"id": "ord_1"}',
            content_type="application/json",
            ttl_seconds=3600,
        )
        assert not cached.is_expired

    Normalizing a framework response::

        response = EndpointResponse(
            status=201,
            headers={"content-type": "application/json"},
            body=b'{"id": "ord_1"}',
        )
        response.content_type  # 'application/json'
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_CONTENT_TYPE = "application/json"


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class CachedResponse(BaseModel):
    """Snapshot of a completed response that duplicates can replay.

    Records are never mutated. Expiry is evaluated lazily on every read via
    :attr:`is_expired`; there is no background sweeper.

    Attributes:
        status_code: HTTP status code of the original response.
        body: Response body text, or None for an empty body.
        content_type: MIME type of the original response.
        created_at: When the response was cached (UTC).
        expires_at: When the cached response stops being honored (UTC).
        request_body_hash: SHA-256 hex digest of the request body, if recorded.
    """

    status_code: int = Field(
        ...,
        description="HTTP status code",
        ge=100,
        le=599,
        examples=[200, 201, 204],
    )
    body: str | None = Field(
        default=None,
        description="Response body text (None for an empty body)",
        examples=['{"id": "ord_12345"}'],
    )
    content_type: str = Field(
        default=DEFAULT_CONTENT_TYPE,
        description="MIME type of the response body",
        examples=["application/json", "text/plain; charset=utf-8"],
    )
    created_at: datetime = Field(
        ...,
        description="Timestamp when the response was cached",
    )
    expires_at: datetime = Field(
        ...,
        description="Timestamp after which the response is no longer replayed",
    )
    request_body_hash: str | None = Field(
        default=None,
        description="SHA-256 hex digest of the request body",
        pattern=r"^[a-f0-9]{64}$",
    )

    model_config = {"frozen": True}

    @field_validator("body", mode="before")
    @classmethod
    def normalize_empty_body(cls, v: Any) -> Any:
        """Treat an empty or whitespace-only body as no body."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("created_at", "expires_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Interpret naive timestamps as UTC and convert aware ones to UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @field_validator("expires_at")
    @classmethod
    def validate_expires_after_created(cls, v: datetime, info: Any) -> datetime:
        """Validate that expires_at is after created_at.

        Raises:
            ValueError: If expires_at is not after created_at.
        """
        if "created_at" in info.data and v <= info.data["created_at"]:
            raise ValueError("expires_at must be after created_at")
        return v

    @classmethod
    def create(
        cls,
        status_code: int,
        body: str | None,
        content_type: str | None,
        ttl_seconds: float,
        request_body_hash: str | None = None,
        now: datetime | None = None,
    ) -> "CachedResponse":
        """Build a snapshot stamped with the current time and a TTL.

        Args:
            status_code: HTTP status code.
            body: Response body text.
            content_type: MIME type; defaults to application/json when None.
            ttl_seconds: Time-to-live in seconds.
            request_body_hash: Optional request body digest.
            now: Reference time, for deterministic tests.

        Returns:
            A new CachedResponse.
        """
        created_at = now or utc_now()
        return cls(
            status_code=status_code,
            body=body,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=ttl_seconds),
            request_body_hash=request_body_hash,
        )

    @property
    def is_expired(self) -> bool:
        """Whether the snapshot has reached its expiry time."""
        return utc_now() >= self.expires_at

    def get_body_bytes(self) -> bytes:
        """Return the body encoded as UTF-8 (empty for no body)."""
        return self.body.encode("utf-8") if self.body is not None else b""


class EndpointRequest:
    """Framework-independent view of an inbound request.

    Host adapters convert their own request objects into this shape.

    Attributes:
        method: HTTP method
        route: Route template the request matched (e.g. ``/orders/{id}``)
        path: Resolved URL path
        headers: Request headers
        body: Request body as bytes
        trace_id: Distributed tracing id, if the client sent one
    """

    def __init__(
        self,
        method: str,
        route: str,
        headers: dict[str, str],
        body: bytes = b"",
        path: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        self.method = method
        self.route = route
        self.path = path if path is not None else route
        self.headers = headers
        self.body = body
        self.trace_id = trace_id


class EndpointResponse:
    """Uniform ``(status, body, content type)`` view of a handler result.

    Attributes:
        status: HTTP status code
        headers: Response headers, one value per name
        body: Response body as bytes
        raw_headers: Every header field the handler sent, in order and with
            repeats such as ``set-cookie`` kept, when the host provides them
    """

    def __init__(
        self,
        status: int,
        headers: dict[str, str],
        body: bytes,
        raw_headers: list[tuple[str, str]] | None = None,
    ) -> None:
        self.status = status
        self.headers = headers
        self.body = body
        self.raw_headers = raw_headers

    @property
    def content_type(self) -> str | None:
        """The Content-Type header value, looked up case-insensitively."""
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return None
