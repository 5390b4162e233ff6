"""Utility modules for the idempotency filter."""

from .headers import (
    EXPIRES_HEADER,
    STATUS_CACHED,
    STATUS_CREATED,
    STATUS_HEADER,
    add_idempotency_headers,
    get_header_value,
    merge_header_pairs,
)

__all__ = [
    "get_header_value",
    "add_idempotency_headers",
    "merge_header_pairs",
    "STATUS_HEADER",
    "EXPIRES_HEADER",
    "STATUS_CREATED",
    "STATUS_CACHED",
]
