"""Header helpers for the idempotency filter.

This module provides functions for:
- Case-insensitive header lookup
- Adding the status and expiry marker headers to filter responses
- Merging those headers back into the handler's own header fields
"""

from datetime import datetime

# Marker headers set on responses that went through the filter
STATUS_HEADER = "Idempotency-Key-Status"
EXPIRES_HEADER = "Idempotency-Key-Expires"

STATUS_CREATED = "created"
STATUS_CACHED = "cached"


def get_header_value(
    headers: dict[str, str],
    header_name: str,
    default: str | None = None,
) -> str | None:
    """Get header value with case-insensitive lookup.

    Args:
        headers: Headers dictionary
        header_name: Name of header to find (case-insensitive)
        default: Default value if header not found

    Returns:
        Header value or default

    Example:
        >>> headers = {"Idempotency-Key": "order-1"}
        >>> get_header_value(headers, "idempotency-key")
        'order-1'
        >>> get_header_value(headers, "missing", "default")
        'default'
    """
    header_name_lower = header_name.lower()

    for key, value in headers.items():
        if key.lower() == header_name_lower:
            return value

    return default


def add_idempotency_headers(
    headers: dict[str, str],
    status: str,
    expires_at: datetime | None = None,
) -> dict[str, str]:
    """Add the idempotency marker headers to response headers.

    Args:
        headers: Existing response headers
        status: ``created`` for a handler execution, ``cached`` for a replay
        expires_at: When the stored result stops being honored; omitted
            when the response was not stored

    Returns:
        A new headers dictionary with the markers added

    Example:
        >>> add_idempotency_headers({"content-type": "application/json"}, STATUS_CREATED)
        {'content-type': 'application/json', 'Idempotency-Key-Status': 'created'}
    """
    # Create new dict to avoid mutating original
    result = headers.copy()

    result[STATUS_HEADER] = status
    if expires_at is not None:
        result[EXPIRES_HEADER] = expires_at.isoformat()

    return result


def merge_header_pairs(
    raw_headers: list[tuple[str, str]] | None,
    headers: dict[str, str],
) -> list[tuple[str, str]]:
    """Combine a handler's header fields with the filter's header dict.

    ``raw_headers`` keeps repeated fields such as ``set-cookie``. Names in
    ``headers`` whose value does not appear among the raw fields (the
    marker headers, or a value the filter replaced) override the raw
    fields of the same name.

    Args:
        raw_headers: Header fields as sent by the handler, or None
        headers: Single-valued headers after the filter ran

    Returns:
        Header pairs for the outgoing response

    Example:
        >>> merge_header_pairs(
        ...     [("set-cookie", "a=1"), ("set-cookie", "b=2")],
        ...     {"set-cookie": "b=2", STATUS_HEADER: "created"},
        ... )
        [('set-cookie', 'a=1'), ('set-cookie', 'b=2'), ('Idempotency-Key-Status', 'created')]
    """
    if raw_headers is None:
        return list(headers.items())

    raw_fields = {(name.lower(), value) for name, value in raw_headers}
    overridden = {
        name.lower() for name, value in headers.items() if (name.lower(), value) not in raw_fields
    }

    pairs = [(name, value) for name, value in raw_headers if name.lower() not in overridden]
    pairs.extend((name, value) for name, value in headers.items() if name.lower() in overridden)
    return pairs
