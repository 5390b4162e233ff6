"""Idempotency key validation and composite key construction.

The raw header value is trimmed, then checked against a maximum length and
an allowed character pattern. Anything else is rejected: a key never gets
silently coerced into a valid one, which keeps newlines, path separators and
oversized values out of cache keys and database rows.

A validated key is scoped to one endpoint by combining it with the HTTP
method and the route template into a :class:`CompositeKey`.

Examples:
    Validating a header value::

        >>> key = IdempotencyKey.parse("  order-123  ")
        >>> key.value
        'order-123'

    Building the storage key::

        >>> composite = CompositeKey.build("post", "/api/orders/{id}", key)
        >>> composite.value
        'POST:/API/ORDERS/{ID}_ORDER-123'
"""

import re
from dataclasses import dataclass
from enum import Enum

from idempotency_filter.exceptions import InvalidKeyError

DEFAULT_MAX_KEY_LENGTH = 256
DEFAULT_KEY_PATTERN = r"^[A-Za-z0-9_-]+$"


class KeyFailure(str, Enum):
    """Reason an idempotency key was rejected."""

    MISSING = "missing"
    TOO_LONG = "too-long"
    INVALID_CHARACTERS = "invalid-characters"


@dataclass(frozen=True)
class IdempotencyKey:
    """A validated, trimmed idempotency key.

    Use :meth:`parse` to construct instances from untrusted input.

    Attributes:
        value: The trimmed key.
    """

    value: str

    @classmethod
    def parse(
        cls,
        raw: str | None,
        max_length: int = DEFAULT_MAX_KEY_LENGTH,
        pattern: str = DEFAULT_KEY_PATTERN,
        header_name: str = "Idempotency-Key",
    ) -> "IdempotencyKey":
        """Validate a raw header value.

        Args:
            raw: Header value as received, or None when the header is absent.
            max_length: Maximum length of the trimmed key.
            pattern: Regular expression the trimmed key must fully match.
            header_name: Header name used in the "missing" message.

        Returns:
            The validated key.

        Raises:
            InvalidKeyError: If the key is missing, too long, or contains
                characters outside the pattern.

        Examples:
            >>> IdempotencyKey.parse("abc_123").value
            'abc_123'
            >>> IdempotencyKey.parse("a/b")
            Traceback (most recent call last):
            ...
            idempotency_filter.exceptions.InvalidKeyError: Idempotency key format is invalid. Allowed characters: alphanumeric, hyphens, underscores.
        """
        value = raw.strip() if raw is not None else ""

        if not value:
            raise InvalidKeyError(
                f"The '{header_name}' header is required for idempotent requests.",
                reason=KeyFailure.MISSING,
            )

        if len(value) > max_length:
            raise InvalidKeyError(
                f"Idempotency key must not exceed {max_length} characters.",
                reason=KeyFailure.TOO_LONG,
            )

        if re.fullmatch(pattern, value) is None:
            raise InvalidKeyError(
                "Idempotency key format is invalid. "
                "Allowed characters: alphanumeric, hyphens, underscores.",
                reason=KeyFailure.INVALID_CHARACTERS,
            )

        return cls(value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CompositeKey:
    """Store lookup key scoping an idempotency key to one endpoint.

    All parts are upper-cased so that case variations of the same method,
    route or key cannot bypass duplicate detection.

    Attributes:
        method: Upper-cased HTTP method.
        route: Upper-cased route template (not the resolved path).
        key: Upper-cased idempotency key.
    """

    method: str
    route: str
    key: str

    @classmethod
    def build(cls, method: str, route_template: str, key: IdempotencyKey | str) -> "CompositeKey":
        """Combine method, route template and key.

        Args:
            method: HTTP method of the request.
            route_template: Route template the request matched, e.g. ``/orders/{id}``.
            key: The validated idempotency key.

        Returns:
            The composite key.
        """
        return cls(
            method=method.strip().upper(),
            route=(route_template or "/").upper(),
            key=str(key).upper(),
        )

    @property
    def value(self) -> str:
        """The flat form ``{METHOD}:{ROUTE}_{KEY}``."""
        return f"{self.method}:{self.route}_{self.key}"

    def __str__(self) -> str:
        return self.value
