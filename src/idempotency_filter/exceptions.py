"""Custom exceptions for the idempotency filter.

This module defines the exception hierarchy used to signal client input
errors (missing or malformed keys), duplicate requests, and storage
failures.

Examples:
    Rejecting a malformed key::

        from idempotency_filter.exceptions import InvalidKeyError
        from idempotency_filter.keys import IdempotencyKey

        try:
            key = IdempotencyKey.parse(raw_header)
        except InvalidKeyError as e:
            logger.warning("idempotency.key_rejected", reason=e.reason.value)
            return problem_response(400, e.message)

    Wrapping a backend failure::

        try:
            raw = await redis.get(cache_key)
        except RedisError as e:
            raise StorageError(f"Cache read failed: {e}", cause=e) from e
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from idempotency_filter.keys import KeyFailure


class IdempotencyError(Exception):
    """Base exception for all idempotency-related errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        """Initialize the exception with a message.

        Args:
            message: Human-readable error description.
        """
        self.message = message
        super().__init__(message)


class InvalidKeyError(IdempotencyError):
    """The idempotency key header is missing or fails validation.

    This is a client input error. The filter turns it into a 400 response
    before any store access, so malformed keys never reach a cache or
    database key.

    Attributes:
        message: Human-readable error description.
        reason: Which validation rule failed.
    """

    def __init__(self, message: str, reason: "KeyFailure") -> None:
        """Initialize the error with the failed rule.

        Args:
            message: Human-readable error description.
            reason: The failed validation rule.
        """
        super().__init__(message)
        self.reason = reason


class ConflictError(IdempotencyError):
    """A request reused an idempotency key that was already processed.

    Raised when the conflict handling mode is ``ConflictResponse``, or when
    a stored record exists but carries no replayable response.

    Attributes:
        message: Human-readable error description.
        key: The idempotency key that was reused.
    """

    def __init__(self, key: str) -> None:
        """Initialize the conflict error.

        Args:
            key: The idempotency key that was reused.
        """
        super().__init__(
            f"The request with the same idempotent key `{key}` has already been processed."
        )
        self.key = key


class StorageError(IdempotencyError):
    """Storage backend operation failed.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception that caused the storage error.
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        """Initialize the storage error with details.

        Args:
            message: Human-readable error description.
            cause: The underlying exception that caused the storage error.
        """
        super().__init__(message)
        self.cause = cause
