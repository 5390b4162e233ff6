"""Configuration module for the idempotency filter.

This module provides the IdempotencyOptions class for configuring key
validation, caching, expiration, conflict handling and the storage backend.
Options are validated when constructed, so a misconfiguration (for example
a minimum cacheable status above the maximum) fails at startup rather than
on the first request.

Example:
    Basic usage with defaults:

        >>> options = IdempotencyOptions()
        >>> options.header_name
        'Idempotency-Key'

    Custom configuration:

        >>> options = IdempotencyOptions(
        ...     conflict_handling="CachedResult",
        ...     expiration_seconds=3600,
        ...     storage_adapter="redis",
        ...     redis_url="redis://myhost:6379/0",
        ... )

    Loading from environment:

        >>> import os
        >>> os.environ['IDEMPOTENCY_CONFLICT_HANDLING'] = 'CachedResult'
        >>> os.environ['IDEMPOTENCY_EXPIRATION_SECONDS'] = '3600'
        >>> options = IdempotencyOptions.from_env()
"""

import os
import re
from datetime import timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from idempotency_filter.keys import DEFAULT_KEY_PATTERN, DEFAULT_MAX_KEY_LENGTH

# Valid HTTP methods for idempotency
VALID_HTTP_METHODS = {
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "CONNECT",
    "OPTIONS",
    "TRACE",
    "PATCH",
}

# RFC 7230 token characters
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class ConflictHandling(str, Enum):
    """How a request reusing an already processed key is answered.

    Attributes:
        CACHED_RESULT: Replay the stored status, body and content type.
        CONFLICT_RESPONSE: Reject the duplicate with 409 Conflict.
    """

    CACHED_RESULT = "CachedResult"
    CONFLICT_RESPONSE = "ConflictResponse"


class IdempotencyOptions(BaseModel):
    """Configuration for the idempotency filter and its stores.

    Attributes:
        header_name: Request header carrying the idempotency key.
        cache_prefix: Prefix prepended to every distributed-cache key.
        expiration_seconds: How long a cached response is replayed.
            Must be between 1 and 604800 (7 days). Default is 14400 (4 hours).
        conflict_handling: Replay the cached result or answer 409 Conflict.
        max_key_length: Maximum length of a trimmed key (1-1024).
        key_pattern: Regular expression a trimmed key must fully match.
        min_cacheable_status: Lower bound of the cacheable status range.
        max_cacheable_status: Upper bound of the cacheable status range.
        additional_cacheable_status_codes: Extra status codes outside the
            range that are cached as well.
        enabled_methods: HTTP methods the filter applies to.
        storage_adapter: Backend used by :func:`create_store`.
        redis_url: Connection URL for the "redis" adapter.
        database_url: SQLAlchemy async URL for the "sql" adapter.
        store_timeout_seconds: Upper bound on a single store round-trip.

    Note:
        This class is immutable (frozen=True). Create a new instance if
        you need different settings.
    """

    header_name: str = Field(
        default="Idempotency-Key",
        description="Request header carrying the idempotency key",
    )
    cache_prefix: str = Field(
        default="idem:",
        description="Prefix for distributed-cache keys",
    )
    expiration_seconds: int = Field(
        default=14400,
        description="Time-to-live in seconds for cached responses (1-604800)",
    )
    conflict_handling: ConflictHandling = Field(
        default=ConflictHandling.CONFLICT_RESPONSE,
        description="'CachedResult' to replay duplicates, 'ConflictResponse' to reject them",
    )
    max_key_length: int = Field(
        default=DEFAULT_MAX_KEY_LENGTH,
        description="Maximum idempotency key length (1-1024)",
    )
    key_pattern: str = Field(
        default=DEFAULT_KEY_PATTERN,
        description="Regular expression a key must fully match",
    )
    min_cacheable_status: int = Field(
        default=200,
        description="Lowest status code that is cached",
    )
    max_cacheable_status: int = Field(
        default=299,
        description="Highest status code that is cached",
    )
    additional_cacheable_status_codes: list[int] | str = Field(
        default_factory=list,
        description="Extra status codes to cache outside the range",
    )
    enabled_methods: list[str] | str = Field(
        default=["POST", "PUT", "PATCH", "DELETE"],
        description="List of HTTP methods the filter applies to",
    )
    storage_adapter: Literal["memory", "redis", "sql"] = Field(
        default="memory",
        description="Type of storage backend for idempotency records",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Connection URL for the Redis storage adapter",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./idempotency.db",
        description="SQLAlchemy async database URL for the SQL storage adapter",
    )
    store_timeout_seconds: float = Field(
        default=5.0,
        description="Maximum seconds a single store call may take (0-60]",
    )

    model_config = {"frozen": True}

    @field_validator("header_name")
    @classmethod
    def validate_header_name(cls, v: str) -> str:
        """Validate the header name is a non-empty HTTP token."""
        v = v.strip()
        if not _HEADER_NAME_RE.match(v):
            raise ValueError(f"header_name must be a valid HTTP header name, got {v!r}")
        return v

    @field_validator("expiration_seconds")
    @classmethod
    def validate_expiration_seconds(cls, v: int) -> int:
        """Validate TTL is within acceptable range.

        Raises:
            ValueError: If TTL is not between 1 and 604800 (7 days).
        """
        if not (1 <= v <= 604800):
            raise ValueError(f"expiration_seconds must be between 1 and 604800 (7 days), got {v}")
        return v

    @field_validator("max_key_length")
    @classmethod
    def validate_max_key_length(cls, v: int) -> int:
        if not (1 <= v <= 1024):
            raise ValueError(f"max_key_length must be between 1 and 1024, got {v}")
        return v

    @field_validator("key_pattern")
    @classmethod
    def validate_key_pattern(cls, v: str) -> str:
        """Validate the key pattern compiles."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"key_pattern is not a valid regular expression: {e}") from e
        return v

    @field_validator("min_cacheable_status", "max_cacheable_status")
    @classmethod
    def validate_status_bounds(cls, v: int) -> int:
        if not (100 <= v <= 599):
            raise ValueError(f"cacheable status bounds must be between 100 and 599, got {v}")
        return v

    @field_validator("additional_cacheable_status_codes", mode="before")
    @classmethod
    def validate_additional_status_codes(cls, v: Any) -> list[int]:
        """Validate extra cacheable status codes.

        Accepts a list of integers or a comma-separated string (from
        environment variables).

        Raises:
            ValueError: If any code is outside 100-599.
        """
        if isinstance(v, str):
            v = [int(code.strip()) for code in v.split(",") if code.strip()]

        if not isinstance(v, (list, set, tuple)):
            raise ValueError(
                "additional_cacheable_status_codes must be a list or comma-separated string"
            )

        codes = sorted({int(code) for code in v})
        invalid = [code for code in codes if not (100 <= code <= 599)]
        if invalid:
            raise ValueError(
                f"Invalid status codes: {', '.join(str(c) for c in invalid)}. "
                "Status codes must be between 100 and 599"
            )
        return codes

    @field_validator("enabled_methods", mode="before")
    @classmethod
    def validate_enabled_methods(cls, v: Any) -> list[str]:
        """Validate and normalize enabled HTTP methods.

        Converts methods to uppercase and validates against known HTTP methods.

        Raises:
            ValueError: If any method is not a valid HTTP method.

        Example:
            >>> IdempotencyOptions(enabled_methods=["post", "put"]).enabled_methods
            ['POST', 'PUT']
        """
        if isinstance(v, str):
            # Handle comma-separated string (from environment variables)
            v = [method.strip() for method in v.split(",")]

        if not isinstance(v, list):
            raise ValueError("enabled_methods must be a list or comma-separated string")

        methods = [method.upper() for method in v]

        invalid_methods = set(methods) - VALID_HTTP_METHODS
        if invalid_methods:
            raise ValueError(
                f"Invalid HTTP methods: {', '.join(sorted(invalid_methods))}. "
                f"Valid methods are: {', '.join(sorted(VALID_HTTP_METHODS))}"
            )

        return methods

    @field_validator("store_timeout_seconds")
    @classmethod
    def validate_store_timeout_seconds(cls, v: float) -> float:
        if not (0 < v <= 60):
            raise ValueError(f"store_timeout_seconds must be greater than 0 and at most 60, got {v}")
        return v

    @model_validator(mode="after")
    def validate_cacheable_range(self) -> "IdempotencyOptions":
        """Validate the cacheable status range is not inverted.

        Raises:
            ValueError: If min_cacheable_status > max_cacheable_status.
        """
        if self.min_cacheable_status > self.max_cacheable_status:
            raise ValueError(
                f"min_cacheable_status ({self.min_cacheable_status}) must not exceed "
                f"max_cacheable_status ({self.max_cacheable_status})"
            )
        return self

    @property
    def expiration(self) -> timedelta:
        """The expiration TTL as a timedelta."""
        return timedelta(seconds=self.expiration_seconds)

    def is_cacheable_status(self, status_code: int) -> bool:
        """Whether a response with this status code may be cached.

        Example:
            >>> options = IdempotencyOptions(additional_cacheable_status_codes=[409])
            >>> options.is_cacheable_status(201), options.is_cacheable_status(409)
            (True, True)
            >>> options.is_cacheable_status(500)
            False
        """
        if self.min_cacheable_status <= status_code <= self.max_cacheable_status:
            return True
        return status_code in self.additional_cacheable_status_codes

    @classmethod
    def from_env(cls, prefix: str = "IDEMPOTENCY_") -> "IdempotencyOptions":
        """Create options from environment variables.

        Variable names are uppercase field names with the prefix, e.g.
        ``IDEMPOTENCY_HEADER_NAME``. Missing variables use the defaults.

        Args:
            prefix: Prefix for environment variable names.

        Returns:
            IdempotencyOptions populated from environment variables.
        """
        config_dict: dict[str, Any] = {}

        # Map of field names to their types for proper conversion
        field_types = {
            "header_name": str,
            "cache_prefix": str,
            "expiration_seconds": int,
            "conflict_handling": str,
            "max_key_length": int,
            "key_pattern": str,
            "min_cacheable_status": int,
            "max_cacheable_status": int,
            "additional_cacheable_status_codes": list,
            "enabled_methods": list,
            "storage_adapter": str,
            "redis_url": str,
            "database_url": str,
            "store_timeout_seconds": float,
        }

        for field_name, field_type in field_types.items():
            env_var = f"{prefix}{field_name.upper()}"
            env_value = os.environ.get(env_var)

            if env_value is not None:
                if field_type is int:
                    config_dict[field_name] = int(env_value)
                elif field_type is float:
                    config_dict[field_name] = float(env_value)
                else:
                    # Lists stay comma-separated strings for the validators
                    config_dict[field_name] = env_value

        return cls(**config_dict)

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "IdempotencyOptions":
        """Create options from a dictionary.

        Raises:
            ValidationError: If the dictionary contains invalid values.
        """
        return cls(**config_dict)
