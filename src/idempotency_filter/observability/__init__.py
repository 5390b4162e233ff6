"""Observability utilities for the idempotency filter.

This package provides monitoring and debugging capabilities:
- Prometheus metrics for request outcomes and store health
- Structured logging with contextual information
"""

from idempotency_filter.observability.logging import configure_logging, get_logger
from idempotency_filter.observability.metrics import (
    record_cleanup,
    record_execution_time,
    record_request,
    record_store_failure,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "record_request",
    "record_execution_time",
    "record_store_failure",
    "record_cleanup",
]
