"""Prometheus metrics for the idempotency filter.

Metrics include:

- Request counters by outcome (created, replayed, conflict, rejected, uncached)
- Handler execution time histogram
- Recovered store failures by backend and operation
- Expired-record purge tracking

Examples:
    Recording a replayed request::

        from idempotency_filter.observability.metrics import record_request

        record_request(result="replayed", status_code=201)

    Recording a fail-open cache read::

        record_store_failure(backend="redis", operation="read")
"""

from prometheus_client import Counter, Histogram

# Labels: result (created, replayed, conflict, rejected, uncached), status_code
requests_total = Counter(
    "idempotency_requests_total",
    "Total number of requests processed by the idempotency filter",
    ["result", "status_code"],
)

# Only tracks handler executions, not replays or rejections
execution_time_seconds = Histogram(
    "idempotency_execution_time_seconds",
    "Downstream handler execution time in seconds (first-seen keys only)",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

store_failures_total = Counter(
    "idempotency_store_failures_total",
    "Store failures recovered locally (fail-open reads, fail-safe writes)",
    ["backend", "operation"],
)

cleanup_operations = Counter(
    "idempotency_cleanup_operations_total",
    "Total number of expired-record purges performed",
)

cleanup_records_removed = Counter(
    "idempotency_cleanup_records_removed_total",
    "Total number of expired records removed by purges",
)


def record_request(result: str, status_code: int) -> None:
    """Record a processed request.

    Args:
        result: The outcome (created, replayed, conflict, rejected, uncached)
        status_code: HTTP status code of the response
    """
    requests_total.labels(result=result, status_code=str(status_code)).inc()


def record_execution_time(exec_time_ms: int) -> None:
    """Record handler execution time.

    This should only be called for handler executions, not replays.

    Args:
        exec_time_ms: Execution time in milliseconds
    """
    execution_time_seconds.observe(exec_time_ms / 1000.0)


def record_store_failure(backend: str, operation: str) -> None:
    """Record a store failure that was recovered locally.

    Args:
        backend: Store backend name (redis, sql, memory)
        operation: "read", "write" or "remove"
    """
    store_failures_total.labels(backend=backend, operation=operation).inc()


def record_cleanup(records_removed: int) -> None:
    """Record a purge of expired records.

    Args:
        records_removed: Number of expired records removed
    """
    cleanup_operations.inc()
    cleanup_records_removed.inc(records_removed)
