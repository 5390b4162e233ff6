"""Core filter logic for idempotency handling.

The filter is framework-agnostic and can be wrapped by adapters for
different web frameworks.
"""

from idempotency_filter.core.filter import IdempotencyEndpointFilter, problem_response

__all__ = ["IdempotencyEndpointFilter", "problem_response"]
