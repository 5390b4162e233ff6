"""Framework adapters for the idempotency filter.

- asgi.py: ASGI middleware for FastAPI, Starlette, etc.

The adapters handle the conversion between framework-specific request/response
objects and the filter's EndpointRequest/EndpointResponse.
"""

from idempotency_filter.adapters.asgi import ASGIIdempotencyMiddleware, idempotent

__all__ = ["ASGIIdempotencyMiddleware", "idempotent"]
