"""ASGI middleware adapter for FastAPI and Starlette applications.

This module plugs the endpoint filter into an ASGI application. Endpoints
opt in with the :func:`idempotent` decorator; everything else passes
straight through.

The middleware:
1. Resolves the route template the request matches (mounts included)
2. Skips requests whose method is not enabled or whose endpoint did not opt in
3. Converts the Starlette request into an EndpointRequest
4. Runs the filter, normalizing the downstream response into an EndpointResponse
5. Converts the filter's response back into a Starlette Response

Examples:
    FastAPI integration::

        from fastapi import FastAPI
        from idempotency_filter.adapters.asgi import ASGIIdempotencyMiddleware, idempotent
        from idempotency_filter.config import IdempotencyOptions
        from idempotency_filter.storage.memory import MemoryStore

        app = FastAPI()

        app.add_middleware(
            ASGIIdempotencyMiddleware,
            store=MemoryStore(),
            options=IdempotencyOptions(conflict_handling="CachedResult"),
        )

        @app.post("/orders")
        @idempotent
        async def create_order(order: OrderIn):
            return {"status": "created"}

    Starlette integration::

        from starlette.applications import Starlette
        from starlette.middleware import Middleware

        middleware = [
            Middleware(
                ASGIIdempotencyMiddleware,
                store=store,
                options=options,
            )
        ]

        app = Starlette(routes=routes, middleware=middleware)
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response
from starlette.routing import BaseRoute, Match, Mount
from starlette.types import Scope

from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.core.filter import IdempotencyEndpointFilter
from idempotency_filter.models import EndpointRequest, EndpointResponse
from idempotency_filter.storage.base import IdempotencyKeyStore
from idempotency_filter.utils.headers import merge_header_pairs

IDEMPOTENT_ATTR = "__idempotent__"

F = TypeVar("F", bound=Callable[..., Any])


def idempotent(func: F) -> F:
    """Mark an endpoint as requiring an idempotency key.

    The endpoint itself is returned unchanged, so the decorator can sit
    under any framework route decorator.
    """
    setattr(func, IDEMPOTENT_ATTR, True)
    return func


def is_idempotent(endpoint: Any) -> bool:
    """Whether an endpoint was marked with :func:`idempotent`."""
    return bool(getattr(endpoint, IDEMPOTENT_ATTR, False))


def resolve_route(routes: Sequence[BaseRoute], scope: Scope) -> tuple[str, Any] | None:
    """Find the route template and endpoint a request scope fully matches.

    Mounted sub-applications are searched recursively; the returned
    template is the mount path joined with the inner route path.

    Returns:
        ``(route_template, endpoint)``, or None when no route fully matches.
    """
    for route in routes:
        match, child_scope = route.matches(scope)
        if match != Match.FULL:
            continue

        if isinstance(route, Mount):
            resolved = resolve_route(route.routes, {**scope, **child_scope})
            if resolved is None:
                return None
            template, endpoint = resolved
            return f"{route.path}{template}", endpoint

        return getattr(route, "path", scope["path"]), getattr(route, "endpoint", None)

    return None


class ASGIIdempotencyMiddleware(BaseHTTPMiddleware):
    """ASGI middleware for idempotency handling.

    Attributes:
        store: Idempotency key store
        options: Filter options
        endpoint_filter: Core filter instance
    """

    def __init__(
        self,
        app: Any,
        store: IdempotencyKeyStore,
        options: IdempotencyOptions | None = None,
    ) -> None:
        """Initialize the ASGI middleware.

        Args:
            app: The ASGI application
            store: Idempotency key store
            options: Filter options (uses defaults if not provided)
        """
        super().__init__(app)
        self.store = store
        self.options = options or IdempotencyOptions()
        self.endpoint_filter = IdempotencyEndpointFilter(store, self.options)

    async def dispatch(
        self,
        request: StarletteRequest,
        call_next: Callable[[StarletteRequest], Awaitable[Response]],
    ) -> Response:
        """Process an ASGI request with idempotency handling.

        Args:
            request: The Starlette request object
            call_next: Function to call the next middleware/handler

        Returns:
            Starlette Response object
        """
        if request.method.upper() not in self.options.enabled_methods:
            return await call_next(request)

        routes = getattr(request.scope.get("app"), "routes", None) or []
        resolved = resolve_route(routes, request.scope)
        if resolved is None or not is_idempotent(resolved[1]):
            return await call_next(request)

        route_template, _ = resolved
        endpoint_request = await self._convert_request(request, route_template)

        async def handler(_req: EndpointRequest) -> EndpointResponse:
            response = await call_next(request)
            return await self._read_response(response)

        result = await self.endpoint_filter.invoke(endpoint_request, handler)

        return self._convert_response(result)

    async def _convert_request(
        self,
        request: StarletteRequest,
        route_template: str,
    ) -> EndpointRequest:
        """Convert a Starlette request to an EndpointRequest.

        A header sent more than once keeps its first value.

        Args:
            request: Starlette request object
            route_template: The matched route template

        Returns:
            EndpointRequest object
        """
        body = await request.body()

        headers: dict[str, str] = {}
        for key, value in request.headers.items():
            headers.setdefault(key, value)

        return EndpointRequest(
            method=request.method,
            route=route_template,
            path=request.url.path,
            headers=headers,
            body=body,
            trace_id=self._extract_trace_id(request),
        )

    async def _read_response(self, response: Response) -> EndpointResponse:
        """Drain a downstream response into an EndpointResponse."""
        body = b""
        if hasattr(response, "body_iterator"):
            async for chunk in response.body_iterator:
                if isinstance(chunk, (bytes, bytearray, memoryview)):
                    body += bytes(chunk)
                else:
                    body += chunk.encode("utf-8")
        else:
            body_attr = response.body if hasattr(response, "body") else b""
            body = bytes(body_attr)

        raw_headers = [
            (key.decode("latin-1"), value.decode("latin-1"))
            for key, value in response.raw_headers
        ]

        return EndpointResponse(
            status=response.status_code,
            headers=dict(raw_headers[::-1]),
            body=body,
            raw_headers=raw_headers,
        )

    def _convert_response(self, response: EndpointResponse) -> Response:
        """Convert an EndpointResponse to a Starlette Response.

        Repeated header fields from the handler are kept as separate fields.

        Args:
            response: Filter response

        Returns:
            Starlette Response object
        """
        result = Response(content=response.body, status_code=response.status)

        # Starlette recomputes the length from the body
        for key, value in merge_header_pairs(response.raw_headers, response.headers):
            if key.lower() != "content-length":
                result.headers.append(key, value)

        return result

    def _extract_trace_id(self, request: StarletteRequest) -> str | None:
        """Extract distributed tracing ID from request headers.

        Looks for common tracing headers like X-Trace-Id, X-Request-Id, etc.

        Args:
            request: Starlette request object

        Returns:
            Trace ID if found, None otherwise
        """
        trace_headers = [
            "x-trace-id",
            "x-request-id",
            "x-correlation-id",
            "traceparent",
        ]

        for header in trace_headers:
            value = request.headers.get(header)
            if value:
                return value

        return None
