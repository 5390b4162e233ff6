"""Framework-agnostic endpoint filter for idempotency handling.

This module provides the orchestration that sits in front of a single
endpoint handler. It is framework-agnostic and can be wrapped by adapters
for different web frameworks.

For each request the filter:
1. Extracts the idempotency key from the configured header
2. Validates the key (400 on failure, before any store access)
3. Scopes the key to the endpoint as a composite key
4. Asks the store whether the composite key was already processed
5. Replays, rejects (409) or executes the handler and persists the result

Examples:
    Using the filter directly::

        from idempotency_filter.config import IdempotencyOptions
        from idempotency_filter.core.filter import IdempotencyEndpointFilter
        from idempotency_filter.storage.memory import MemoryStore

        endpoint_filter = IdempotencyEndpointFilter(MemoryStore(), IdempotencyOptions())

        async def handler(request):
            return EndpointResponse(201, {"content-type": "application/json"}, b'{"id": 1}')

        response = await endpoint_filter.invoke(request, handler)
"""

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from idempotency_filter.config import ConflictHandling, IdempotencyOptions
from idempotency_filter.exceptions import ConflictError, InvalidKeyError
from idempotency_filter.fingerprint import compute_body_hash
from idempotency_filter.keys import CompositeKey, IdempotencyKey
from idempotency_filter.models import CachedResponse, EndpointRequest, EndpointResponse
from idempotency_filter.observability.logging import get_logger
from idempotency_filter.observability.metrics import record_execution_time, record_request
from idempotency_filter.storage.base import IdempotencyKeyStore
from idempotency_filter.utils.headers import (
    STATUS_CACHED,
    STATUS_CREATED,
    add_idempotency_headers,
    get_header_value,
)

logger = get_logger(__name__)

Handler = Callable[[EndpointRequest], Awaitable[EndpointResponse]]

PROBLEM_CONTENT_TYPE = "application/problem+json"

# RFC 9110 section links used as problem "type" values
_PROBLEM_TYPES = {
    400: "https://tools.ietf.org/html/rfc9110#section-15.5.1",
    409: "https://tools.ietf.org/html/rfc9110#section-15.5.10",
}

_PROBLEM_TITLES = {
    400: "Bad Request",
    409: "Conflict",
}


def problem_response(status: int, detail: str) -> EndpointResponse:
    """Build an RFC 7807 problem response produced by the filter itself.

    Example:
        >>> problem_response(409, "duplicate").headers["content-type"]
        'application/problem+json'
    """
    payload = {
        "type": _PROBLEM_TYPES.get(status, "about:blank"),
        "title": _PROBLEM_TITLES.get(status, "Error"),
        "status": status,
        "detail": detail,
    }
    return EndpointResponse(
        status=status,
        headers={"content-type": PROBLEM_CONTENT_TYPE},
        body=json.dumps(payload).encode("utf-8"),
    )


class IdempotencyEndpointFilter:
    """Endpoint filter that deduplicates requests by idempotency key.

    One instance is shared by all requests; it keeps no per-request state.

    Attributes:
        store: Idempotency key store
        options: Filter options
    """

    def __init__(
        self,
        store: IdempotencyKeyStore,
        options: IdempotencyOptions | None = None,
    ) -> None:
        self.store = store
        self.options = options or IdempotencyOptions()

    async def invoke(self, request: EndpointRequest, handler: Handler) -> EndpointResponse:
        """Run a request through the filter.

        Args:
            request: The normalized inbound request
            handler: The downstream endpoint handler

        Returns:
            The handler's response, a replayed response, or a 400/409
            problem response.

        Raises:
            Exception: Whatever the handler raises, and store errors the
                backend chose to propagate.
        """
        log = logger.bind(
            method=request.method,
            route=request.route,
            trace_id=request.trace_id,
        )

        raw_key = get_header_value(request.headers, self.options.header_name)
        try:
            key = IdempotencyKey.parse(
                raw_key,
                max_length=self.options.max_key_length,
                pattern=self.options.key_pattern,
                header_name=self.options.header_name,
            )
        except InvalidKeyError as e:
            log.warning(
                "idempotency.key_rejected",
                header=self.options.header_name,
                reason=e.reason.value,
            )
            record_request("rejected", 400)
            return problem_response(400, e.message)

        composite = CompositeKey.build(request.method, request.route, key)
        log = log.bind(composite_key=composite.value)

        processed, cached = await self.store.is_processed(composite)
        if processed:
            return self._handle_duplicate(key, cached, log)

        return await self._execute(request, handler, composite, log)

    def _handle_duplicate(
        self,
        key: IdempotencyKey,
        cached: CachedResponse | None,
        log: Any,
    ) -> EndpointResponse:
        if self.options.conflict_handling == ConflictHandling.CONFLICT_RESPONSE or cached is None:
            conflict = ConflictError(key.value)
            log.warning(
                "idempotency.conflict",
                conflict_handling=self.options.conflict_handling.value,
                cached_response_present=cached is not None,
            )
            record_request("conflict", 409)
            return problem_response(409, conflict.message)

        log.info(
            "idempotency.replayed",
            status_code=cached.status_code,
            expires_at=cached.expires_at.isoformat(),
        )
        record_request("replayed", cached.status_code)
        return EndpointResponse(
            status=cached.status_code,
            headers=add_idempotency_headers(
                {"content-type": cached.content_type},
                STATUS_CACHED,
                cached.expires_at,
            ),
            body=cached.get_body_bytes(),
        )

    async def _execute(
        self,
        request: EndpointRequest,
        handler: Handler,
        composite: CompositeKey,
        log: Any,
    ) -> EndpointResponse:
        start_time = time.perf_counter()
        response = await handler(request)
        execution_time_ms = int((time.perf_counter() - start_time) * 1000)
        record_execution_time(execution_time_ms)

        if not self.options.is_cacheable_status(response.status):
            log.debug(
                "idempotency.not_cached",
                status_code=response.status,
            )
            record_request("uncached", response.status)
            response.headers = add_idempotency_headers(response.headers, STATUS_CREATED)
            return response

        cached = self._snapshot(request, response, log)
        if cached is None:
            record_request("uncached", response.status)
            response.headers = add_idempotency_headers(response.headers, STATUS_CREATED)
            return response

        stored = await self.store.mark_processed(composite, cached)
        if not stored:
            log.info(
                "idempotency.not_persisted",
                status_code=response.status,
                execution_time_ms=execution_time_ms,
            )
            record_request("uncached", response.status)
            response.headers = add_idempotency_headers(response.headers, STATUS_CREATED)
            return response

        log.info(
            "idempotency.created",
            status_code=response.status,
            execution_time_ms=execution_time_ms,
        )
        record_request("created", response.status)
        response.headers = add_idempotency_headers(
            response.headers,
            STATUS_CREATED,
            cached.expires_at,
        )
        return response

    def _snapshot(
        self,
        request: EndpointRequest,
        response: EndpointResponse,
        log: Any,
    ) -> CachedResponse | None:
        """Turn a handler response into a storable snapshot, or None."""
        try:
            body = response.body.decode("utf-8") if response.body else None
        except UnicodeDecodeError:
            log.warning(
                "idempotency.body_not_text",
                status_code=response.status,
                body_size=len(response.body),
            )
            return None

        try:
            return CachedResponse.create(
                status_code=response.status,
                body=body,
                content_type=response.content_type,
                ttl_seconds=self.options.expiration_seconds,
                request_body_hash=compute_body_hash(request.body),
            )
        except ValidationError as e:
            log.warning(
                "idempotency.snapshot_invalid",
                status_code=response.status,
                error=str(e),
            )
            return None


__all__ = [
    "IdempotencyEndpointFilter",
    "Handler",
    "problem_response",
    "PROBLEM_CONTENT_TYPE",
]
