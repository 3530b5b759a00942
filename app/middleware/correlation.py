# ==== CORRELATION ID MIDDLEWARE ==== #

"""
Correlation ID middleware for request tracing.

Assigns or propagates ``X-Correlation-Id``, exposes it to services through a
context variable (compliance events are stamped with it), wraps the request
in a span and records request latency.
"""

import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.observability.metrics import http_request_latency_seconds
from app.observability.tracing import get_tracer


# ==== MODULE INITIALIZATION ==== #

tracer = get_tracer(__name__)

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Correlation ID of the request being served, if any."""
    return _correlation_id.get()


# ==== CORRELATION MIDDLEWARE CLASS ==== #

class CorrelationMiddleware(BaseHTTPMiddleware):
    """Attach a correlation ID to every request and response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request with correlation ID tracking and latency metrics.

        Args:
            request (Request): Incoming HTTP request
            call_next (Callable): Next middleware/handler in chain

        Returns:
            Response: HTTP response with correlation ID header
        """
        # --► CORRELATION ID MANAGEMENT
        correlation_id = request.headers.get("X-Correlation-Id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = _correlation_id.set(correlation_id)

        start_time = time.perf_counter()

        try:
            with tracer.start_as_current_span("http_request") as span:
                span.set_attribute("http.method", request.method)
                span.set_attribute("http.url", str(request.url))
                span.set_attribute("correlation_id", correlation_id)

                response = await call_next(request)
                response.headers["X-Correlation-Id"] = correlation_id

                # --► METRICS COLLECTION
                route = request.scope.get("route")
                http_request_latency_seconds.labels(
                    method=request.method,
                    route=getattr(route, "path", "unmatched"),
                    status_code=str(response.status_code)
                ).observe(time.perf_counter() - start_time)

                span.set_attribute("http.status_code", response.status_code)
                return response
        finally:
            _correlation_id.reset(token)
