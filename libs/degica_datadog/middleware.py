"""FastAPI middleware opening the inbound request span."""

import time
import uuid
from typing import Any

import structlog
from fastapi import Request, Response
from opentelemetry.trace import SpanKind
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import set_correlation_id
from .pipeline import INBOUND_REQUEST_SPAN_NAME, RESOURCE_ATTRIBUTE
from .statsd import MetricEmitter, get_emitter
from .tracing import Tracing, get_tracing

logger = structlog.get_logger(__name__)

REQUEST_DURATION_METRIC = "http.request.duration"


class DatadogMiddleware(BaseHTTPMiddleware):
    """Traces and times every request.

    The span is named :data:`INBOUND_REQUEST_SPAN_NAME` and carries the raw
    path in ``http.url``, which is what the health check and static asset
    filters of the span pipeline look at.
    """

    def __init__(
        self,
        app: Any,
        tracing: Tracing | None = None,
        emitter: MetricEmitter | None = None,
    ):
        super().__init__(app)
        self._tracing = tracing
        self._emitter = emitter

    @property
    def tracing(self) -> Tracing:
        return self._tracing or get_tracing()

    @property
    def emitter(self) -> MetricEmitter:
        return self._emitter or get_emitter()

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        start_time = time.time()
        tags = {
            "http.method": request.method,
            "http.url": request.url.path,
            "span.kind": "server",
            "component": "starlette",
            "correlation_id": correlation_id,
        }

        with self.tracing.span(
            INBOUND_REQUEST_SPAN_NAME, tags=tags, kind=SpanKind.SERVER
        ) as span:
            try:
                with self.emitter.with_timing(
                    REQUEST_DURATION_METRIC, tags={"method": request.method}
                ):
                    response = await call_next(request)

            except Exception as e:
                # The exception itself is recorded when it leaves the span.
                duration = time.time() - start_time
                span.set_attribute("http.status_code", 500)

                logger.error(
                    "Request failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=round(duration * 1000, 2),
                    correlation_id=correlation_id,
                    exc_info=True,
                )
                raise

            duration = time.time() - start_time
            span.set_attribute("http.status_code", response.status_code)
            span.set_attribute(
                RESOURCE_ATTRIBUTE,
                f"{request.method} {self._get_route_pattern(request)}",
            )

        response.headers["X-Correlation-ID"] = correlation_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
            correlation_id=correlation_id,
        )

        return response

    def _get_route_pattern(self, request: Request) -> str:
        """Extract the route pattern from the request."""
        if hasattr(request, "scope") and "route" in request.scope:
            route = request.scope["route"]
            if hasattr(route, "path"):
                return route.path

        return request.url.path
