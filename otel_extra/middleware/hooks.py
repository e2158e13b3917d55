"""The three request hooks: span creator, on-response and on-failure.

Framework-independent: they take a RequestInfo and a RequestSpan, so any
server integration only has to decide which terminal hook to call.
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from opentelemetry.trace import SpanKind, Tracer

from otel_extra import tracing
from otel_extra.middleware.span import RequestSpan, span_name
from otel_extra.subscriber import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADERS = ("x-request-id", "request-id")


def _to_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    return int(getattr(logging, level.upper()))


@dataclass(frozen=True)
class RequestInfo:
    """What the span creator needs to know about an inbound request."""

    method: str
    path: str
    route: str | None = None
    query: str = ""
    scheme: str = "http"
    host: str | None = None
    user_agent: str | None = None
    client_address: str | None = None
    http_version: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    body_size: int | None = None

    @property
    def request_id(self) -> str | None:
        for name in REQUEST_ID_HEADERS:
            value = self.headers.get(name)
            if value:
                return value
        return None

    @classmethod
    def from_scope(cls, scope: Mapping[str, Any]) -> "RequestInfo":
        """Build from an ASGI HTTP scope."""
        headers: dict[str, str] = {}
        for raw_name, raw_value in scope.get("headers", []):
            name = raw_name.decode("latin-1").lower()
            value = raw_value.decode("latin-1")
            headers[name] = f"{headers[name]},{value}" if name in headers else value

        content_length = headers.get("content-length", "")
        client = scope.get("client")
        route = scope.get("route")

        return cls(
            method=scope.get("method", "GET"),
            path=scope.get("path", "/"),
            route=getattr(route, "path", None),
            query=scope.get("query_string", b"").decode("latin-1"),
            scheme=scope.get("scheme", "http"),
            host=headers.get("host"),
            user_agent=headers.get("user-agent"),
            client_address=client[0] if client else None,
            http_version=scope.get("http_version"),
            headers=headers,
            body_size=int(content_length) if content_length.isdigit() else None,
        )


class SpanCreator:
    """Open the server span for a request and make it current.

    The parent comes from the inbound ``traceparent``/``tracestate``
    headers; without them the span starts a new trace.
    """

    def __init__(self, tracer: Tracer | None = None, level: int | str = logging.DEBUG) -> None:
        self._tracer = tracer
        self.level = _to_level(level)

    def __call__(self, request: RequestInfo) -> RequestSpan:
        parent = tracing.extract_context(request.headers)
        request_id = request.request_id or uuid.uuid4().hex

        attributes: dict[str, Any] = {
            "http.request.method": request.method,
            "url.path": request.path,
            "url.scheme": request.scheme,
            "request_id": request_id,
        }
        optional = {
            "http.route": request.route,
            "url.query": request.query or None,
            "server.address": request.host,
            "user_agent.original": request.user_agent,
            "client.address": request.client_address,
            "network.protocol.version": request.http_version,
            "http.request.body.size": request.body_size,
        }
        attributes.update({key: value for key, value in optional.items() if value is not None})

        tracer = self._tracer or tracing.get_tracer()
        span = tracer.start_span(
            span_name(request.method, request.route),
            context=parent,
            kind=SpanKind.SERVER,
            attributes=attributes,
        )
        request_span = RequestSpan(span, request.method, request_id)
        request_span.route = request.route
        if request_span.trace_id is not None:
            span.set_attribute("trace_id", request_span.trace_id)
        request_span.activate(parent)

        logger.log(
            self.level,
            "request_started",
            method=request.method,
            path=request.path,
            request_id=request_id,
        )
        return request_span


class OnResponse:
    """Finalize a span whose handler returned a response."""

    def __init__(self, level: int | str = logging.DEBUG) -> None:
        self.level = _to_level(level)

    def __call__(
        self,
        request_span: RequestSpan,
        status_code: int,
        route: str | None = None,
    ) -> None:
        request_span.set_route(route)
        request_span.complete(status_code)
        logger.log(
            self.level,
            "request_finished",
            status_code=status_code,
            outcome=request_span.outcome,
            route=request_span.route,
            duration_ms=round((request_span.duration or 0.0) * 1000, 3),
            request_id=request_span.request_id,
        )


class OnFailure:
    """Finalize a span whose handler raised, was cancelled or never responded."""

    def __init__(self, level: int | str = logging.ERROR) -> None:
        self.level = _to_level(level)

    def __call__(
        self,
        request_span: RequestSpan,
        error: BaseException | str,
        route: str | None = None,
    ) -> None:
        request_span.set_route(route)
        request_span.fail(error)
        logger.log(
            self.level,
            "request_failed",
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__ if isinstance(error, BaseException) else None,
            route=request_span.route,
            duration_ms=round((request_span.duration or 0.0) * 1000, 3),
            request_id=request_span.request_id,
        )
