"""ASGI integration of the request span hooks.

Usage:
    app = FastAPI()
    app.add_middleware(RequestSpanMiddleware)

Written as a pure ASGI middleware rather than BaseHTTPMiddleware so that
a cancelled request (client disconnect) still unwinds through this frame
and reaches the on-failure hook.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.metrics import Histogram, MeterProvider
from opentelemetry.trace import Tracer
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from structlog.contextvars import bound_contextvars

from otel_extra import tracing
from otel_extra.middleware.hooks import OnFailure, OnResponse, RequestInfo, SpanCreator
from otel_extra.middleware.span import RequestSpan

DURATION_METRIC = "http.server.request.duration"


def _matched_route(scope: Scope) -> str | None:
    route = scope.get("route")
    return getattr(route, "path", None)


class RequestSpanMiddleware:
    """Run one span state machine per HTTP request.

    Exactly one of on_response/on_failure fires for every request: the
    former when a response was started, the latter when the app raised,
    was cancelled or returned without responding.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        tracer: Tracer | None = None,
        meter_provider: MeterProvider | None = None,
        span_creator: SpanCreator | None = None,
        on_response: OnResponse | None = None,
        on_failure: OnFailure | None = None,
        response_headers: bool = True,
    ) -> None:
        self.app = app
        self.span_creator = span_creator or SpanCreator(tracer)
        self.on_response = on_response or OnResponse()
        self.on_failure = on_failure or OnFailure()
        self.response_headers = response_headers
        self._meter_provider = meter_provider
        self._histogram: Histogram | None = None
        self._histogram_owner: MeterProvider | None = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = RequestInfo.from_scope(scope)
        request_span = self.span_creator(request)
        status_code: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                if self.response_headers:
                    self._add_response_headers(message, request_span)
            await send(message)

        try:
            with bound_contextvars(request_id=request_span.request_id):
                try:
                    await self.app(scope, receive, send_wrapper)
                except BaseException as exc:
                    self.on_failure(request_span, exc, route=_matched_route(scope))
                    raise
                if status_code is None:
                    self.on_failure(
                        request_span,
                        "application returned without sending a response",
                        route=_matched_route(scope),
                    )
                else:
                    self.on_response(request_span, status_code, route=_matched_route(scope))
        finally:
            request_span.deactivate()
            if request_span.is_finished:
                self._record_duration(request, request_span)

    def _add_response_headers(self, message: Message, request_span: RequestSpan) -> None:
        headers = MutableHeaders(scope=message)
        headers.append("x-request-id", request_span.request_id)
        if request_span.trace_id is not None:
            headers.append("x-trace-id", request_span.trace_id)
        carrier: dict[str, str] = {}
        tracing.inject_context(carrier, trace.set_span_in_context(request_span.span))
        for name, value in carrier.items():
            headers.append(name, value)

    def _duration_histogram(self) -> Histogram:
        provider = self._meter_provider or tracing.get_meter_provider()
        if self._histogram is None or provider is not self._histogram_owner:
            self._histogram = provider.get_meter(tracing.INSTRUMENTATION_NAME).create_histogram(
                DURATION_METRIC,
                unit="s",
                description="Duration of inbound HTTP requests",
            )
            self._histogram_owner = provider
        return self._histogram

    def _record_duration(self, request: RequestInfo, request_span: RequestSpan) -> None:
        attributes: dict[str, Any] = {
            "http.request.method": request.method,
            "request.outcome": request_span.outcome,
        }
        if request_span.route:
            attributes["http.route"] = request_span.route
        if request_span.status_code is not None:
            attributes["http.response.status_code"] = request_span.status_code
        self._duration_histogram().record(request_span.duration or 0.0, attributes=attributes)
