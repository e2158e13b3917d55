"""Per-request span state machine.

STARTED -> COMPLETED | FAILED. Each RequestSpan is finalized exactly once;
a second terminal transition raises SpanStateError. The lock is per
instance, so concurrent requests never contend with one another.
"""

import threading
import time
from enum import Enum

from opentelemetry import context, trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, Status, StatusCode

from otel_extra.exceptions import SpanStateError
from otel_extra.tracing import format_span_id, format_trace_id


class SpanState(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


def classify_status(status_code: int) -> tuple[StatusCode, str]:
    """Map an HTTP status code to a span status and an outcome label.

    2xx/3xx are ``success``, 4xx ``client_error``, 5xx ``server_error``.
    Informational codes leave the status unset.
    """
    if 200 <= status_code < 400:
        return StatusCode.OK, "success"
    if 400 <= status_code < 500:
        return StatusCode.ERROR, "client_error"
    if status_code >= 500:
        return StatusCode.ERROR, "server_error"
    return StatusCode.UNSET, "success"


def span_name(method: str, route: str | None) -> str:
    return f"{method} {route}" if route else method


class RequestSpan:
    """One server span and its lifecycle for a single inbound request."""

    def __init__(self, span: Span, method: str, request_id: str) -> None:
        self._span = span
        self._method = method
        self.request_id = request_id
        self._lock = threading.Lock()
        self._state = SpanState.STARTED
        self._started_at = time.perf_counter()
        self._token: object | None = None
        self.route: str | None = None
        self.status_code: int | None = None
        self.outcome: str | None = None
        self.duration: float | None = None

    @property
    def span(self) -> Span:
        return self._span

    @property
    def state(self) -> SpanState:
        return self._state

    @property
    def is_finished(self) -> bool:
        return self._state is not SpanState.STARTED

    @property
    def trace_id(self) -> str | None:
        span_context = self._span.get_span_context()
        return format_trace_id(span_context.trace_id) if span_context.is_valid else None

    @property
    def span_id(self) -> str | None:
        span_context = self._span.get_span_context()
        return format_span_id(span_context.span_id) if span_context.is_valid else None

    def activate(self, parent: Context | None = None) -> None:
        """Make the span current for the rest of the request."""
        self._token = context.attach(trace.set_span_in_context(self._span, parent))

    def deactivate(self) -> None:
        if self._token is not None:
            context.detach(self._token)  # type: ignore[arg-type]
            self._token = None

    def set_route(self, route: str | None) -> None:
        """Record the matched route template and rename the span after it."""
        if not route or self.is_finished:
            return
        self.route = route
        self._span.set_attribute("http.route", route)
        self._span.update_name(span_name(self._method, route))

    def _finish(self, state: SpanState) -> float:
        with self._lock:
            if self._state is not SpanState.STARTED:
                raise SpanStateError(
                    f"request span {self.request_id} is already {self._state.value}, "
                    f"cannot transition to {state.value}"
                )
            self._state = state
        self.duration = time.perf_counter() - self._started_at
        return self.duration

    def complete(self, status_code: int) -> None:
        """Finalize after the handler produced a response.

        Raises:
            SpanStateError: If the span was already finalized
        """
        duration = self._finish(SpanState.COMPLETED)
        code, outcome = classify_status(status_code)
        self.status_code = status_code
        self.outcome = outcome

        self._span.set_attribute("http.response.status_code", status_code)
        self._span.set_attribute("request.outcome", outcome)
        self._span.set_attribute("request.duration_ms", duration * 1000)
        if code is StatusCode.ERROR:
            self._span.set_status(Status(code, f"HTTP {status_code}"))
        else:
            self._span.set_status(Status(code))
        self._span.end()

    def fail(self, error: BaseException | str) -> None:
        """Finalize after the handler raised, was cancelled or sent no response.

        Raises:
            SpanStateError: If the span was already finalized
        """
        duration = self._finish(SpanState.FAILED)
        self.outcome = "error"

        if isinstance(error, BaseException):
            reason = str(error) or type(error).__name__
            self._span.record_exception(error, escaped=True)
            self._span.set_attribute("error.type", type(error).__qualname__)
        else:
            reason = error
            self._span.set_attribute("error.type", "_OTHER")
        self._span.set_attribute("error.reason", reason)
        self._span.set_attribute("request.outcome", self.outcome)
        self._span.set_attribute("request.duration_ms", duration * 1000)
        self._span.set_status(Status(StatusCode.ERROR, reason))
        self._span.end()

    def __repr__(self) -> str:
        return f"RequestSpan(request_id={self.request_id!r}, state={self._state.value})"
