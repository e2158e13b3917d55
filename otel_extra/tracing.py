"""Trace context helpers and access to the installed providers.

Provides W3C Trace Context propagation, trace/span id lookup for log
correlation, and tracer/meter access that prefers the providers installed
by this library over the OpenTelemetry API globals.
"""

from collections.abc import Generator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.context import Context
from opentelemetry.metrics import Meter, MeterProvider
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer, TracerProvider
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

INSTRUMENTATION_NAME = "otel_extra"

# W3C Trace Context propagator
_propagator = TraceContextTextMapPropagator()

# Providers registered by init_tracer_provider/init_meter_provider
_tracer_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None


def register_tracer_provider(provider: TracerProvider | None) -> None:
    """Make ``provider`` the one returned by get_tracer (None clears it)."""
    global _tracer_provider
    _tracer_provider = provider


def register_meter_provider(provider: MeterProvider | None) -> None:
    """Make ``provider`` the one returned by get_meter (None clears it)."""
    global _meter_provider
    _meter_provider = provider


def release_tracer_provider(provider: TracerProvider) -> None:
    """Forget ``provider`` if it is the registered one."""
    global _tracer_provider
    if _tracer_provider is provider:
        _tracer_provider = None


def release_meter_provider(provider: MeterProvider) -> None:
    """Forget ``provider`` if it is the registered one."""
    global _meter_provider
    if _meter_provider is provider:
        _meter_provider = None


def registered_providers() -> tuple[TracerProvider | None, MeterProvider | None]:
    """Providers registered by this library, without the API fallback."""
    return _tracer_provider, _meter_provider


def get_tracer_provider() -> TracerProvider:
    """Return the registered tracer provider, or the API global."""
    return _tracer_provider if _tracer_provider is not None else trace.get_tracer_provider()


def get_meter_provider() -> MeterProvider:
    """Return the registered meter provider, or the API global."""
    return _meter_provider if _meter_provider is not None else metrics.get_meter_provider()


def get_tracer(name: str = INSTRUMENTATION_NAME) -> Tracer:
    """Get a tracer from the registered provider.

    Returns a no-op tracer when nothing has been configured.
    """
    return get_tracer_provider().get_tracer(name)


def get_meter(name: str = INSTRUMENTATION_NAME) -> Meter:
    """Get a meter from the registered provider."""
    return get_meter_provider().get_meter(name)


def extract_context(headers: Mapping[str, str]) -> Context:
    """Extract trace context from HTTP headers (traceparent/tracestate).

    Args:
        headers: Header mapping; keys are matched case-insensitively

    Returns:
        Context carrying the remote span, or an empty context
    """
    carrier = {key.lower(): value for key, value in headers.items()}
    return _propagator.extract(carrier=carrier)


def inject_context(headers: MutableMapping[str, str], context: Context | None = None) -> None:
    """Inject W3C trace context headers for an outbound call.

    Args:
        headers: Header mapping to inject into
        context: Context to inject (current if not specified)
    """
    _propagator.inject(carrier=headers, context=context)


def format_trace_id(trace_id: int) -> str:
    return format(trace_id, "032x")


def format_span_id(span_id: int) -> str:
    return format(span_id, "016x")


def get_current_trace_id() -> str | None:
    """Get the current trace ID as a hex string, or None outside a span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return format_trace_id(span_context.trace_id)
    return None


def get_current_span_id() -> str | None:
    """Get the current span ID as a hex string, or None outside a span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return format_span_id(span_context.span_id)
    return None


@contextmanager
def create_span(
    name: str,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: dict[str, Any] | None = None,
    context: Context | None = None,
) -> Generator[Span, None, None]:
    """Create a new span as a context manager.

    Args:
        name: Span name
        kind: Span kind (INTERNAL, SERVER, CLIENT, etc.)
        attributes: Initial span attributes
        context: Parent context (current if not specified)

    Yields:
        The created span
    """
    with get_tracer().start_as_current_span(
        name,
        kind=kind,
        attributes=attributes or {},
        context=context,
    ) as span:
        yield span


def record_exception(span: Span, exception: BaseException, escaped: bool = True) -> None:
    """Record an exception on a span and mark it as errored."""
    span.record_exception(exception, escaped=escaped)
    span.set_status(Status(StatusCode.ERROR, str(exception) or type(exception).__name__))
