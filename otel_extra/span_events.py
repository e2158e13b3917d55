"""Span lifecycle log lines.

A span processor that writes one log record when a span opens and one
when it closes, so span boundaries show up in the log stream next to the
records emitted inside them.
"""

import logging

from opentelemetry.context import Context
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor

from otel_extra.config.models import SpanEvents
from otel_extra.subscriber import get_logger
from otel_extra.tracing import format_span_id, format_trace_id

logger = get_logger(__name__)


class SpanLifecycleLogger(SpanProcessor):
    """Log ``span_opened`` and/or ``span_closed`` for every span.

    The records carry the span's own trace_id/span_id rather than those of
    the span current at the time of the call.
    """

    def __init__(self, span_events: SpanEvents = "full", level: int = logging.INFO) -> None:
        self.log_opened = span_events in ("new", "full")
        self.log_closed = span_events in ("close", "full")
        self.level = level

    def on_start(self, span: Span, parent_context: Context | None = None) -> None:
        if not self.log_opened:
            return
        span_context = span.get_span_context()
        logger.log(
            self.level,
            "span_opened",
            span_name=span.name,
            trace_id=format_trace_id(span_context.trace_id),
            span_id=format_span_id(span_context.span_id),
        )

    def on_end(self, span: ReadableSpan) -> None:
        if not self.log_closed:
            return
        span_context = span.get_span_context()
        duration_ms = None
        if span.start_time is not None and span.end_time is not None:
            duration_ms = round((span.end_time - span.start_time) / 1_000_000, 3)
        logger.log(
            self.level,
            "span_closed",
            span_name=span.name,
            status=span.status.status_code.name,
            duration_ms=duration_ms,
            trace_id=format_trace_id(span_context.trace_id),
            span_id=format_span_id(span_context.span_id),
        )
