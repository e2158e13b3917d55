"""otel_extra - tracing, metrics and structured logging bootstrap.

Usage:
    from otel_extra import Logger

    with Logger("orders").with_sample_ratio(0.5).init():
        serve()
"""

from otel_extra.config import FileOutputConfig, LogFormat, LoggerConfig, LoggerSettings
from otel_extra.exceptions import (
    ExporterInitError,
    ExportFailure,
    InvalidConfigError,
    OtelExtraError,
    ShutdownError,
    SpanStateError,
    SubscriberInitError,
)
from otel_extra.guard import GuardState, ProviderGuard
from otel_extra.logger import Logger, init_logger_from_env, init_logging, init_logging_from_env
from otel_extra.middleware import (
    OnFailure,
    OnResponse,
    RequestInfo,
    RequestSpan,
    RequestSpanMiddleware,
    SpanCreator,
    SpanState,
)
from otel_extra.providers import (
    MeterProviderHandle,
    TracerProviderHandle,
    init_meter_provider,
    init_tracer_provider,
)
from otel_extra.resource import build_resource
from otel_extra.span_events import SpanLifecycleLogger
from otel_extra.subscriber import get_logger
from otel_extra.tracing import (
    create_span,
    extract_context,
    get_current_span_id,
    get_current_trace_id,
    get_meter,
    get_tracer,
    inject_context,
    record_exception,
)

__version__ = "0.1.0"

__all__ = [
    "ExportFailure",
    "ExporterInitError",
    "FileOutputConfig",
    "GuardState",
    "InvalidConfigError",
    "LogFormat",
    "Logger",
    "LoggerConfig",
    "LoggerSettings",
    "MeterProviderHandle",
    "OnFailure",
    "OnResponse",
    "OtelExtraError",
    "ProviderGuard",
    "RequestInfo",
    "RequestSpan",
    "RequestSpanMiddleware",
    "ShutdownError",
    "SpanCreator",
    "SpanLifecycleLogger",
    "SpanState",
    "SpanStateError",
    "SubscriberInitError",
    "TracerProviderHandle",
    "build_resource",
    "create_span",
    "extract_context",
    "get_current_span_id",
    "get_current_trace_id",
    "get_logger",
    "get_meter",
    "get_tracer",
    "init_logger_from_env",
    "init_logging",
    "init_logging_from_env",
    "init_meter_provider",
    "init_tracer_provider",
    "inject_context",
    "record_exception",
]
