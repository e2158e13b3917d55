"""Process-wide structured-log subscriber.

Configures structlog on top of standard-library handlers so one processor
chain feeds every writer (console, rotating file). Each record carries
timestamp, level, message, service name and, inside an active span, the
trace_id/span_id used to correlate log lines with traces. Records emitted
inside a recording span are also attached to it as span events.

Exactly one subscriber may be installed per process; a second install
fails loudly until the first is uninstalled.
"""

import logging
import logging.handlers
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, TextIO, cast

import structlog
from opentelemetry import trace
from opentelemetry.metrics import MeterProvider
from structlog.types import EventDict, Processor, WrappedLogger

from otel_extra import tracing
from otel_extra.config.models import LogFormat, LoggerConfig
from otel_extra.exceptions import SubscriberInitError

# TimedRotatingFileHandler "when" per rotation policy
_ROTATION_WHEN = {"minutely": "M", "hourly": "H", "daily": "midnight"}

_NOISY_LOGGERS = ("opentelemetry", "urllib3", "grpc")

_RESERVED_KEYS = frozenset({"event", "level", "timestamp", "logger", "trace_id", "span_id", "service"})

METRIC_PREFIXES = ("monotonic_counter.", "counter.", "histogram.")


@dataclass
class _Installation:
    handlers: list[logging.Handler]
    previous_level: int
    service_name: str
    # Levels of named loggers before install, restored on uninstall
    logger_levels: dict[str, int] = field(default_factory=dict)


_install_lock = threading.Lock()
_installation: _Installation | None = None


def ensure_not_installed() -> None:
    """Fail if a subscriber is already installed in this process.

    Raises:
        SubscriberInitError: Naming the service that owns the subscriber
    """
    if _installation is not None:
        raise SubscriberInitError(
            f"a log subscriber is already installed for "
            f"service {_installation.service_name!r}"
        )


def add_service_name(service_name: str) -> Processor:
    """Processor that stamps the service name on every record."""

    def processor(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def add_trace_context(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    """Add trace_id/span_id of the active span, if any.

    Ids passed explicitly by the caller are kept.
    """
    if "trace_id" in event_dict:
        return event_dict
    trace_id = tracing.get_current_trace_id()
    if trace_id is not None:
        event_dict["trace_id"] = trace_id
        event_dict["span_id"] = tracing.get_current_span_id()
    return event_dict


class SpanEventBridge:
    """Processor that mirrors log records onto the active span as events."""

    def __call__(
        self,
        _logger: WrappedLogger,
        method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        span = trace.get_current_span()
        if not span.is_recording():
            return event_dict

        attributes: dict[str, Any] = {
            key: value
            for key, value in event_dict.items()
            if key not in _RESERVED_KEYS
            and not key.startswith("_")
            and isinstance(value, (str, bool, int, float))
        }
        attributes["level"] = str(event_dict.get("level", method_name))
        span.add_event(str(event_dict.get("event", "")), attributes=attributes)
        return event_dict


class MetricsBridge:
    """Processor that turns prefixed fields into metric measurements.

    ``monotonic_counter.<name>`` adds to a counter, ``counter.<name>`` to an
    up-down counter and ``histogram.<name>`` records on a histogram. The
    fields are removed from the record.
    """

    def __init__(self, meter_provider: MeterProvider | None = None) -> None:
        self._meter_provider = meter_provider
        self._instruments: dict[str, Any] = {}
        self._lock = threading.Lock()

    def __call__(
        self,
        _logger: WrappedLogger,
        _method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        metric_keys = [key for key in event_dict if key.startswith(METRIC_PREFIXES)]
        for key in metric_keys:
            value = event_dict.pop(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            kind, _, name = key.partition(".")
            instrument = self._instrument(kind, name)
            if kind == "histogram":
                instrument.record(value)
            else:
                instrument.add(value)
        return event_dict

    def _instrument(self, kind: str, name: str) -> Any:
        cache_key = f"{kind}.{name}"
        instrument = self._instruments.get(cache_key)
        if instrument is not None:
            return instrument

        with self._lock:
            instrument = self._instruments.get(cache_key)
            if instrument is None:
                provider = self._meter_provider or tracing.get_meter_provider()
                meter = provider.get_meter(tracing.INSTRUMENTATION_NAME)
                if kind == "monotonic_counter":
                    instrument = meter.create_counter(name)
                elif kind == "counter":
                    instrument = meter.create_up_down_counter(name)
                else:
                    instrument = meter.create_histogram(name)
                self._instruments[cache_key] = instrument
            return instrument


def build_processors(
    config: LoggerConfig,
    meter_provider: MeterProvider | None = None,
    bridges: bool = True,
) -> list[Processor]:
    """Build the processor chain shared by every writer."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service_name(config.service_name),
        add_trace_context,
    ]
    if bridges:
        processors.append(SpanEventBridge())
        processors.append(MetricsBridge(meter_provider))
    processors.append(structlog.processors.StackInfoRenderer())
    if config.format is not LogFormat.PRETTY:
        processors.append(structlog.processors.format_exc_info)
    return processors


def build_renderer(log_format: LogFormat, colors: bool) -> Processor:
    """Select the final renderer for a writer."""
    if log_format is LogFormat.JSON:
        return structlog.processors.JSONRenderer()
    if log_format is LogFormat.PRETTY:
        return structlog.dev.ConsoleRenderer(colors=colors)
    return structlog.processors.KeyValueRenderer(
        key_order=["timestamp", "level", "event"],
        drop_missing=True,
    )


def _build_handlers(config: LoggerConfig, stream: TextIO | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if config.console_enabled:
        handlers.append(logging.StreamHandler(stream or sys.stdout))

    if config.file.enabled:
        directory = config.file.directory
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / f"{config.log_file_prefix}.log"
            when = _ROTATION_WHEN.get(config.file.rotation)
            if when is None:
                handlers.append(logging.FileHandler(path, encoding="utf-8"))
            else:
                handlers.append(
                    logging.handlers.TimedRotatingFileHandler(
                        path,
                        when=when,
                        backupCount=config.file.max_files or 0,
                        encoding="utf-8",
                        utc=True,
                    )
                )
        except OSError as exc:
            for handler in handlers:
                handler.close()
            raise SubscriberInitError(f"cannot open log directory {directory}: {exc}") from exc

    return handlers


def install_subscriber(
    config: LoggerConfig,
    *,
    meter_provider: MeterProvider | None = None,
    stream: TextIO | None = None,
) -> None:
    """Install the process-wide structured-log subscriber.

    Args:
        config: Validated logger configuration
        meter_provider: Provider for the metrics bridge (registered one if None)
        stream: Console stream (stdout if None)

    Raises:
        SubscriberInitError: If a subscriber is already installed or a
            writer cannot be opened
    """
    global _installation

    with _install_lock:
        ensure_not_installed()

        handlers = _build_handlers(config, stream)
        shared = build_processors(config, meter_provider)
        foreign = build_processors(config, bridges=False)

        for handler in handlers:
            colors = config.ansi and isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, logging.FileHandler
            )
            handler.setFormatter(
                structlog.stdlib.ProcessorFormatter(
                    foreign_pre_chain=foreign,
                    processors=[
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        build_renderer(config.format, colors),
                    ],
                )
            )

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                *shared,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )

        root_logger = logging.getLogger()
        previous_level = root_logger.level
        for handler in handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, config.level))

        # Per-logger directives come last so they can override the noisy defaults
        logger_levels: dict[str, int] = {}
        overrides = [(name, "WARNING") for name in _NOISY_LOGGERS]
        overrides.extend(config.level_directives)
        for target, level in overrides:
            if not target:
                root_logger.setLevel(getattr(logging, level))
                continue
            target_logger = logging.getLogger(target)
            logger_levels.setdefault(target, target_logger.level)
            target_logger.setLevel(getattr(logging, level))

        _installation = _Installation(
            handlers=handlers,
            previous_level=previous_level,
            service_name=config.service_name,
            logger_levels=logger_levels,
        )


def uninstall_subscriber() -> bool:
    """Remove the installed subscriber and its writers.

    Returns:
        True if a subscriber was installed
    """
    global _installation

    with _install_lock:
        if _installation is None:
            return False

        root_logger = logging.getLogger()
        for handler in _installation.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        root_logger.setLevel(_installation.previous_level)
        for name, level in _installation.logger_levels.items():
            logging.getLogger(name).setLevel(level)
        structlog.reset_defaults()
        _installation = None
        return True


def is_installed() -> bool:
    return _installation is not None


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger bound to the stdlib logger ``name``.

    Records always end up in standard logging, so nothing is written
    before a subscriber is installed or after it is removed, other than
    what the stdlib's own level and handlers let through.
    """
    return cast(structlog.stdlib.BoundLogger, structlog.wrap_logger(logging.getLogger(name)))
