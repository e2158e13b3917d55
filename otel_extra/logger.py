"""Logger configuration builder.

Accumulates options, validates them all at once into a LoggerConfig and
wires the resource, the enabled provider pipelines and the log subscriber
together, returning the ProviderGuard that owns them.

Usage:
    guard = (
        Logger("orders")
        .with_format(LogFormat.JSON)
        .with_level("debug")
        .with_sample_ratio(0.25)
        .with_attribute("deployment.environment", "prod")
        .init()
    )
    with guard:
        serve()
"""

from collections.abc import Sequence
from pathlib import Path
from typing import Any, TextIO

from opentelemetry.sdk.metrics.export import MetricExporter, MetricReader
from opentelemetry.sdk.trace.export import SpanExporter
from pydantic import ValidationError

from otel_extra import tracing
from otel_extra.config.models import LogFormat, LoggerConfig, OtlpProtocol, Rotation, SpanEvents
from otel_extra.config.settings import LoggerSettings, parse_attributes
from otel_extra.exceptions import ExportFailure, InvalidConfigError
from otel_extra.guard import ProviderGuard
from otel_extra.providers import (
    MeterProviderHandle,
    TracerProviderHandle,
    init_meter_provider,
    init_tracer_provider,
)
from otel_extra.resource import AttributeValue, build_resource
from otel_extra.span_events import SpanLifecycleLogger
from otel_extra.subscriber import (
    ensure_not_installed,
    get_logger,
    install_subscriber,
    uninstall_subscriber,
)

logger = get_logger(__name__)


def _format_errors(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
        for error in exc.errors()
    ]


class Logger:
    """Mutable builder for the telemetry bootstrap.

    Every option can be set and overridden until ``init()``; nothing is
    validated before then.
    """

    def __init__(self, service_name: str) -> None:
        self._options: dict[str, Any] = {"service_name": service_name}
        self._attributes: list[tuple[str, AttributeValue]] = []
        self._file: dict[str, Any] = {}
        self._level_directives: list[str | tuple[str, str]] = []
        self._span_exporter: SpanExporter | None = None
        self._metric_exporter: MetricExporter | None = None
        self._metric_readers: list[MetricReader] = []
        self._stream: TextIO | None = None

    @classmethod
    def from_env(cls, prefix: str | None = None) -> "Logger":
        """Build a Logger from ``LOG_*`` environment variables.

        Args:
            prefix: Variable prefix (``LOG_`` if None)

        Raises:
            InvalidConfigError: If a variable cannot be parsed
        """
        try:
            settings = LoggerSettings.from_env(prefix)
        except ValidationError as exc:
            errors = _format_errors(exc)
            raise InvalidConfigError(
                f"invalid logger environment: {'; '.join(errors)}",
                errors=errors,
            ) from exc

        builder = (
            cls(settings.service_name)
            .with_format(settings.format)
            .with_ansi(settings.ansi)
            .with_level(settings.level)
            .with_sample_ratio(settings.sample_ratio)
            .with_metrics_interval_secs(settings.metrics_interval_secs)
            .with_attributes(parse_attributes(settings.attributes))
            .with_file_output(
                settings.file_enabled,
                directory=settings.file_directory,
                rotation=settings.file_rotation,  # type: ignore[arg-type]
                max_files=settings.file_max_files,
            )
            .with_otlp_endpoint(
                settings.otlp_endpoint or None,
                settings.otlp_protocol,  # type: ignore[arg-type]
            )
            .with_span_events(settings.span_events)
            .with_level_directives(settings.filter)
        )
        return builder

    def with_service_name(self, service_name: str) -> "Logger":
        self._options["service_name"] = service_name
        return self

    def with_format(self, log_format: LogFormat | str) -> "Logger":
        self._options["format"] = log_format
        return self

    def with_ansi(self, ansi: bool) -> "Logger":
        self._options["ansi"] = ansi
        return self

    def with_level(self, level: str) -> "Logger":
        """Set the minimum level (case-insensitive; TRACE and WARN accepted)."""
        self._options["level"] = level
        return self

    def with_level_directives(self, directives: str | Sequence[tuple[str, str]]) -> "Logger":
        """Replace the per-logger levels, e.g. ``"otel_extra=debug,uvicorn=warning"``."""
        if isinstance(directives, str):
            self._level_directives = [directives]
        else:
            self._level_directives = list(directives)
        return self

    def with_level_directive(self, target: str, level: str) -> "Logger":
        """Set the minimum level of one logger (and its children)."""
        self._level_directives.append((target, level))
        return self

    def with_span_events(self, span_events: SpanEvents | str | bool) -> "Logger":
        """Log span open/close lines: ``"new"``, ``"close"``, ``"full"`` or ``"none"``."""
        self._options["span_events"] = span_events
        return self

    def with_sample_ratio(self, sample_ratio: float) -> "Logger":
        self._options["sample_ratio"] = sample_ratio
        return self

    def with_metrics_interval_secs(self, interval_secs: int) -> "Logger":
        self._options["metrics_interval_secs"] = interval_secs
        return self

    def with_attributes(self, attributes: Sequence[tuple[str, AttributeValue]]) -> "Logger":
        """Replace the resource attributes."""
        self._attributes = list(attributes)
        return self

    def with_attribute(self, key: str, value: AttributeValue) -> "Logger":
        """Append one resource attribute; a repeated key overrides earlier ones."""
        self._attributes.append((key, value))
        return self

    def with_tracing(self, enabled: bool) -> "Logger":
        self._options["tracing_enabled"] = enabled
        return self

    def with_metrics(self, enabled: bool) -> "Logger":
        self._options["metrics_enabled"] = enabled
        return self

    def with_console(self, enabled: bool, stream: TextIO | None = None) -> "Logger":
        """Toggle the console writer, optionally redirecting it from stdout."""
        self._options["console_enabled"] = enabled
        self._stream = stream
        return self

    def with_file_output(
        self,
        enabled: bool = True,
        *,
        directory: str | Path | None = None,
        filename_prefix: str | None = None,
        rotation: Rotation | None = None,
        max_files: int | None = None,
    ) -> "Logger":
        """Configure the rotating file writer. Unset arguments keep their value."""
        self._file["enabled"] = enabled
        if directory is not None:
            self._file["directory"] = directory
        if filename_prefix is not None:
            self._file["filename_prefix"] = filename_prefix
        if rotation is not None:
            self._file["rotation"] = rotation
        if max_files is not None:
            self._file["max_files"] = max_files
        return self

    def with_otlp_endpoint(self, endpoint: str | None, protocol: OtlpProtocol = "grpc") -> "Logger":
        """Set the OTLP endpoint (None defers to OTEL_EXPORTER_OTLP_* variables)."""
        self._options["otlp_endpoint"] = endpoint
        self._options["otlp_protocol"] = protocol
        return self

    def with_flush_timeout_millis(self, timeout_millis: int) -> "Logger":
        self._options["flush_timeout_millis"] = timeout_millis
        return self

    def with_exporters(
        self,
        span_exporter: SpanExporter | None = None,
        metric_exporter: MetricExporter | None = None,
        metric_readers: Sequence[MetricReader] | None = None,
    ) -> "Logger":
        """Use caller-owned exporters/readers instead of OTLP.

        Readers given without a metric exporter do their own collection;
        no periodic OTLP metric export is set up then.
        """
        self._span_exporter = span_exporter
        self._metric_exporter = metric_exporter
        self._metric_readers = list(metric_readers or [])
        return self

    def build_config(self) -> LoggerConfig:
        """Validate every option at once.

        Raises:
            InvalidConfigError: Listing every invalid option
        """
        try:
            return LoggerConfig(
                **self._options,
                attributes=list(self._attributes),
                file=dict(self._file),
                level_directives=list(self._level_directives),
            )
        except ValidationError as exc:
            errors = _format_errors(exc)
            raise InvalidConfigError(
                f"invalid logger configuration: {'; '.join(errors)}",
                errors=errors,
            ) from exc

    def _span_processors(self, config: LoggerConfig) -> list[SpanLifecycleLogger]:
        if config.span_events == "none":
            return []
        return [SpanLifecycleLogger(config.span_events)]

    def init(self) -> ProviderGuard:
        """Finalize the configuration and start the telemetry pipelines.

        Providers built before a failure are shut down before the error
        propagates.

        Returns:
            Guard owning the providers and the log subscriber

        Raises:
            InvalidConfigError: If any option is invalid
            ExporterInitError: If an exporter cannot be constructed
            SubscriberInitError: If the log subscriber cannot be installed
        """
        config = self.build_config()
        resource = build_resource(config.service_name, config.attributes)
        # Fail before any provider replaces the live registration
        ensure_not_installed()

        previous_tracer, previous_meter = tracing.registered_providers()
        tracer_handle: TracerProviderHandle | None = None
        meter_handle: MeterProviderHandle | None = None
        try:
            if config.tracing_enabled:
                tracer_handle = init_tracer_provider(
                    resource,
                    config.sample_ratio,
                    exporter=self._span_exporter,
                    endpoint=config.otlp_endpoint,
                    protocol=config.otlp_protocol,
                    span_processors=self._span_processors(config),
                )
            if config.metrics_enabled:
                meter_handle = init_meter_provider(
                    resource,
                    config.metrics_interval_secs,
                    exporter=self._metric_exporter,
                    readers=self._metric_readers,
                    endpoint=config.otlp_endpoint,
                    protocol=config.otlp_protocol,
                )
            install_subscriber(
                config,
                meter_provider=meter_handle.provider if meter_handle else None,  # type: ignore[arg-type]
                stream=self._stream,
            )
        except Exception:
            for handle in (meter_handle, tracer_handle):
                if handle is None:
                    continue
                try:
                    handle.shutdown(config.flush_timeout_millis)
                except ExportFailure as cleanup_error:
                    logger.warning(
                        "partial_init_cleanup_failed",
                        step=cleanup_error.step,
                        error=cleanup_error.message,
                    )
            tracing.register_tracer_provider(previous_tracer)
            tracing.register_meter_provider(previous_meter)
            raise

        logger.info(
            "telemetry_initialized",
            format=config.format.value,
            level=config.level,
            tracing=tracer_handle is not None,
            metrics=meter_handle is not None,
            sample_ratio=config.sample_ratio,
        )
        return ProviderGuard(
            tracer_handle,
            meter_handle,
            timeout_millis=config.flush_timeout_millis,
            on_release=uninstall_subscriber,
        )


def init_logging(service_name: str) -> ProviderGuard:
    """Initialize telemetry for ``service_name`` with default options."""
    return Logger(service_name).init()


def init_logger_from_env(prefix: str | None = None) -> Logger:
    """Build a Logger from environment variables (``LOG_*`` by default)."""
    return Logger.from_env(prefix)


def init_logging_from_env(prefix: str | None = None) -> ProviderGuard:
    """Initialize telemetry from environment variables in one call.

    Raises:
        InvalidConfigError: If a variable is malformed or an option invalid
        ExporterInitError: If an exporter cannot be constructed
        SubscriberInitError: If the log subscriber cannot be installed
    """
    return init_logger_from_env(prefix).init()
