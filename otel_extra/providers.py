"""Tracer and meter provider factories.

Each factory validates its input, builds an exporter pipeline on top of the
shared resource and returns a handle that exposes flush/shutdown as
fallible calls. Exporter I/O runs on the SDK's background threads (batch
span processor, periodic metric reader), never on the request path.
"""

import math
import threading
from collections.abc import Sequence
from urllib.parse import urlparse

from opentelemetry import metrics, propagate, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    MetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.id_generator import RandomIdGenerator
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from otel_extra import tracing
from otel_extra.config.models import OtlpProtocol
from otel_extra.exceptions import ExporterInitError, ExportFailure, InvalidConfigError
from otel_extra.subscriber import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MILLIS = 5000


class ProviderHandle:
    """Opaque handle over an SDK provider.

    ``shutdown`` runs at most once per handle; later calls return
    immediately. Failures surface as ExportFailure.
    """

    kind = "provider"

    def __init__(self, provider: TracerProvider | MeterProvider) -> None:
        self._provider = provider
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def provider(self) -> TracerProvider | MeterProvider:
        return self._provider

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def force_flush(self, timeout_millis: int = DEFAULT_TIMEOUT_MILLIS) -> None:
        """Export pending telemetry, waiting at most ``timeout_millis``.

        Raises:
            ExportFailure: If the flush fails or does not finish in time
        """
        step = f"{self.kind}.force_flush"
        try:
            flushed = self._provider.force_flush(timeout_millis)
        except Exception as exc:
            raise ExportFailure(f"{step} failed: {exc}", step=step) from exc
        if flushed is False:
            raise ExportFailure(
                f"{step} did not complete within {timeout_millis}ms, pending data dropped",
                step=step,
            )

    def shutdown(self, timeout_millis: int = DEFAULT_TIMEOUT_MILLIS) -> None:
        """Flush and release the exporter pipeline.

        Raises:
            ExportFailure: If the underlying shutdown fails
        """
        with self._lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True

        step = f"{self.kind}.shutdown"
        try:
            self._shutdown_provider(timeout_millis)
        except Exception as exc:
            raise ExportFailure(f"{step} failed: {exc}", step=step) from exc

    def _shutdown_provider(self, timeout_millis: int) -> None:
        raise NotImplementedError


class TracerProviderHandle(ProviderHandle):
    """Handle over an SDK TracerProvider with a batching span pipeline."""

    kind = "tracer"

    def __init__(self, provider: TracerProvider, sample_ratio: float) -> None:
        super().__init__(provider)
        self.sample_ratio = sample_ratio

    def get_tracer(self, name: str = tracing.INSTRUMENTATION_NAME) -> trace.Tracer:
        return self._provider.get_tracer(name)

    def _shutdown_provider(self, timeout_millis: int) -> None:  # noqa: ARG002
        # TracerProvider.shutdown takes no timeout; the batch processor bounds it.
        tracing.release_tracer_provider(self._provider)
        self._provider.shutdown()


class MeterProviderHandle(ProviderHandle):
    """Handle over an SDK MeterProvider with periodic collection."""

    kind = "meter"

    def __init__(self, provider: MeterProvider, interval_secs: int, periodic_export: bool = True) -> None:
        super().__init__(provider)
        self.interval_secs = interval_secs
        # False when only caller-supplied readers collect
        self.periodic_export = periodic_export

    def get_meter(self, name: str = tracing.INSTRUMENTATION_NAME) -> metrics.Meter:
        return self._provider.get_meter(name)

    def _shutdown_provider(self, timeout_millis: int) -> None:
        tracing.release_meter_provider(self._provider)
        self._provider.shutdown(timeout_millis=timeout_millis)


def validate_sample_ratio(sample_ratio: float) -> float:
    """Reject ratios outside [0.0, 1.0] and NaN instead of clamping."""
    if isinstance(sample_ratio, bool) or not isinstance(sample_ratio, (int, float)):
        raise InvalidConfigError(f"sample_ratio must be a number, got {sample_ratio!r}")
    if math.isnan(sample_ratio) or not 0.0 <= sample_ratio <= 1.0:
        raise InvalidConfigError(f"sample_ratio must be within [0.0, 1.0], got {sample_ratio}")
    return float(sample_ratio)


def validate_interval(interval_secs: int) -> int:
    """Reject non-integer and non-positive collection intervals."""
    if isinstance(interval_secs, bool) or not isinstance(interval_secs, int):
        raise InvalidConfigError(f"metrics interval must be an integer, got {interval_secs!r}")
    if interval_secs <= 0:
        raise InvalidConfigError(f"metrics interval must be positive, got {interval_secs}")
    return interval_secs


def validate_endpoint(endpoint: str | None, protocol: OtlpProtocol) -> None:
    """Check that an OTLP endpoint is well formed.

    No connectivity check is made. ``None`` defers to the exporter's
    own ``OTEL_EXPORTER_OTLP_*`` environment handling.

    Raises:
        ExporterInitError: If the endpoint cannot be parsed
    """
    if endpoint is None:
        return
    if not endpoint or any(ch.isspace() for ch in endpoint):
        raise ExporterInitError(f"malformed OTLP endpoint: {endpoint!r}")

    has_scheme = "://" in endpoint
    if protocol == "http/protobuf" and not has_scheme:
        raise ExporterInitError(f"OTLP/HTTP endpoint requires a scheme: {endpoint!r}")

    parsed = urlparse(endpoint if has_scheme else f"//{endpoint}")
    if has_scheme and parsed.scheme not in ("http", "https"):
        raise ExporterInitError(f"unsupported OTLP endpoint scheme: {parsed.scheme!r}")
    try:
        parsed.port
    except ValueError as exc:
        raise ExporterInitError(f"malformed OTLP endpoint port: {endpoint!r}") from exc
    if not parsed.hostname:
        raise ExporterInitError(f"OTLP endpoint has no host: {endpoint!r}")


def build_span_exporter(
    endpoint: str | None = None,
    protocol: OtlpProtocol = "grpc",
) -> SpanExporter:
    """Construct the OTLP span exporter for ``protocol``.

    Raises:
        ExporterInitError: If the endpoint is malformed or construction fails
    """
    validate_endpoint(endpoint, protocol)
    try:
        if protocol == "grpc":
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter as GrpcSpanExporter,
            )

            return GrpcSpanExporter(endpoint=endpoint)
        if protocol == "http/protobuf":
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter as HttpSpanExporter,
            )

            return HttpSpanExporter(endpoint=endpoint)
    except Exception as exc:
        raise ExporterInitError(f"failed to build OTLP span exporter: {exc}") from exc
    raise ExporterInitError(f"unsupported OTLP protocol: {protocol!r}")


def build_metric_exporter(
    endpoint: str | None = None,
    protocol: OtlpProtocol = "grpc",
) -> MetricExporter:
    """Construct the OTLP metric exporter for ``protocol``.

    Raises:
        ExporterInitError: If the endpoint is malformed or construction fails
    """
    validate_endpoint(endpoint, protocol)
    try:
        if protocol == "grpc":
            from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
                OTLPMetricExporter as GrpcMetricExporter,
            )

            return GrpcMetricExporter(endpoint=endpoint)
        if protocol == "http/protobuf":
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
                OTLPMetricExporter as HttpMetricExporter,
            )

            return HttpMetricExporter(endpoint=endpoint)
    except Exception as exc:
        raise ExporterInitError(f"failed to build OTLP metric exporter: {exc}") from exc
    raise ExporterInitError(f"unsupported OTLP protocol: {protocol!r}")


def init_tracer_provider(
    resource: Resource,
    sample_ratio: float,
    *,
    exporter: SpanExporter | None = None,
    endpoint: str | None = None,
    protocol: OtlpProtocol = "grpc",
    span_processors: Sequence[SpanProcessor] = (),
    set_global: bool = True,
) -> TracerProviderHandle:
    """Build a tracer provider with parent-based ratio sampling.

    Root spans are sampled by trace-id ratio; children follow their
    parent's decision so sampled traces stay sampled across services.

    Args:
        resource: Shared resource descriptor
        sample_ratio: Fraction of root traces to sample, within [0.0, 1.0]
        exporter: Span exporter to use instead of OTLP
        endpoint: OTLP endpoint (exporter env configuration if None)
        protocol: OTLP transport
        span_processors: Extra processors, run after the batching exporter
        set_global: Register as the process tracer provider

    Returns:
        Handle over the configured provider

    Raises:
        InvalidConfigError: If sample_ratio is out of range
        ExporterInitError: If the exporter cannot be constructed
    """
    ratio = validate_sample_ratio(sample_ratio)
    span_exporter = exporter if exporter is not None else build_span_exporter(endpoint, protocol)

    provider = TracerProvider(
        sampler=ParentBased(TraceIdRatioBased(ratio)),
        resource=resource,
        id_generator=RandomIdGenerator(),
    )
    provider.add_span_processor(BatchSpanProcessor(span_exporter))
    for span_processor in span_processors:
        provider.add_span_processor(span_processor)

    if set_global:
        propagate.set_global_textmap(TraceContextTextMapPropagator())
        trace.set_tracer_provider(provider)
        tracing.register_tracer_provider(provider)

    logger.debug(
        "tracer_provider_initialized",
        sample_ratio=ratio,
        exporter=type(span_exporter).__name__,
    )
    return TracerProviderHandle(provider, ratio)


def init_meter_provider(
    resource: Resource,
    interval_secs: int,
    *,
    exporter: MetricExporter | None = None,
    readers: Sequence[MetricReader] | None = None,
    endpoint: str | None = None,
    protocol: OtlpProtocol = "grpc",
    set_global: bool = True,
) -> MeterProviderHandle:
    """Build a meter provider that collects every ``interval_secs`` seconds.

    The periodic exporting reader is built when ``exporter`` is given or
    when no ``readers`` are. Passing only ``readers`` hands collection to
    them: no OTLP exporter is built and ``interval_secs`` is validated but
    unused, which the returned handle reports as ``periodic_export=False``.

    Args:
        resource: Shared resource descriptor
        interval_secs: Positive collection cadence in seconds
        exporter: Metric exporter to use instead of OTLP
        readers: Extra metric readers (e.g. in-memory readers for tests)
        endpoint: OTLP endpoint (exporter env configuration if None)
        protocol: OTLP transport
        set_global: Register as the process meter provider

    Returns:
        Handle over the configured provider

    Raises:
        InvalidConfigError: If interval_secs is not positive
        ExporterInitError: If the exporter cannot be constructed
    """
    interval = validate_interval(interval_secs)

    metric_readers: list[MetricReader] = list(readers or [])
    periodic_export = exporter is not None or not metric_readers
    if periodic_export:
        metric_exporter = exporter if exporter is not None else build_metric_exporter(endpoint, protocol)
        metric_readers.insert(
            0,
            PeriodicExportingMetricReader(
                metric_exporter,
                export_interval_millis=interval * 1000,
            ),
        )

    provider = MeterProvider(resource=resource, metric_readers=metric_readers)

    if set_global:
        metrics.set_meter_provider(provider)
        tracing.register_meter_provider(provider)

    logger.debug(
        "meter_provider_initialized",
        interval_secs=interval,
        readers=[type(reader).__name__ for reader in metric_readers],
    )
    return MeterProviderHandle(provider, interval, periodic_export)
