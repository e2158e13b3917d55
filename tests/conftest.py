"""Shared test fixtures for the otel_extra test suite."""

import io
import json
import os
from collections.abc import Callable, Generator
from typing import Any

import pytest
import structlog
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from otel_extra import tracing
from otel_extra.subscriber import uninstall_subscriber


@pytest.fixture(autouse=True)
def reset_telemetry() -> Generator[None, None, None]:
    """Leave no subscriber, registered provider or bound context behind."""
    yield
    uninstall_subscriber()
    tracing.register_tracer_provider(None)
    tracing.register_meter_provider(None)
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def tracer_provider(span_exporter: InMemorySpanExporter) -> TracerProvider:
    """Synchronously exporting provider registered for get_tracer()."""
    provider = TracerProvider(resource=Resource({"service.name": "test"}))
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    tracing.register_tracer_provider(provider)
    return provider


@pytest.fixture
def meter_provider(metric_reader: InMemoryMetricReader) -> MeterProvider:
    """Meter provider backed by an in-memory reader, registered for get_meter()."""
    provider = MeterProvider(metric_readers=[metric_reader])
    tracing.register_meter_provider(provider)
    return provider


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def read_json_logs(log_stream: io.StringIO) -> Callable[[], list[dict[str, Any]]]:
    """Parse every JSON line written to log_stream so far."""

    def _read() -> list[dict[str, Any]]:
        return [json.loads(line) for line in log_stream.getvalue().splitlines() if line.strip()]

    return _read


@pytest.fixture
def collect_metrics(metric_reader: InMemoryMetricReader) -> Callable[[], dict[str, list[Any]]]:
    """Map metric name to its data points for everything collected so far."""

    def _collect() -> dict[str, list[Any]]:
        data = metric_reader.get_metrics_data()
        result: dict[str, list[Any]] = {}
        if data is None:
            return result
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    result[metric.name] = list(metric.data.data_points)
        return result

    return _collect


class EnvOverrideContext:
    """Context manager for temporarily setting environment variables."""

    def __init__(self, overrides: dict[str, str]) -> None:
        self.overrides = overrides
        self.original_env: dict[str, str | None] = {}

    def __enter__(self) -> None:
        for key, value in self.overrides.items():
            self.original_env[key] = os.environ.get(key)
            os.environ[key] = value

    def __exit__(self, *args: Any) -> None:
        for key in self.overrides:
            original = self.original_env[key]
            if original is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = original


@pytest.fixture
def env_override() -> Callable[[dict[str, str]], EnvOverrideContext]:
    """Factory fixture for temporary environment variable overrides.

    Usage:
        def test_something(env_override):
            with env_override({"LOG_LEVEL": "DEBUG"}):
                ...
    """
    return EnvOverrideContext
