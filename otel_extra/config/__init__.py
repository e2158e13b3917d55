"""Configuration models for the telemetry bootstrap.

    from otel_extra.config import LoggerConfig, LogFormat
"""

from otel_extra.config.models import (
    FileOutputConfig,
    LogFormat,
    LoggerConfig,
    LogLevel,
    OtlpProtocol,
    Rotation,
    SpanEvents,
)
from otel_extra.config.settings import LoggerSettings, parse_attributes, parse_level_directives

__all__ = [
    "FileOutputConfig",
    "LogFormat",
    "LogLevel",
    "LoggerConfig",
    "LoggerSettings",
    "OtlpProtocol",
    "Rotation",
    "SpanEvents",
    "parse_attributes",
    "parse_level_directives",
]
