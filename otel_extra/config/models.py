"""Validated configuration models for the telemetry bootstrap."""

from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from otel_extra.config.settings import parse_level_directives
from otel_extra.exceptions import InvalidConfigError
from otel_extra.resource import AttributeValue, normalize_attributes

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
Rotation = Literal["minutely", "hourly", "daily", "never"]
OtlpProtocol = Literal["grpc", "http/protobuf"]
SpanEvents = Literal["none", "new", "close", "full"]

# Aliases accepted for level names used by other tracing ecosystems
_LEVEL_ALIASES = {"TRACE": "DEBUG", "WARN": "WARNING", "FATAL": "CRITICAL"}


def _normalize_level(value: Any) -> Any:
    if isinstance(value, str):
        upper = value.strip().upper()
        return _LEVEL_ALIASES.get(upper, upper)
    return value


class LogFormat(str, Enum):
    """Structured-log rendering."""

    COMPACT = "compact"
    PRETTY = "pretty"
    JSON = "json"


class FileOutputConfig(BaseModel):
    """On-disk log writer settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(default=False, description="Write logs to rotating files")
    directory: Path = Field(default=Path("logs"), description="Directory for log files")
    filename_prefix: str | None = Field(
        default=None,
        description="Log file name prefix (service name if unset)",
    )
    rotation: Rotation = Field(default="daily", description="Rotation policy")
    max_files: int | None = Field(
        default=None,
        ge=1,
        description="Rotated files to retain (unlimited if unset)",
    )


class LoggerConfig(BaseModel):
    """Immutable snapshot of every logger option, validated at once.

    Produced by Logger.build_config(); nothing downstream sees a
    partially-validated configuration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str = Field(min_length=1, description="Service identity for the resource")
    format: LogFormat = Field(default=LogFormat.COMPACT, description="Log rendering")
    ansi: bool = Field(default=True, description="Colorize console output")
    level: LogLevel = Field(default="INFO", description="Minimum log level")
    sample_ratio: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        allow_inf_nan=False,
        description="Fraction of root traces sampled",
    )
    metrics_interval_secs: int = Field(
        default=30,
        gt=0,
        description="Metric collection interval in seconds",
    )
    attributes: tuple[tuple[str, AttributeValue], ...] = Field(
        default=(),
        description="Extra resource attributes",
    )
    tracing_enabled: bool = Field(default=True, description="Build the trace pipeline")
    metrics_enabled: bool = Field(default=True, description="Build the metrics pipeline")
    console_enabled: bool = Field(default=True, description="Write logs to stdout")
    otlp_endpoint: str | None = Field(
        default=None,
        description="OTLP endpoint (exporter environment if unset)",
    )
    otlp_protocol: OtlpProtocol = Field(default="grpc", description="OTLP transport")
    flush_timeout_millis: int = Field(
        default=5000,
        gt=0,
        description="Bound for each flush/shutdown step",
    )
    file: FileOutputConfig = Field(
        default_factory=FileOutputConfig,
        description="File output settings",
    )
    span_events: SpanEvents = Field(
        default="none",
        description="Span lifecycle lines to log (open, close or both)",
    )
    level_directives: tuple[tuple[str, LogLevel], ...] = Field(
        default=(),
        description="Per-logger minimum levels; an empty target is the root logger",
    )

    @field_validator("service_name")
    @classmethod
    def _service_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("service_name must not be blank")
        return value

    @field_validator("level", mode="before")
    @classmethod
    def _level_name(cls, value: Any) -> Any:
        return _normalize_level(value)

    @field_validator("format", mode="before")
    @classmethod
    def _normalize_format(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("attributes", mode="before")
    @classmethod
    def _validate_attributes(cls, value: Any) -> Any:
        try:
            pairs = normalize_attributes(value)
        except InvalidConfigError as exc:
            raise ValueError(exc.message) from exc
        return tuple(pairs)

    @field_validator("span_events", mode="before")
    @classmethod
    def _normalize_span_events(cls, value: Any) -> Any:
        """Accept ``new|close`` style flag lists and booleans."""
        if isinstance(value, bool):
            return "full" if value else "none"
        if not isinstance(value, str):
            return value

        flags: set[str] = set()
        for part in value.split("|"):
            # "FmtSpan::NEW" and "new" are the same flag
            flag = part.strip().lower().rpartition("::")[2]
            if flag in ("", "none"):
                continue
            if flag == "full":
                return "full"
            if flag not in ("new", "close"):
                return value
            flags.add(flag)
        if len(flags) == 2:
            return "full"
        return flags.pop() if flags else "none"

    @field_validator("level_directives", mode="before")
    @classmethod
    def _parse_level_directives(cls, value: Any) -> Any:
        """Accept ``target=level,...`` strings and (target, level) pairs.

        A repeated target keeps its first position and its last level.
        """
        if value is None:
            return ()
        items = [value] if isinstance(value, str) else list(value)

        directives: dict[str, Any] = {}
        for item in items:
            if isinstance(item, str):
                try:
                    pairs = parse_level_directives(item)
                except InvalidConfigError as exc:
                    raise ValueError(exc.message) from exc
            else:
                try:
                    target, level = item
                except (TypeError, ValueError) as exc:
                    raise ValueError(f"level directive must be a (target, level) pair: {item!r}") from exc
                pairs = [(target, level)]
            for target, level in pairs:
                directives[target] = _normalize_level(level)
        return tuple(directives.items())

    @property
    def log_file_prefix(self) -> str:
        return self.file.filename_prefix or self.service_name
