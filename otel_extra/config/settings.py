"""Environment-variable settings source for the logger.

Loaded with a configurable prefix (``LOG_`` by default):

| Variable | Description | Default |
|----------|-------------|---------|
| `LOG_SERVICE_NAME` | Service name | `unknown_service` |
| `LOG_FORMAT` | `compact`, `pretty` or `json` | `compact` |
| `LOG_ANSI` | Enable ANSI colors | `true` |
| `LOG_LEVEL` | Minimum level | `INFO` |
| `LOG_SAMPLE_RATIO` | Sampling ratio (0.0-1.0) | `1.0` |
| `LOG_METRICS_INTERVAL_SECS` | Metrics collection interval | `30` |
| `LOG_ATTRIBUTES` | `key=value,key2=value2` | - |
| `LOG_OTLP_ENDPOINT` | OTLP endpoint | exporter default |
| `LOG_OTLP_PROTOCOL` | `grpc` or `http/protobuf` | `grpc` |
| `LOG_FILE_ENABLED` | Write rotating log files | `false` |
| `LOG_FILE_DIRECTORY` | Log directory | `logs` |
| `LOG_FILE_ROTATION` | `minutely`, `hourly`, `daily`, `never` | `daily` |
| `LOG_FILE_MAX_FILES` | Rotated files to keep | unlimited |
| `LOG_SPAN_EVENTS` | Span lifecycle lines: `none`, `new`, `close` or `full` | `none` |
| `LOG_FILTER` | Per-logger levels, `otel_extra=debug,uvicorn=warning` | - |
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from otel_extra.exceptions import InvalidConfigError

DEFAULT_ENV_PREFIX = "LOG_"


def parse_attributes(raw: str) -> list[tuple[str, str]]:
    """Parse ``key=value,key2=value2`` into ordered pairs.

    Blank input yields no attributes. Entries and their halves are trimmed.

    Raises:
        InvalidConfigError: On an entry without ``=`` or with an empty side
    """
    pairs: list[tuple[str, str]] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, value = entry.partition("=")
        if not sep:
            raise InvalidConfigError(f"Invalid attribute: '{entry}'")
        key, value = key.strip(), value.strip()
        if not key or not value:
            raise InvalidConfigError(f"Empty key or value: '{entry}'")
        pairs.append((key, value))
    return pairs


def parse_level_directives(raw: str) -> list[tuple[str, str]]:
    """Parse ``target=level,...`` into ordered (logger, level) pairs.

    A bare level (``info``) applies to the root logger and is returned
    with an empty target. Level names are checked later by LoggerConfig.

    Raises:
        InvalidConfigError: On an entry with an empty target or level
    """
    directives: list[tuple[str, str]] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        target, sep, level = entry.rpartition("=")
        target, level = target.strip(), level.strip()
        if sep and (not target or not level):
            raise InvalidConfigError(f"Invalid level directive: '{entry}'")
        directives.append((target, level))
    return directives


class LoggerSettings(BaseSettings):
    """Raw logger options read from the environment.

    Values are kept as plain strings/numbers here; LoggerConfig performs
    the validation when the Logger built from them is finalized.
    """

    model_config = SettingsConfigDict(
        env_prefix=DEFAULT_ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(default="unknown_service")
    format: str = Field(default="compact")
    ansi: bool = Field(default=True)
    level: str = Field(default="INFO")
    sample_ratio: float = Field(default=1.0)
    metrics_interval_secs: int = Field(default=30)
    attributes: str = Field(default="")
    otlp_endpoint: str | None = Field(default=None)
    otlp_protocol: str = Field(default="grpc")
    file_enabled: bool = Field(default=False)
    file_directory: str = Field(default="logs")
    file_rotation: str = Field(default="daily")
    file_max_files: int | None = Field(default=None)
    span_events: str = Field(default="none")
    filter: str = Field(default="")

    @classmethod
    def from_env(cls, prefix: str | None = None) -> "LoggerSettings":
        """Load settings using ``prefix`` (``LOG_`` if None)."""
        return cls(_env_prefix=prefix or DEFAULT_ENV_PREFIX)  # type: ignore[call-arg]
