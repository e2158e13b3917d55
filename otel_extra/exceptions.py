"""Exception hierarchy for telemetry bootstrap errors.

All library errors inherit from OtelExtraError, which carries an
error_code used in log records so failures can be grouped by kind.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable identifiers for each failure kind."""

    INVALID_CONFIG = "INVALID_CONFIG"
    """An option failed validation (empty service name, ratio out of range, ...)."""

    EXPORTER_INIT = "EXPORTER_INIT"
    """A span or metric exporter could not be constructed."""

    SUBSCRIBER_INIT = "SUBSCRIBER_INIT"
    """The structured-log subscriber could not be installed."""

    EXPORT_FAILURE = "EXPORT_FAILURE"
    """A flush or shutdown of an exporter pipeline failed or timed out."""

    SHUTDOWN = "SHUTDOWN"
    """One or more provider shutdown steps failed."""

    SPAN_STATE = "SPAN_STATE"
    """A request span was finalized more than once."""


class OtelExtraError(Exception):
    """Base exception for all telemetry bootstrap errors."""

    error_code: ErrorCode = ErrorCode.INVALID_CONFIG

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidConfigError(OtelExtraError):
    """Raised when configuration validation fails.

    Never retried: the caller must fix the input.
    """

    error_code = ErrorCode.INVALID_CONFIG

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ExporterInitError(OtelExtraError):
    """Raised when an exporter cannot be constructed (e.g. malformed endpoint)."""

    error_code = ErrorCode.EXPORTER_INIT


class SubscriberInitError(OtelExtraError):
    """Raised when the process-wide log subscriber cannot be installed."""

    error_code = ErrorCode.SUBSCRIBER_INIT


class ExportFailure(OtelExtraError):
    """A flush or shutdown step that failed at send time.

    Collected by ProviderGuard; never raised on the request path.
    """

    error_code = ErrorCode.EXPORT_FAILURE

    def __init__(self, message: str, step: str | None = None) -> None:
        super().__init__(message)
        self.step = step


class ShutdownError(OtelExtraError):
    """Aggregate of every shutdown step that failed.

    Raised only after all remaining steps have run.
    """

    error_code = ErrorCode.SHUTDOWN

    def __init__(self, failures: list[tuple[str, BaseException]]) -> None:
        self.failures = failures
        steps = ", ".join(f"{step}: {exc}" for step, exc in failures)
        super().__init__(f"provider shutdown failed ({steps})")

    @property
    def failed_steps(self) -> list[str]:
        """Names of the steps that failed, in execution order."""
        return [step for step, _ in self.failures]


class SpanStateError(OtelExtraError, RuntimeError):
    """Raised on an illegal request span transition (e.g. double finalize)."""

    error_code = ErrorCode.SPAN_STATE
