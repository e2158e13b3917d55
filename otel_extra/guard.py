"""Provider guard: single coordinated shutdown of the telemetry pipelines.

The guard owns at most one tracer handle and one meter handle. Releasing it
flushes and shuts both down exactly once, in a fixed order, no matter how
many times or from how many threads the release is requested.

Usage:
    with Logger("orders").init() as guard:
        serve()
    # providers flushed and released here, on every exit path
"""

import threading
from collections.abc import Callable
from enum import Enum
from types import TracebackType

from otel_extra.exceptions import InvalidConfigError, ShutdownError
from otel_extra.providers import DEFAULT_TIMEOUT_MILLIS, MeterProviderHandle, TracerProviderHandle
from otel_extra.subscriber import get_logger

logger = get_logger(__name__)


class GuardState(str, Enum):
    """Lifecycle of a ProviderGuard."""

    ACTIVE = "active"
    SHUTTING_DOWN = "shutting_down"
    RELEASED = "released"


class ProviderGuard:
    """Owning handle whose release flushes and shuts down the providers.

    Shutdown order: meter flush, tracer flush, meter shutdown, tracer
    shutdown. A failed step never stops the remaining ones; all failures
    are reported together as ShutdownError once every step has run.
    """

    def __init__(
        self,
        tracer_provider: TracerProviderHandle | None = None,
        meter_provider: MeterProviderHandle | None = None,
        *,
        timeout_millis: int = DEFAULT_TIMEOUT_MILLIS,
        on_release: Callable[[], object] | None = None,
    ) -> None:
        """Create an active guard.

        Args:
            tracer_provider: Tracer handle to own, if tracing is enabled
            meter_provider: Meter handle to own, if metrics are enabled
            timeout_millis: Bound for each flush/shutdown step
            on_release: Called once after the providers are released
        """
        self._tracer_provider = tracer_provider
        self._meter_provider = meter_provider
        self._timeout_millis = timeout_millis
        self._on_release = on_release
        self._lock = threading.Lock()
        self._state = GuardState.ACTIVE

    @property
    def state(self) -> GuardState:
        return self._state

    @property
    def tracer_provider(self) -> TracerProviderHandle | None:
        return self._tracer_provider

    @property
    def meter_provider(self) -> MeterProviderHandle | None:
        return self._meter_provider

    def with_tracer_provider(self, tracer_provider: TracerProviderHandle) -> "ProviderGuard":
        """Take ownership of a tracer handle. The slot must be empty."""
        with self._lock:
            self._ensure_active()
            if self._tracer_provider is not None:
                raise InvalidConfigError("guard already owns a tracer provider")
            self._tracer_provider = tracer_provider
        return self

    def with_meter_provider(self, meter_provider: MeterProviderHandle) -> "ProviderGuard":
        """Take ownership of a meter handle. The slot must be empty."""
        with self._lock:
            self._ensure_active()
            if self._meter_provider is not None:
                raise InvalidConfigError("guard already owns a meter provider")
            self._meter_provider = meter_provider
        return self

    def _ensure_active(self) -> None:
        if self._state is not GuardState.ACTIVE:
            raise InvalidConfigError(f"guard is {self._state.value}")

    def shutdown(self) -> None:
        """Flush and release every owned provider, once.

        Calls made while a shutdown is in progress, or after it finished,
        return immediately.

        Raises:
            ShutdownError: If any step failed (raised after all steps ran)
        """
        with self._lock:
            if self._state is not GuardState.ACTIVE:
                return
            self._state = GuardState.SHUTTING_DOWN

        logger.debug(
            "provider_guard_shutdown_started",
            tracer=self._tracer_provider is not None,
            meter=self._meter_provider is not None,
        )

        steps: list[tuple[str, Callable[[], object]]] = []
        meter, tracer = self._meter_provider, self._tracer_provider
        timeout = self._timeout_millis
        if meter is not None:
            steps.append(("meter.force_flush", lambda: meter.force_flush(timeout)))
        if tracer is not None:
            steps.append(("tracer.force_flush", lambda: tracer.force_flush(timeout)))
        if meter is not None:
            steps.append(("meter.shutdown", lambda: meter.shutdown(timeout)))
        if tracer is not None:
            steps.append(("tracer.shutdown", lambda: tracer.shutdown(timeout)))
        if self._on_release is not None:
            steps.append(("on_release", self._on_release))

        failures: list[tuple[str, BaseException]] = []
        for step, run in steps:
            try:
                run()
            except Exception as exc:
                logger.warning("provider_guard_step_failed", step=step, error=str(exc))
                failures.append((step, exc))

        with self._lock:
            self._state = GuardState.RELEASED

        if failures:
            raise ShutdownError(failures)
        logger.debug("provider_guard_released")

    def __enter__(self) -> "ProviderGuard":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.shutdown()
        except ShutdownError as shutdown_error:
            if exc_type is None:
                raise
            # Keep the body's exception; the shutdown report goes to the log.
            logger.error(
                "provider_guard_shutdown_failed",
                failed_steps=shutdown_error.failed_steps,
                error=shutdown_error.message,
            )

    def __repr__(self) -> str:
        return (
            f"ProviderGuard(state={self._state.value}, "
            f"tracer={self._tracer_provider is not None}, "
            f"meter={self._meter_provider is not None})"
        )
