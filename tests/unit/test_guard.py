"""Tests for ProviderGuard shutdown coordination."""

import threading
import time
from unittest.mock import MagicMock

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from otel_extra.exceptions import InvalidConfigError, ShutdownError
from otel_extra.guard import GuardState, ProviderGuard
from otel_extra.providers import MeterProviderHandle, TracerProviderHandle


@pytest.fixture
def calls() -> list[str]:
    """Ordered record of provider calls made during a test."""
    return []


@pytest.fixture
def tracer_mock(calls) -> MagicMock:
    provider = MagicMock(spec=TracerProvider)
    provider.force_flush.side_effect = lambda *args, **kwargs: calls.append("tracer.force_flush") or True
    provider.shutdown.side_effect = lambda *args, **kwargs: calls.append("tracer.shutdown")
    return provider


@pytest.fixture
def meter_mock(calls) -> MagicMock:
    provider = MagicMock(spec=MeterProvider)
    provider.force_flush.side_effect = lambda *args, **kwargs: calls.append("meter.force_flush") or True
    provider.shutdown.side_effect = lambda *args, **kwargs: calls.append("meter.shutdown")
    return provider


@pytest.fixture
def guard(tracer_mock, meter_mock) -> ProviderGuard:
    return ProviderGuard(
        TracerProviderHandle(tracer_mock, 1.0),
        MeterProviderHandle(meter_mock, 30),
        timeout_millis=200,
    )


class TestShutdownOrder:
    """Tests for the fixed shutdown sequence."""

    def test_runs_steps_in_order(self, guard, calls):
        """Should flush meter, flush tracer, then shut down meter and tracer."""
        guard.shutdown()

        assert calls == [
            "meter.force_flush",
            "tracer.force_flush",
            "meter.shutdown",
            "tracer.shutdown",
        ]
        assert guard.state is GuardState.RELEASED

    def test_passes_timeout_to_each_step(self, guard, tracer_mock, meter_mock):
        guard.shutdown()

        meter_mock.force_flush.assert_called_once_with(200)
        tracer_mock.force_flush.assert_called_once_with(200)
        meter_mock.shutdown.assert_called_once_with(timeout_millis=200)

    def test_empty_guard_releases(self):
        """Should release cleanly with no providers."""
        guard = ProviderGuard()
        guard.shutdown()
        assert guard.state is GuardState.RELEASED

    def test_tracer_only_guard(self, tracer_mock, calls):
        guard = ProviderGuard(TracerProviderHandle(tracer_mock, 1.0))
        guard.shutdown()
        assert calls == ["tracer.force_flush", "tracer.shutdown"]

    def test_on_release_runs_last(self, tracer_mock, meter_mock, calls):
        """Should call on_release after the providers are shut down."""
        guard = ProviderGuard(
            TracerProviderHandle(tracer_mock, 1.0),
            MeterProviderHandle(meter_mock, 30),
            on_release=lambda: calls.append("on_release"),
        )
        guard.shutdown()
        assert calls[-1] == "on_release"


class TestIdempotency:
    """Tests for at-most-once shutdown."""

    def test_repeated_shutdown_is_noop(self, guard, tracer_mock, meter_mock):
        """Should perform each step once across N sequential calls."""
        for _ in range(5):
            guard.shutdown()

        assert tracer_mock.force_flush.call_count == 1
        assert tracer_mock.shutdown.call_count == 1
        assert meter_mock.force_flush.call_count == 1
        assert meter_mock.shutdown.call_count == 1

    def test_concurrent_shutdown_runs_steps_once(self, tracer_mock, meter_mock, calls):
        """Should perform each step once when many threads release together."""

        def slow_flush(*args, **kwargs) -> bool:
            time.sleep(0.05)
            calls.append("meter.force_flush")
            return True

        meter_mock.force_flush.side_effect = slow_flush
        guard = ProviderGuard(TracerProviderHandle(tracer_mock, 1.0), MeterProviderHandle(meter_mock, 30))
        barrier = threading.Barrier(8)
        errors: list[BaseException] = []

        def release() -> None:
            barrier.wait()
            try:
                guard.shutdown()
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=release) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sorted(calls) == sorted(
            ["meter.force_flush", "tracer.force_flush", "meter.shutdown", "tracer.shutdown"]
        )
        assert guard.state is GuardState.RELEASED

    def test_shutdown_after_failure_is_noop(self, tracer_mock, meter_mock):
        meter_mock.force_flush.side_effect = RuntimeError("collector down")
        guard = ProviderGuard(TracerProviderHandle(tracer_mock, 1.0), MeterProviderHandle(meter_mock, 30))

        with pytest.raises(ShutdownError):
            guard.shutdown()
        guard.shutdown()

        assert meter_mock.force_flush.call_count == 1


class TestFailureAggregation:
    """Tests for best-effort release with aggregated errors."""

    def test_failed_step_does_not_stop_the_rest(self, tracer_mock, meter_mock, calls):
        """Should run every step and report only the failed ones."""
        meter_mock.force_flush.side_effect = RuntimeError("collector down")
        tracer_mock.force_flush.side_effect = lambda *args, **kwargs: False
        guard = ProviderGuard(TracerProviderHandle(tracer_mock, 1.0), MeterProviderHandle(meter_mock, 30))

        with pytest.raises(ShutdownError) as exc_info:
            guard.shutdown()

        assert exc_info.value.failed_steps == ["meter.force_flush", "tracer.force_flush"]
        assert calls == ["meter.shutdown", "tracer.shutdown"]
        assert guard.state is GuardState.RELEASED

    def test_error_message_lists_failed_steps(self, tracer_mock, meter_mock):
        tracer_mock.shutdown.side_effect = RuntimeError("exporter stuck")
        guard = ProviderGuard(TracerProviderHandle(tracer_mock, 1.0), MeterProviderHandle(meter_mock, 30))

        with pytest.raises(ShutdownError, match="tracer.shutdown"):
            guard.shutdown()

    def test_on_release_failure_is_reported(self, tracer_mock):
        def broken_release() -> None:
            raise OSError("handler already closed")

        guard = ProviderGuard(TracerProviderHandle(tracer_mock, 1.0), on_release=broken_release)

        with pytest.raises(ShutdownError) as exc_info:
            guard.shutdown()

        assert exc_info.value.failed_steps == ["on_release"]
        tracer_mock.shutdown.assert_called_once()


class TestScopedRelease:
    """Tests for the context manager protocol."""

    def test_releases_on_normal_exit(self, guard, calls):
        with guard:
            assert guard.state is GuardState.ACTIVE
        assert guard.state is GuardState.RELEASED
        assert len(calls) == 4

    def test_releases_when_body_raises(self, guard, calls):
        """Should release and let the body's exception propagate."""
        with pytest.raises(ValueError, match="startup failed"):
            with guard:
                raise ValueError("startup failed")

        assert guard.state is GuardState.RELEASED
        assert len(calls) == 4

    def test_body_exception_wins_over_shutdown_error(self, tracer_mock, meter_mock):
        tracer_mock.shutdown.side_effect = RuntimeError("exporter stuck")
        guard = ProviderGuard(TracerProviderHandle(tracer_mock, 1.0), MeterProviderHandle(meter_mock, 30))

        with pytest.raises(KeyError):
            with guard:
                raise KeyError("handler")

    def test_shutdown_error_raised_on_clean_exit(self, tracer_mock):
        tracer_mock.shutdown.side_effect = RuntimeError("exporter stuck")

        with pytest.raises(ShutdownError):
            with ProviderGuard(TracerProviderHandle(tracer_mock, 1.0)):
                pass


class TestComposition:
    """Tests for adding handles to an active guard."""

    def test_fills_empty_slots(self, tracer_mock, meter_mock, calls):
        guard = ProviderGuard()
        guard.with_tracer_provider(TracerProviderHandle(tracer_mock, 1.0)).with_meter_provider(
            MeterProviderHandle(meter_mock, 30)
        )

        guard.shutdown()
        assert len(calls) == 4

    def test_rejects_second_handle_of_same_kind(self, guard, tracer_mock):
        """Should allow at most one tracer handle per guard."""
        with pytest.raises(InvalidConfigError, match="tracer"):
            guard.with_tracer_provider(TracerProviderHandle(tracer_mock, 1.0))

    def test_rejects_handles_after_release(self, meter_mock):
        guard = ProviderGuard()
        guard.shutdown()

        with pytest.raises(InvalidConfigError, match="released"):
            guard.with_meter_provider(MeterProviderHandle(meter_mock, 30))
