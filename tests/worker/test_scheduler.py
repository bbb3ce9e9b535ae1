"""
Tests for ttl_worker.services.scheduler -- SchedulerLoop.

Validates tick() gating (enabled, writable store), failure counting,
start/stop lifecycle, config reload (synchronous and signal-driven) and
graceful shutdown of an in-flight pass.

Uses a fake runner so loop behaviour is observable without a database.
"""

import signal
import threading
import time
from datetime import datetime

import pytest

from ttl_config import StaticConfigSource
from ttl_config.schema import SchedulerConfig
from ttl_kernel.domain.clock import DeterministicClock
from ttl_kernel.exceptions import GuardError, InvalidSchedulerConfigError
from ttl_worker.domain.types import CleanupPassResult, PassStatus, SchedulerState
from ttl_worker.services.scheduler import SchedulerLoop

NOW = datetime(2026, 2, 1, 12, 0, 0)


# =============================================================================
# Test doubles
# =============================================================================


class FakeRunner:
    """Counts passes; can fail or block until the stop event is set."""

    def __init__(self, status=PassStatus.COMPLETED, error=None, block=False):
        self.stop_event = threading.Event()
        self.status = status
        self.error = error
        self.block = block
        self.calls = 0
        self.entered = threading.Event()
        self.finished = threading.Event()

    def run_one_pass(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.block:
            self.entered.set()
            self.stop_event.wait(timeout=10)
        self.finished.set()
        return CleanupPassResult(
            pass_id=f"pass-{self.calls}",
            status=self.status,
            started_at=NOW,
        )


class FakeStore:
    def __init__(self, writable=True):
        self.writable = writable

    def is_writable(self):
        return self.writable


class FlakySource:
    """Config source whose next answer can be swapped for an error."""

    def __init__(self, config):
        self.config = config
        self.error = None

    def read_config(self):
        if self.error is not None:
            raise self.error
        return self.config


def _wait_for(predicate, timeout=5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(fixed_time=NOW)


@pytest.fixture
def make_loop(clock):
    loops = []

    def _make(runner=None, store=None, config=None, source=None):
        loop = SchedulerLoop(
            runner=runner or FakeRunner(),
            store=store or FakeStore(),
            config_source=source or StaticConfigSource(config or SchedulerConfig()),
            clock=clock,
            worker_name="test-worker",
        )
        loops.append(loop)
        return loop

    yield _make

    for loop in loops:
        loop.stop(timeout=5)


# =============================================================================
# tick()
# =============================================================================


class TestTick:

    def test_runs_pass_when_enabled(self, make_loop):
        runner = FakeRunner()
        loop = make_loop(runner=runner)

        result = loop.tick()

        assert result.status == PassStatus.COMPLETED
        assert runner.calls == 1
        status = loop.status()
        assert status.passes_run == 1
        assert status.last_pass_at == NOW
        assert status.last_pass_status == PassStatus.COMPLETED

    def test_disabled_runs_nothing(self, make_loop):
        runner = FakeRunner()
        loop = make_loop(runner=runner, config=SchedulerConfig(enabled=False))

        assert loop.tick() is None
        assert runner.calls == 0
        assert loop.status().last_pass_at is None

    def test_read_only_store_runs_nothing(self, make_loop):
        runner = FakeRunner()
        loop = make_loop(runner=runner, store=FakeStore(writable=False))

        assert loop.tick() is None
        assert runner.calls == 0

    def test_skipped_pass_counted_separately(self, make_loop):
        loop = make_loop(runner=FakeRunner(status=PassStatus.SKIPPED_LOCKED))

        loop.tick()

        status = loop.status()
        assert status.passes_run == 0
        assert status.passes_skipped == 1
        assert status.last_pass_status == PassStatus.SKIPPED_LOCKED

    def test_runner_exception_is_contained(self, make_loop, captured_logs):
        error = GuardError("ttl_expiration_runner", "acquire", "down")
        loop = make_loop(runner=FakeRunner(error=error))

        assert loop.tick() is None
        assert loop.status().passes_failed == 1

        failed = [r for r in captured_logs() if r["message"] == "cleanup_pass_failed"]
        assert failed[0]["exc_code"] == "GUARD_FAILURE"
        assert failed[0]["worker_name"] == "test-worker"


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:

    def test_start_stop_idempotent(self, make_loop):
        loop = make_loop()

        assert loop.start() is True
        assert loop.start() is True
        assert loop.is_running

        assert loop.stop(timeout=5) is True
        assert loop.stop(timeout=5) is True
        assert not loop.is_running

    def test_stop_without_start(self, make_loop):
        assert make_loop().stop() is True

    def test_status_while_running(self, make_loop, clock):
        loop = make_loop(config=SchedulerConfig(interval_seconds=60))
        loop.start()

        assert _wait_for(lambda: loop.status().state == SchedulerState.WAITING)
        status = loop.status()
        assert status.running is True
        assert status.worker_name == "test-worker"
        assert status.interval_seconds == 60
        assert status.started_at == clock.now()

    def test_status_after_stop(self, make_loop):
        loop = make_loop()
        loop.start()
        loop.stop(timeout=5)

        status = loop.status()
        assert status.state == SchedulerState.STOPPED
        assert status.running is False

    def test_restart_after_stop(self, make_loop):
        loop = make_loop()
        loop.start()
        loop.stop(timeout=5)

        assert loop.start() is True
        assert loop.is_running

    def test_stop_requested_before_start_is_honored(self, make_loop, captured_logs):
        loop = make_loop()
        loop.request_stop()

        assert loop.start() is True
        assert not loop.is_running
        assert any(
            r["message"] == "scheduler_start_skipped" for r in captured_logs()
        )

        loop.stop()
        assert loop.start() is True
        assert loop.is_running

    def test_stop_without_thread_clears_pending_stop(self, make_loop):
        runner = FakeRunner()
        loop = make_loop(runner=runner)

        loop.request_stop()
        loop.stop()

        assert not runner.stop_event.is_set()

    def test_request_stop_sets_runner_stop_event(self, make_loop):
        runner = FakeRunner()
        loop = make_loop(runner=runner)

        loop.request_stop()

        assert runner.stop_event.is_set()

    @pytest.mark.slow
    def test_timer_expiry_runs_passes(self, make_loop):
        runner = FakeRunner()
        loop = make_loop(runner=runner, config=SchedulerConfig(interval_seconds=1))
        loop.start()

        assert _wait_for(lambda: runner.calls >= 1, timeout=5)

    def test_stop_lets_in_flight_pass_finish(self, make_loop):
        runner = FakeRunner(block=True)
        loop = make_loop(runner=runner, config=SchedulerConfig(interval_seconds=1))
        loop.start()
        assert runner.entered.wait(timeout=5)

        started = time.monotonic()
        loop.stop(timeout=5)

        assert runner.finished.is_set()
        assert not loop.is_running
        assert time.monotonic() - started < 5


# =============================================================================
# Reload
# =============================================================================


class TestReload:

    def test_reload_swaps_snapshot(self, make_loop):
        source = StaticConfigSource(SchedulerConfig(interval_seconds=60))
        loop = make_loop(source=source)

        source.update(SchedulerConfig(interval_seconds=5, enabled=False))
        new_config = loop.reload_config()

        assert new_config == SchedulerConfig(5, False)
        assert loop.config == new_config
        assert loop.status().interval_seconds == 5

    def test_invalid_reload_raises_and_keeps_previous(self, make_loop):
        source = FlakySource(SchedulerConfig(interval_seconds=30))
        loop = make_loop(source=source)

        source.error = InvalidSchedulerConfigError("interval_seconds", 0, "must be >= 1")
        with pytest.raises(InvalidSchedulerConfigError):
            loop.reload_config()

        assert loop.config.interval_seconds == 30

    def test_reload_request_does_not_run_pass(self, make_loop):
        runner = FakeRunner()
        source = StaticConfigSource(SchedulerConfig(interval_seconds=60))
        loop = make_loop(runner=runner, source=source)
        loop.start()

        source.update(SchedulerConfig(interval_seconds=45))
        loop.request_reload()

        assert _wait_for(lambda: loop.config.interval_seconds == 45)
        assert runner.calls == 0

    def test_invalid_reload_request_logged_and_ignored(self, make_loop, captured_logs):
        source = FlakySource(SchedulerConfig(interval_seconds=60))
        loop = make_loop(source=source)
        loop.start()

        source.error = InvalidSchedulerConfigError("enabled", "maybe", "must be a boolean")
        loop.request_reload()

        def rejected():
            return any(
                r["message"] == "scheduler_config_rejected" for r in captured_logs()
            )

        assert _wait_for(rejected)
        assert loop.config.interval_seconds == 60
        assert loop.is_running


# =============================================================================
# Signals
# =============================================================================


class TestSignalHandlers:

    @pytest.fixture
    def restore_signals(self):
        saved = {
            sig: signal.getsignal(sig)
            for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
        }
        yield
        for sig, handler in saved.items():
            signal.signal(sig, handler)

    def test_handlers_map_to_requests(self, make_loop, restore_signals):
        runner = FakeRunner()
        source = StaticConfigSource(SchedulerConfig(interval_seconds=60))
        loop = make_loop(runner=runner, source=source)
        loop.install_signal_handlers()
        loop.start()

        source.update(SchedulerConfig(interval_seconds=7))
        signal.getsignal(signal.SIGHUP)(signal.SIGHUP, None)
        assert _wait_for(lambda: loop.config.interval_seconds == 7)

        signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
        assert runner.stop_event.is_set()
        assert _wait_for(lambda: not loop.is_running)
        assert runner.calls == 0
