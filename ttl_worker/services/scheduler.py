"""
SchedulerLoop -- background thread that runs cleanup passes on an interval.

Contract:
    Waits ``interval_seconds`` on an interruptible event, then calls
    ``tick()``, which runs one pass through ``CleanupRunner`` when the
    snapshot says ``enabled`` and the store is writable.

    State machine::

        idle -> waiting -> running          -> idle
                        -> reloading_config -> idle
                        -> shutting_down    -> stopped

Invariants enforced:
    - Only timer expiry runs a pass.  A wake-up for a reload or stop
      request never does.
    - The config snapshot is read once per iteration and swapped whole.  An
      invalid reload is rejected and the previous snapshot kept.
    - Shutdown is observed by the runner between batches and between rules,
      so an in-flight pass records the rule it was on before exiting.
    - Runner exceptions are logged and counted; the loop survives them.
"""

from __future__ import annotations

import signal
import threading
from datetime import datetime

from ttl_kernel.domain.clock import Clock, SystemClock
from ttl_kernel.exceptions import InvalidSchedulerConfigError
from ttl_kernel.logging_config import LogContext, get_logger

from ttl_config import ConfigSource
from ttl_config.schema import SchedulerConfig
from ttl_worker.domain.types import (
    CleanupPassResult,
    PassStatus,
    SchedulerState,
    WorkerStatus,
)
from ttl_worker.services.runner import CleanupRunner
from ttl_worker.services.store import ExpirationStore

logger = get_logger("worker.scheduler")

DEFAULT_WORKER_NAME = "ttl-worker"


class SchedulerLoop:
    """Interval scheduler for cleanup passes.

    Contract:
        - ``start()`` / ``stop()`` are idempotent and return True.
        - ``request_stop()`` / ``request_reload()`` only set flags and wake
          the loop, so they are safe to call from signal handlers.
        - ``reload_config()`` is synchronous and raises on bad config.
        - ``tick()`` is one timer-expiry evaluation (public for testing).

    Non-goals:
        - NOT a distributed scheduler: peers coordinate only through the
          runner's single-flight guard.
    """

    def __init__(
        self,
        runner: CleanupRunner,
        store: ExpirationStore,
        config_source: ConfigSource,
        clock: Clock | None = None,
        worker_name: str = DEFAULT_WORKER_NAME,
    ):
        self._runner = runner
        self._store = store
        self._config_source = config_source
        self._clock = clock or SystemClock()
        self._worker_name = worker_name

        self._config_lock = threading.Lock()
        self._config = config_source.read_config()

        # Shared with the runner so a stop request is seen between batches.
        self._stop_event = runner.stop_event
        self._wakeup = threading.Event()
        self._reload_requested = False
        self._thread: threading.Thread | None = None

        self._status_lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._started_at: datetime | None = None
        self._last_pass_at: datetime | None = None
        self._last_pass_status: PassStatus | None = None
        self._passes_run = 0
        self._passes_skipped = 0
        self._passes_failed = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def config(self) -> SchedulerConfig:
        with self._config_lock:
            return self._config

    @property
    def worker_name(self) -> str:
        return self._worker_name

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop in a daemon thread.

        No-op if already running, or if a stop was requested before the loop
        started (e.g. a signal during startup).  ``stop()`` clears a pending
        stop request.
        """
        if self.is_running:
            return True
        if self._stop_event.is_set():
            logger.warning(
                "scheduler_start_skipped",
                extra={"worker_name": self._worker_name, "reason": "stop_pending"},
            )
            return True

        self._reload_requested = False
        self._wakeup.clear()
        self._started_at = self._clock.now()
        self._set_state(SchedulerState.IDLE)
        self._thread = threading.Thread(
            target=self._run_loop,
            name=self._worker_name,
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={
                "worker_name": self._worker_name,
                "interval_seconds": self.config.interval_seconds,
                "enabled": self.config.enabled,
            },
        )
        return True

    def stop(self, timeout: float = 30.0) -> bool:
        """Request shutdown and wait for the loop thread to exit.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        if self._thread is None:
            self._stop_event.clear()
            self._wakeup.clear()
            self._reload_requested = False
            return True

        self.request_stop()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning(
                "scheduler_stop_timeout",
                extra={"worker_name": self._worker_name, "timeout": timeout},
            )
            return True

        self._thread = None
        self._stop_event.clear()
        logger.info("scheduler_stopped", extra={"worker_name": self._worker_name})
        return True

    def request_stop(self) -> None:
        self._stop_event.set()
        self._wakeup.set()

    def request_reload(self) -> None:
        self._reload_requested = True
        self._wakeup.set()

    def reload_config(self) -> SchedulerConfig:
        """Re-read the config source and swap the snapshot.

        Raises:
            InvalidSchedulerConfigError: If the source holds bad values.
                The previous snapshot stays in effect.
        """
        new_config = self._config_source.read_config()
        with self._config_lock:
            old_config = self._config
            self._config = new_config

        logger.info(
            "scheduler_config_reloaded",
            extra={
                "worker_name": self._worker_name,
                "previous": old_config.to_dict(),
                "current": new_config.to_dict(),
            },
        )
        return new_config

    def tick(self) -> CleanupPassResult | None:
        """Evaluate one timer expiry.

        Returns the pass result, or None when no pass ran (disabled, store
        read-only, or the runner raised).
        """
        config = self.config
        if not config.enabled:
            logger.debug("cleanup_pass_disabled")
            return None

        try:
            writable = self._store.is_writable()
        except Exception:
            logger.exception("store_writability_check_failed")
            self._count_failure()
            return None
        if not writable:
            logger.info("cleanup_pass_store_read_only")
            return None

        self._set_state(SchedulerState.RUNNING)
        with LogContext.bind(worker_name=self._worker_name):
            try:
                result = self._runner.run_one_pass()
            except Exception:
                logger.exception("cleanup_pass_failed")
                self._count_failure()
                return None
            finally:
                self._set_state(SchedulerState.IDLE)

        with self._status_lock:
            self._last_pass_at = result.started_at
            self._last_pass_status = result.status
            if result.skipped:
                self._passes_skipped += 1
            else:
                self._passes_run += 1
        return result

    def status(self) -> WorkerStatus:
        config = self.config
        with self._status_lock:
            return WorkerStatus(
                worker_name=self._worker_name,
                state=self._state if self.is_running else SchedulerState.STOPPED,
                running=self.is_running,
                interval_seconds=config.interval_seconds,
                enabled=config.enabled,
                started_at=self._started_at if self.is_running else None,
                last_pass_at=self._last_pass_at,
                last_pass_status=self._last_pass_status,
                passes_run=self._passes_run,
                passes_skipped=self._passes_skipped,
                passes_failed=self._passes_failed,
            )

    def install_signal_handlers(self) -> None:
        """SIGTERM/SIGINT stop the loop, SIGHUP reloads.  Main thread only."""
        signal.signal(signal.SIGTERM, lambda signum, frame: self.request_stop())
        signal.signal(signal.SIGINT, lambda signum, frame: self.request_stop())
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, lambda signum, frame: self.request_reload())

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background loop.  Exits when the stop event is set."""
        with LogContext.bind(worker_name=self._worker_name):
            while not self._stop_event.is_set():
                interval = self.config.interval_seconds
                self._set_state(SchedulerState.WAITING)
                woken = self._wakeup.wait(timeout=interval)
                self._wakeup.clear()

                if self._stop_event.is_set():
                    break

                if self._reload_requested:
                    self._reload_requested = False
                    self._reload_from_loop()
                    continue

                if woken:
                    continue

                try:
                    self.tick()
                except Exception:
                    logger.exception("scheduler_tick_exception")

            self._set_state(SchedulerState.SHUTTING_DOWN)
            logger.info("scheduler_shutting_down")

    def _reload_from_loop(self) -> None:
        self._set_state(SchedulerState.RELOADING_CONFIG)
        try:
            self.reload_config()
        except InvalidSchedulerConfigError as exc:
            logger.warning(
                "scheduler_config_rejected",
                extra={
                    "field": exc.field,
                    "reason": exc.reason,
                    "interval_seconds": self.config.interval_seconds,
                    "enabled": self.config.enabled,
                },
            )
        except Exception:
            logger.exception("scheduler_config_reload_failed")
        finally:
            self._set_state(SchedulerState.IDLE)

    def _set_state(self, state: SchedulerState) -> None:
        with self._status_lock:
            self._state = state

    def _count_failure(self) -> None:
        with self._status_lock:
            self._passes_failed += 1
