"""
CleanupRunner -- one cleanup pass over every active expiration rule.

Contract:
    ``run_one_pass()`` returns a ``CleanupPassResult`` and never raises for
    per-rule failures.  Orchestrator-fatal errors propagate as typed
    exceptions:

    - ``GuardError`` -- the single-flight guard could not be acquired or
      released.
    - ``RuleEnumerationError`` -- the registry could not be read.

Pass algorithm:
    1. Registry table missing          -> SKIPPED_NOT_READY.
    2. No active rules                 -> SKIPPED_NO_RULES (guard untouched).
    3. Guard held elsewhere            -> SKIPPED_LOCKED.
    4. Rules in (collection_id, time_field) order, one BatchDeleter call
       each; stats written back per rule as soon as it finishes.
    5. Stop requested between rules    -> INTERRUPTED.

Invariants enforced:
    - ``last_run`` is the pass start time for every rule the pass touched.
    - ``total_rows_deleted`` only grows.
    - A failed rule's statistics are left exactly as they were.
    - The guard is released on every exit path.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime
from uuid import uuid4

from ttl_kernel.domain.clock import Clock, SystemClock
from ttl_kernel.domain.rules import ExpirationRule
from ttl_kernel.logging_config import LogContext, get_logger

from ttl_config.schema import DEFAULT_LOCK_NAME
from ttl_worker.domain.types import (
    CleanupPassResult,
    PassStatus,
    RuleOutcome,
    RuleOutcomeStatus,
)
from ttl_worker.services.deleter import BatchDeleter, error_code_for
from ttl_worker.services.guard import SingleFlightGuard
from ttl_worker.services.store import ExpirationStore

logger = get_logger("worker.runner")


class CleanupRunner:
    """Cleanup pass orchestrator.

    Non-goals:
        - Does NOT schedule itself -- see ``SchedulerLoop``.
        - Does NOT run rules in parallel.
    """

    def __init__(
        self,
        store: ExpirationStore,
        guard: SingleFlightGuard,
        deleter: BatchDeleter | None = None,
        clock: Clock | None = None,
        lock_name: str = DEFAULT_LOCK_NAME,
        stop_event: threading.Event | None = None,
    ):
        self._store = store
        self._guard = guard
        self._clock = clock or SystemClock()
        self._lock_name = lock_name
        self._stop_event = stop_event or threading.Event()
        self._deleter = deleter or BatchDeleter(
            store,
            clock=self._clock,
            should_stop=self._stop_event.is_set,
        )

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    @property
    def lock_name(self) -> str:
        return self._lock_name

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_one_pass(self) -> CleanupPassResult:
        """Execute one cleanup pass.

        Raises:
            GuardError: If the guard backend fails.
            RuleEnumerationError: If the registry cannot be read.
        """
        pass_id = uuid4().hex
        started_at = self._clock.now()
        start_time = time.monotonic()

        with LogContext.bind(pass_id=pass_id, lock_name=self._lock_name):
            if not self._store.registry_ready():
                return self._skipped(
                    pass_id, started_at, start_time, PassStatus.SKIPPED_NOT_READY,
                )

            if self._store.count_active_rules() == 0:
                return self._skipped(
                    pass_id, started_at, start_time, PassStatus.SKIPPED_NO_RULES,
                )

            with self._guard.held(self._lock_name) as acquired:
                if not acquired:
                    return self._skipped(
                        pass_id, started_at, start_time, PassStatus.SKIPPED_LOCKED,
                    )
                outcomes, interrupted = self._run_rules(started_at)

            total_rows = sum(o.rows_deleted for o in outcomes)
            if interrupted:
                status = PassStatus.INTERRUPTED
            elif any(o.status == RuleOutcomeStatus.FAILED for o in outcomes):
                status = PassStatus.PARTIALLY_COMPLETED
            else:
                status = PassStatus.COMPLETED

            result = CleanupPassResult(
                pass_id=pass_id,
                status=status,
                started_at=started_at,
                completed_at=self._clock.now(),
                total_rows_deleted=total_rows,
                per_rule_outcomes=tuple(outcomes),
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )

            logger.info(
                "cleanup_pass_completed",
                extra={
                    "status": status.value,
                    "rules_processed": len(outcomes),
                    "rules_failed": len(result.failed_rules),
                    "total_rows_deleted": total_rows,
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_rules(self, started_at: datetime) -> tuple[list[RuleOutcome], bool]:
        rules = self._store.active_rules()
        outcomes: list[RuleOutcome] = []

        for rule in rules:
            if self._stop_event.is_set():
                return outcomes, True

            with LogContext.bind(rule=str(rule.key)):
                outcome = self._deleter.expire(rule)
                outcome = self._record(rule, outcome, started_at)
            outcomes.append(outcome)

            if outcome.status == RuleOutcomeStatus.INTERRUPTED:
                return outcomes, True

        return outcomes, False

    def _record(
        self,
        rule: ExpirationRule,
        outcome: RuleOutcome,
        started_at: datetime,
    ) -> RuleOutcome:
        """Write back statistics for a finished rule, or log its failure."""
        if outcome.status == RuleOutcomeStatus.FAILED:
            logger.warning(
                "rule_cleanup_failed",
                extra={
                    "collection_id": rule.collection_id,
                    "time_field": rule.time_field,
                    "error_code": outcome.error_code,
                    "error_message": outcome.error_message,
                    "rows_deleted": outcome.rows_deleted,
                },
            )
            return outcome

        try:
            self._store.update_rule_stats(
                rule.key,
                last_run=started_at,
                rows_deleted_last_run=outcome.rows_deleted,
                total_rows_deleted_delta=outcome.rows_deleted,
            )
        except Exception as exc:
            logger.warning(
                "rule_stats_writeback_failed",
                extra={
                    "collection_id": rule.collection_id,
                    "time_field": rule.time_field,
                    "error_code": error_code_for(exc),
                    "error_message": str(exc),
                    "rows_deleted": outcome.rows_deleted,
                },
            )
            return RuleOutcome(
                rule_key=outcome.rule_key,
                status=RuleOutcomeStatus.FAILED,
                rows_deleted=outcome.rows_deleted,
                batches=outcome.batches,
                error_code=error_code_for(exc),
                error_message=str(exc),
                duration_ms=outcome.duration_ms,
            )

        logger.info(
            "rule_cleanup_completed",
            extra={
                "status": outcome.status.value,
                "rows_deleted": outcome.rows_deleted,
                "batches": outcome.batches,
                "duration_ms": outcome.duration_ms,
            },
        )
        return outcome

    def _skipped(
        self,
        pass_id: str,
        started_at: datetime,
        start_time: float,
        status: PassStatus,
    ) -> CleanupPassResult:
        logger.info("cleanup_pass_skipped", extra={"status": status.value})
        return CleanupPassResult(
            pass_id=pass_id,
            status=status,
            started_at=started_at,
            completed_at=self._clock.now(),
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
