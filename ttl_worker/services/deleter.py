"""
BatchDeleter -- expire one rule in bounded, separately committed batches.

Contract:
    ``expire(rule)`` deletes every row of ``rule.collection_id`` whose
    ``rule.time_field`` is strictly older than ``now - retention_seconds``
    and returns a ``RuleOutcome``.  It never raises for store errors: a
    failure becomes a FAILED outcome carrying the error code and message.

Invariants enforced:
    - The cutoff is computed once, when the rule starts, from the injected
      Clock.  Rows that age past the cutoff mid-rule wait for the next pass.
    - Each batch is its own transaction; earlier batches stay committed when
      a later one fails.
    - A batch smaller than ``batch_size`` ends the rule: with a fixed cutoff
      nothing older can remain.
    - The stop signal is observed between batches only.  A statement already
      sent to the store always completes.
"""

from __future__ import annotations

import time
from typing import Callable

from ttl_kernel.domain.clock import Clock, SystemClock
from ttl_kernel.domain.rules import ExpirationRule
from ttl_kernel.exceptions import TTLError
from ttl_kernel.logging_config import get_logger

from ttl_worker.domain.types import RuleOutcome, RuleOutcomeStatus
from ttl_worker.services.store import ExpirationStore

logger = get_logger("worker.deleter")

DEFAULT_YIELD_SECONDS = 0.01


def error_code_for(exc: BaseException) -> str:
    """Machine-readable code for an exception caught at the rule boundary."""
    if isinstance(exc, TTLError):
        return exc.code
    return type(exc).__name__


class BatchDeleter:
    """Runs the batch loop for one rule at a time.

    Non-goals:
        - Does NOT write rule statistics -- the runner owns writeback.
        - Does NOT retry failed batches.
    """

    def __init__(
        self,
        store: ExpirationStore,
        clock: Clock | None = None,
        yield_seconds: float = DEFAULT_YIELD_SECONDS,
        sleep: Callable[[float], object] = time.sleep,
        should_stop: Callable[[], bool] | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._yield_seconds = yield_seconds
        self._sleep = sleep
        self._should_stop = should_stop or (lambda: False)

    def expire(self, rule: ExpirationRule) -> RuleOutcome:
        """Delete all expired rows for ``rule``."""
        start_time = time.monotonic()
        cutoff = rule.cutoff(self._clock.now())
        rows_deleted = 0
        batches = 0

        logger.debug(
            "rule_cleanup_started",
            extra={
                "cutoff": cutoff,
                "batch_size": rule.batch_size,
                "retention_seconds": rule.retention_seconds,
            },
        )

        try:
            while True:
                deleted = self._store.delete_batch(
                    rule.collection_id,
                    rule.time_field,
                    cutoff,
                    rule.batch_size,
                )
                if deleted == 0:
                    break

                rows_deleted += deleted
                batches += 1

                if deleted < rule.batch_size:
                    break

                if self._should_stop():
                    duration_ms = int((time.monotonic() - start_time) * 1000)
                    logger.info(
                        "rule_cleanup_interrupted",
                        extra={"rows_deleted": rows_deleted, "batches": batches},
                    )
                    return RuleOutcome(
                        rule_key=rule.key,
                        status=RuleOutcomeStatus.INTERRUPTED,
                        rows_deleted=rows_deleted,
                        batches=batches,
                        duration_ms=duration_ms,
                    )

                if self._yield_seconds > 0:
                    self._sleep(self._yield_seconds)

        except Exception as exc:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            return RuleOutcome(
                rule_key=rule.key,
                status=RuleOutcomeStatus.FAILED,
                rows_deleted=rows_deleted,
                batches=batches,
                error_code=error_code_for(exc),
                error_message=str(exc),
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.debug(
            "rule_cleanup_finished",
            extra={"rows_deleted": rows_deleted, "batches": batches},
        )
        return RuleOutcome(
            rule_key=rule.key,
            status=RuleOutcomeStatus.SUCCEEDED,
            rows_deleted=rows_deleted,
            batches=batches,
            duration_ms=duration_ms,
        )
