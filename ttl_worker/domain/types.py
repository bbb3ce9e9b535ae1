"""
ttl_worker.domain.types -- Pure frozen dataclasses for the cleanup worker.

ZERO I/O.  Follows the pattern of ttl_kernel.domain.rules: frozen
dataclasses with enum status fields and tuples for immutable collections.

Per-rule failures are values (``RuleOutcome``), not exceptions: the batch
deleter returns one outcome per rule and the runner aggregates them into a
``CleanupPassResult``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from ttl_kernel.domain.rules import RuleKey


# =============================================================================
# Status enums
# =============================================================================


class RuleOutcomeStatus(str, Enum):
    """How one rule fared within one pass."""

    SUCCEEDED = "succeeded"  # Ran until no expired rows remained
    FAILED = "failed"  # Aborted by an error; stats left untouched
    INTERRUPTED = "interrupted"  # Shutdown observed between batches


class PassStatus(str, Enum):
    """Pass-level lifecycle status."""

    COMPLETED = "completed"  # Every rule succeeded
    PARTIALLY_COMPLETED = "partially_completed"  # At least one rule failed
    INTERRUPTED = "interrupted"  # Shutdown observed; remaining rules skipped
    SKIPPED_LOCKED = "skipped_locked"  # Another runner holds the guard
    SKIPPED_NO_RULES = "skipped_no_rules"  # Nothing active to expire
    SKIPPED_NOT_READY = "skipped_not_ready"  # Registry table not installed

    @property
    def is_skip(self) -> bool:
        return self in (
            PassStatus.SKIPPED_LOCKED,
            PassStatus.SKIPPED_NO_RULES,
            PassStatus.SKIPPED_NOT_READY,
        )


class SchedulerState(str, Enum):
    """States of the scheduler loop."""

    STOPPED = "stopped"  # No thread
    IDLE = "idle"  # Between cycles
    WAITING = "waiting"  # Blocked on the interruptible timer wait
    RUNNING = "running"  # Executing a cleanup pass
    RELOADING_CONFIG = "reloading_config"
    SHUTTING_DOWN = "shutting_down"


# =============================================================================
# Result DTOs
# =============================================================================


@dataclass(frozen=True)
class RuleOutcome:
    """Result of expiring one rule within a pass."""

    rule_key: RuleKey
    status: RuleOutcomeStatus
    rows_deleted: int = 0
    batches: int = 0
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == RuleOutcomeStatus.SUCCEEDED

    @property
    def error(self) -> str | None:
        if self.error_code is None:
            return None
        return f"{self.error_code}: {self.error_message}"


@dataclass(frozen=True)
class CleanupPassResult:
    """Immutable result of one cleanup pass.

    Returned by ``CleanupRunner.run_one_pass()``; never persisted.
    """

    pass_id: str
    status: PassStatus
    started_at: datetime
    completed_at: datetime | None = None
    total_rows_deleted: int = 0
    per_rule_outcomes: tuple[RuleOutcome, ...] = ()
    duration_ms: int = 0

    @property
    def skipped(self) -> bool:
        return self.status.is_skip

    @property
    def failed_rules(self) -> tuple[RuleOutcome, ...]:
        return tuple(
            o for o in self.per_rule_outcomes
            if o.status == RuleOutcomeStatus.FAILED
        )


@dataclass(frozen=True)
class WorkerStatus:
    """Point-in-time view of a scheduler loop."""

    worker_name: str
    state: SchedulerState
    running: bool
    interval_seconds: int
    enabled: bool
    started_at: datetime | None = None
    last_pass_at: datetime | None = None
    last_pass_status: PassStatus | None = None
    passes_run: int = 0
    passes_skipped: int = 0
    passes_failed: int = 0
