"""
ttl_worker.domain -- Pure types and value objects for the cleanup worker.

ZERO I/O.  All types are frozen dataclasses.
"""

from ttl_worker.domain.types import (
    CleanupPassResult,
    PassStatus,
    RuleOutcome,
    RuleOutcomeStatus,
    SchedulerState,
    WorkerStatus,
)

__all__ = [
    "CleanupPassResult",
    "PassStatus",
    "RuleOutcome",
    "RuleOutcomeStatus",
    "SchedulerState",
    "WorkerStatus",
]
