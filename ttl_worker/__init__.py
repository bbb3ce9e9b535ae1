"""
ttl_worker -- background expiration of rows past their retention period.

Runs cleanup passes on an interval: for every active rule in the
``ttl_rules`` registry, delete rows whose time field is older than
``now - retention_seconds`` in bounded batches, then record statistics.
At most one pass runs at a time across all workers sharing a database.

Architecture:
    ttl_worker/ is a top-level package on top of ttl_kernel and ttl_config.
    Nothing in ttl_kernel or ttl_config imports from ttl_worker.
    ``TTLEngine`` (orchestrator.py) wires everything together.

Invariants:
    - Only rows strictly older than the cutoff are deleted.
    - Single-flight: concurrent passes skip instead of waiting.
    - A failing rule never stops the others.
    - total_rows_deleted never decreases.
    - Shutdown finishes the in-progress batch and records its rule.
"""

from ttl_worker.domain.types import (
    CleanupPassResult,
    PassStatus,
    RuleOutcome,
    RuleOutcomeStatus,
    SchedulerState,
    WorkerStatus,
)
from ttl_worker.orchestrator import TTLEngine

__all__ = [
    "CleanupPassResult",
    "PassStatus",
    "RuleOutcome",
    "RuleOutcomeStatus",
    "SchedulerState",
    "TTLEngine",
    "WorkerStatus",
]
