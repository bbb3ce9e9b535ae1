"""
ttl_worker.services -- Stateful services of the cleanup worker.

    store      SqlStore, the adapter every database call goes through
    guard      single-flight guards (advisory lock, lease table)
    deleter    BatchDeleter, one rule in bounded batches
    runner     CleanupRunner, one pass over all active rules
    scheduler  SchedulerLoop, the interval thread
"""

from ttl_worker.services.deleter import BatchDeleter
from ttl_worker.services.guard import (
    AdvisoryLockGuard,
    GuardBase,
    LeaseTableGuard,
    SingleFlightGuard,
    guard_for_engine,
)
from ttl_worker.services.runner import CleanupRunner
from ttl_worker.services.scheduler import SchedulerLoop
from ttl_worker.services.store import ExpirationStore, SqlStore

__all__ = [
    "AdvisoryLockGuard",
    "BatchDeleter",
    "CleanupRunner",
    "ExpirationStore",
    "GuardBase",
    "LeaseTableGuard",
    "SchedulerLoop",
    "SingleFlightGuard",
    "SqlStore",
    "guard_for_engine",
]
