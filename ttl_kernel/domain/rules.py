"""
ttl_kernel.domain.rules -- Frozen DTOs for expiration rules.

ZERO I/O.  The registry service converts ORM rows into these snapshots so
that the worker never holds a live ORM object across transactions.

Invariants enforced:
    - ``retention_seconds >= 0`` and ``batch_size >= 1`` (validate_rule_limits)
    - A rule is identified by its RuleKey; ordering of RuleKeys is the
      deterministic processing order of a cleanup pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from ttl_kernel.exceptions import InvalidRuleError

DEFAULT_BATCH_SIZE = 10000


class RuleKey(NamedTuple):
    """Natural key of an expiration rule.  Sorts by collection, then field."""

    collection_id: str
    time_field: str

    def __str__(self) -> str:
        return f"{self.collection_id}.{self.time_field}"


@dataclass(frozen=True)
class ExpirationRule:
    """Immutable snapshot of one expiration rule and its run statistics."""

    collection_id: str
    time_field: str
    retention_seconds: int
    active: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_run: datetime | None = None
    rows_deleted_last_run: int = 0
    total_rows_deleted: int = 0
    derived_index_ref: str | None = None

    @property
    def key(self) -> RuleKey:
        return RuleKey(self.collection_id, self.time_field)

    @property
    def retention(self) -> timedelta:
        return timedelta(seconds=self.retention_seconds)

    def cutoff(self, now: datetime) -> datetime:
        """Entries with a time field strictly before this are expired."""
        return now - self.retention


@dataclass(frozen=True)
class RuleSummary:
    """A rule plus derived reporting fields, as shown by ``summary()``."""

    rule: ExpirationRule
    time_since_last_run: timedelta | None

    @property
    def key(self) -> RuleKey:
        return self.rule.key


def validate_rule_limits(retention_seconds: int, batch_size: int) -> None:
    """Reject retention/batch values that break registry invariants.

    Raises:
        InvalidRuleError: On a negative retention, a batch size below one,
            or non-integer input (bools included).
    """
    if isinstance(retention_seconds, bool) or not isinstance(retention_seconds, int):
        raise InvalidRuleError(
            "retention_seconds", retention_seconds, "must be an integer",
        )
    if retention_seconds < 0:
        raise InvalidRuleError(
            "retention_seconds", retention_seconds, "must be >= 0",
        )
    if isinstance(batch_size, bool) or not isinstance(batch_size, int):
        raise InvalidRuleError("batch_size", batch_size, "must be an integer")
    if batch_size < 1:
        raise InvalidRuleError("batch_size", batch_size, "must be >= 1")
