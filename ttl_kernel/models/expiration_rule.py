"""
ORM model for the expiration rule registry.

Contract:
    ExpirationRuleModel persists one rule per ``(collection_id, time_field)``
    together with its run statistics.  ``to_dto()`` / ``from_dto()`` convert
    to and from the frozen ``ExpirationRule`` snapshot.

Architecture: ttl_kernel/models. Imports from ttl_kernel.db.base only
    (DTO imports are deferred to keep the dependency one-way).

Invariants enforced:
    - Composite primary key: at most one rule per key.
    - CHECK constraints mirror ``validate_rule_limits`` so rows written
      outside the registry service cannot break them either.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ttl_kernel.db.base import TimestampedBase

if TYPE_CHECKING:
    from ttl_kernel.domain.rules import ExpirationRule


class ExpirationRuleModel(TimestampedBase):
    """Persistent expiration rule with run statistics."""

    __tablename__ = "ttl_rules"

    __table_args__ = (
        CheckConstraint("retention_seconds >= 0", name="ck_ttl_rules_retention"),
        CheckConstraint("batch_size >= 1", name="ck_ttl_rules_batch_size"),
        CheckConstraint(
            "rows_deleted_last_run >= 0", name="ck_ttl_rules_last_run_rows",
        ),
        Index("ix_ttl_rules_active", "active"),
    )

    collection_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    time_field: Mapped[str] = mapped_column(String(255), primary_key=True)
    retention_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, default=10000, nullable=False)
    last_run: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    rows_deleted_last_run: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False,
    )
    total_rows_deleted: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False,
    )
    derived_index_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_dto(self) -> ExpirationRule:
        from ttl_kernel.domain.rules import ExpirationRule

        return ExpirationRule(
            collection_id=self.collection_id,
            time_field=self.time_field,
            retention_seconds=self.retention_seconds,
            active=self.active,
            batch_size=self.batch_size,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_run=self.last_run,
            rows_deleted_last_run=self.rows_deleted_last_run or 0,
            total_rows_deleted=self.total_rows_deleted or 0,
            derived_index_ref=self.derived_index_ref,
        )

    @classmethod
    def from_dto(cls, dto: ExpirationRule) -> ExpirationRuleModel:
        return cls(
            collection_id=dto.collection_id,
            time_field=dto.time_field,
            retention_seconds=dto.retention_seconds,
            active=dto.active,
            batch_size=dto.batch_size,
            created_at=dto.created_at,
            updated_at=dto.updated_at,
            last_run=dto.last_run,
            rows_deleted_last_run=dto.rows_deleted_last_run,
            total_rows_deleted=dto.total_rows_deleted,
            derived_index_ref=dto.derived_index_ref,
        )
