"""
RuleRegistry -- durable store of expiration rules and their statistics.

Contract:
    Register (idempotent upsert), deactivate, drop, reset and query
    expiration rules, and record per-rule run statistics.

Architecture: ttl_kernel/services.  Imports from ttl_kernel.domain,
    ttl_kernel.models and ttl_kernel.utils.

Invariants enforced:
    - At most one rule per (collection_id, time_field).
    - retention_seconds >= 0, batch_size >= 1 (validated before any write).
    - Targets are validated once, at registration: the collection exists,
      the field exists and is a date/timestamp column.  Cleanup passes do
      not re-validate.
    - total_rows_deleted only grows, via ``total = total + :delta`` executed
      in the database, so concurrent writers from other processes never
      lose an increment.  ``reset_rule_stats`` is the only way down.
    - All timestamps come from the injected Clock.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, Table, func, select, update
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.orm import Session
from sqlalchemy.schema import DropIndex

from ttl_kernel.domain.clock import Clock, SystemClock
from ttl_kernel.domain.rules import (
    DEFAULT_BATCH_SIZE,
    ExpirationRule,
    RuleKey,
    RuleSummary,
    validate_rule_limits,
)
from ttl_kernel.exceptions import RuleNotFoundError
from ttl_kernel.logging_config import get_logger
from ttl_kernel.models.expiration_rule import ExpirationRuleModel
from ttl_kernel.utils.identifiers import (
    derived_index_name,
    reflect_collection,
    resolve_target,
)

logger = get_logger("services.rule_registry")


class RuleRegistry:
    """Session-bound access layer for the ``ttl_rules`` table."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def register_rule(
        self,
        collection_id: str,
        time_field: str,
        retention_seconds: int,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> ExpirationRule:
        """Create or update a rule and ensure its derived index exists.

        Re-registering an existing key updates retention and batch size,
        re-activates the rule and keeps its statistics.

        Raises:
            InvalidRuleError: If retention or batch size are out of range.
            RuleTargetError: If the collection or field cannot be expired.
        """
        validate_rule_limits(retention_seconds, batch_size)

        connection = self._session.connection()
        _, column = resolve_target(connection, collection_id, time_field)

        index_name = derived_index_name(collection_id, time_field)
        Index(index_name, column).create(bind=connection, checkfirst=True)

        now = self._clock.now()
        model = self._session.get(ExpirationRuleModel, (collection_id, time_field))
        if model is None:
            model = ExpirationRuleModel(
                collection_id=collection_id,
                time_field=time_field,
                retention_seconds=retention_seconds,
                batch_size=batch_size,
                active=True,
                created_at=now,
                updated_at=now,
                rows_deleted_last_run=0,
                total_rows_deleted=0,
                derived_index_ref=index_name,
            )
            self._session.add(model)
            created = True
        else:
            model.retention_seconds = retention_seconds
            model.batch_size = batch_size
            model.active = True
            model.updated_at = now
            model.derived_index_ref = index_name
            created = False
        self._session.flush()

        logger.info(
            "rule_registered",
            extra={
                "rule": f"{collection_id}.{time_field}",
                "retention_seconds": retention_seconds,
                "batch_size": batch_size,
                "index": index_name,
                "rule_created": created,
            },
        )
        return model.to_dto()

    def deactivate_rule(self, collection_id: str, time_field: str) -> ExpirationRule:
        """Stop expiring a rule's collection; configuration is kept.

        Raises:
            RuleNotFoundError: If no such rule exists.
        """
        model = self._load(collection_id, time_field)
        model.active = False
        model.updated_at = self._clock.now()
        self._session.flush()
        logger.info(
            "rule_deactivated", extra={"rule": f"{collection_id}.{time_field}"},
        )
        return model.to_dto()

    def drop_rule(self, collection_id: str, time_field: str) -> bool:
        """Remove a rule and release its derived index.

        Returns False if the rule did not exist.
        """
        model = self._session.get(ExpirationRuleModel, (collection_id, time_field))
        if model is None:
            return False

        if model.derived_index_ref:
            self._drop_index(collection_id, time_field, model.derived_index_ref)

        self._session.delete(model)
        self._session.flush()
        logger.info(
            "rule_dropped",
            extra={
                "rule": f"{collection_id}.{time_field}",
                "index": model.derived_index_ref,
            },
        )
        return True

    def reset_rule_stats(self, collection_id: str, time_field: str) -> ExpirationRule:
        """Zero a rule's counters and clear ``last_run``.

        Raises:
            RuleNotFoundError: If no such rule exists.
        """
        model = self._load(collection_id, time_field)
        model.last_run = None
        model.rows_deleted_last_run = 0
        model.total_rows_deleted = 0
        model.updated_at = self._clock.now()
        self._session.flush()
        logger.info(
            "rule_stats_reset", extra={"rule": f"{collection_id}.{time_field}"},
        )
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def record_run(
        self,
        key: RuleKey,
        last_run: datetime,
        rows_deleted_last_run: int,
        total_rows_deleted_delta: int,
    ) -> None:
        """Write back one rule's result for a cleanup pass.

        Raises:
            ValueError: If either count is negative.
            RuleNotFoundError: If the rule was dropped while the pass ran.
        """
        if rows_deleted_last_run < 0 or total_rows_deleted_delta < 0:
            raise ValueError("Deleted row counts cannot be negative")

        model = self._load(key.collection_id, key.time_field)
        self._session.execute(
            update(ExpirationRuleModel)
            .where(
                ExpirationRuleModel.collection_id == key.collection_id,
                ExpirationRuleModel.time_field == key.time_field,
            )
            .values(
                last_run=last_run,
                rows_deleted_last_run=rows_deleted_last_run,
                total_rows_deleted=(
                    ExpirationRuleModel.total_rows_deleted + total_rows_deleted_delta
                ),
            )
            .execution_options(synchronize_session=False)
        )
        # The increment ran in SQL; reload the row on next access.
        self._session.expire(model)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_rule(self, collection_id: str, time_field: str) -> ExpirationRule:
        """Get one rule.

        Raises:
            RuleNotFoundError: If no such rule exists.
        """
        return self._load(collection_id, time_field).to_dto()

    def list_rules(self, active_only: bool = False) -> tuple[ExpirationRule, ...]:
        """All rules ordered by (collection_id, time_field)."""
        stmt = select(ExpirationRuleModel).order_by(
            ExpirationRuleModel.collection_id,
            ExpirationRuleModel.time_field,
        )
        if active_only:
            stmt = stmt.where(ExpirationRuleModel.active == True)  # noqa: E712
        models = self._session.execute(stmt).scalars().all()
        return tuple(m.to_dto() for m in models)

    def active_rules(self) -> tuple[ExpirationRule, ...]:
        """Active rules in deterministic processing order."""
        return self.list_rules(active_only=True)

    def count_active_rules(self) -> int:
        return self._session.execute(
            select(func.count())
            .select_from(ExpirationRuleModel)
            .where(ExpirationRuleModel.active == True)  # noqa: E712
        ).scalar_one()

    def summary(self) -> tuple[RuleSummary, ...]:
        """Every rule with the time elapsed since its last run."""
        now = self._clock.now()
        summaries = []
        for rule in self.list_rules():
            elapsed = None
            if rule.last_run is not None:
                elapsed = now - _align_tz(rule.last_run, now)
            summaries.append(RuleSummary(rule=rule, time_since_last_run=elapsed))
        return tuple(summaries)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _load(self, collection_id: str, time_field: str) -> ExpirationRuleModel:
        model = self._session.get(ExpirationRuleModel, (collection_id, time_field))
        if model is None:
            raise RuleNotFoundError(collection_id, time_field)
        return model

    def _drop_index(self, collection_id: str, time_field: str, index_name: str) -> None:
        connection = self._session.connection()
        try:
            table = reflect_collection(connection, collection_id)
        except NoSuchTableError:
            # Dropping the collection already dropped its indexes.
            return
        connection.execute(drop_index_statement(table, time_field, index_name))


def drop_index_statement(table: Table, time_field: str, index_name: str) -> DropIndex:
    """DROP INDEX IF EXISTS for an expiry index, qualified by the table's schema.

    The index is attached to the reflected table so the schema is rendered
    even when the time column has since been renamed or dropped.
    """
    column = table.c[time_field] if time_field in table.c else next(iter(table.c))
    return DropIndex(Index(index_name, column), if_exists=True)


def _align_tz(value: datetime, reference: datetime) -> datetime:
    """Make ``value`` comparable with ``reference`` (SQLite drops tzinfo)."""
    if value.tzinfo is None and reference.tzinfo is not None:
        return value.replace(tzinfo=reference.tzinfo)
    if value.tzinfo is not None and reference.tzinfo is None:
        return value.replace(tzinfo=None)
    return value
