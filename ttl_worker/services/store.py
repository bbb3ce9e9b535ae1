"""
Store adapter -- the engine's only door into the database.

Contract:
    ``ExpirationStore`` is the protocol the runner and deleter depend on.
    ``SqlStore`` implements it over a SQLAlchemy Engine:

    - ``delete_batch()`` deletes up to ``limit`` rows whose time field is
      strictly older than ``cutoff``, in its own committed transaction.
    - ``active_rules()`` / ``count_active_rules()`` read the registry.
    - ``update_rule_stats()`` writes one rule's pass result atomically.
    - ``is_writable()`` / ``registry_ready()`` gate whether a pass may run.

Rows are addressed by physical location where the store has one (``ctid``
on PostgreSQL, ``rowid`` on SQLite), so each batch is a LIMITed scan of the
time index plus direct row deletes, with no second lookup by key.  Other
dialects fall back to a single-column primary key.

Non-goals:
    - No retries.  A failed batch aborts its rule; the next pass retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import (
    Column,
    ColumnElement,
    Delete,
    Table,
    delete,
    func,
    inspect,
    literal_column,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ttl_kernel.db.engine import get_session_factory, is_postgres, session_scope
from ttl_kernel.domain.clock import Clock, SystemClock
from ttl_kernel.domain.rules import ExpirationRule, RuleKey
from ttl_kernel.exceptions import RuleEnumerationError, UnsupportedStoreError
from ttl_kernel.logging_config import get_logger
from ttl_kernel.models.expiration_rule import ExpirationRuleModel
from ttl_kernel.services.rule_registry import RuleRegistry
from ttl_kernel.utils.identifiers import resolve_target

logger = get_logger("worker.store")

_ROW_LOCATORS = {
    "postgresql": "ctid",
    "sqlite": "rowid",
}


@runtime_checkable
class ExpirationStore(Protocol):
    """Operations the cleanup worker needs from the data store."""

    def delete_batch(
        self,
        collection_id: str,
        time_field: str,
        cutoff: datetime,
        limit: int,
    ) -> int: ...

    def active_rules(self) -> tuple[ExpirationRule, ...]: ...

    def count_active_rules(self) -> int: ...

    def update_rule_stats(
        self,
        key: RuleKey,
        last_run: datetime,
        rows_deleted_last_run: int,
        total_rows_deleted_delta: int,
    ) -> None: ...

    def is_writable(self) -> bool: ...

    def registry_ready(self) -> bool: ...


@dataclass(frozen=True)
class _DeleteTarget:
    table: Table
    column: Column
    locator: ColumnElement
    # ctid: compare against an array so PostgreSQL plans a TID scan.
    tid_array: bool = False


def delete_statement(target: _DeleteTarget, cutoff: datetime, limit: int) -> Delete:
    """DELETE of at most ``limit`` rows strictly older than ``cutoff``."""
    victims = (
        select(target.locator)
        .select_from(target.table)
        .where(target.column < cutoff)
        .limit(limit)
    )
    if target.tid_array:
        matches = target.locator == func.any(func.array(victims.scalar_subquery()))
    else:
        matches = target.locator.in_(victims)
    return delete(target.table).where(matches)


class SqlStore:
    """``ExpirationStore`` over a SQLAlchemy Engine."""

    def __init__(self, engine: Engine, clock: Clock | None = None):
        self._engine = engine
        self._clock = clock or SystemClock()
        self._session_factory = get_session_factory(engine)
        self._targets: dict[RuleKey, _DeleteTarget] = {}

    @property
    def engine(self) -> Engine:
        return self._engine

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete_batch(
        self,
        collection_id: str,
        time_field: str,
        cutoff: datetime,
        limit: int,
    ) -> int:
        """Delete one batch of expired rows and commit it.

        Raises:
            RuleTargetError: If the collection or field has gone away.
            UnsupportedStoreError: If no row locator exists for the table.
            SQLAlchemyError: On any database failure.
        """
        key = RuleKey(collection_id, time_field)
        try:
            with self._engine.begin() as connection:
                target = self._targets.get(key)
                if target is None:
                    target = self._build_target(connection, key)
                    self._targets[key] = target

                result = connection.execute(delete_statement(target, cutoff, limit))
                return max(result.rowcount or 0, 0)
        except Exception:
            # Schema may have changed under us; re-reflect next time.
            self._targets.pop(key, None)
            raise

    def forget(self, collection_id: str, time_field: str) -> None:
        """Drop the cached reflection for a rule target."""
        self._targets.pop(RuleKey(collection_id, time_field), None)

    def _build_target(self, connection, key: RuleKey) -> _DeleteTarget:
        table, column = resolve_target(connection, key.collection_id, key.time_field)
        dialect = connection.dialect.name
        locator_name = _ROW_LOCATORS.get(dialect)
        if locator_name is not None:
            locator: ColumnElement = literal_column(locator_name)
        else:
            pk_columns = list(table.primary_key.columns)
            if len(pk_columns) != 1:
                raise UnsupportedStoreError(dialect, key.collection_id)
            locator = pk_columns[0]
        return _DeleteTarget(
            table=table,
            column=column,
            locator=locator,
            tid_array=dialect == "postgresql",
        )

    # -------------------------------------------------------------------------
    # Registry access
    # -------------------------------------------------------------------------

    def active_rules(self) -> tuple[ExpirationRule, ...]:
        """Active rules ordered by (collection_id, time_field).

        Raises:
            RuleEnumerationError: If the registry cannot be read.
        """
        try:
            with session_scope(self._session_factory) as session:
                return RuleRegistry(session, self._clock).active_rules()
        except SQLAlchemyError as exc:
            raise RuleEnumerationError(str(exc)) from exc

    def count_active_rules(self) -> int:
        """
        Raises:
            RuleEnumerationError: If the registry cannot be read.
        """
        try:
            with session_scope(self._session_factory) as session:
                return RuleRegistry(session, self._clock).count_active_rules()
        except SQLAlchemyError as exc:
            raise RuleEnumerationError(str(exc)) from exc

    def update_rule_stats(
        self,
        key: RuleKey,
        last_run: datetime,
        rows_deleted_last_run: int,
        total_rows_deleted_delta: int,
    ) -> None:
        """Write back one rule's pass result in its own transaction."""
        with session_scope(self._session_factory) as session:
            RuleRegistry(session, self._clock).record_run(
                key,
                last_run=last_run,
                rows_deleted_last_run=rows_deleted_last_run,
                total_rows_deleted_delta=total_rows_deleted_delta,
            )

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def registry_ready(self) -> bool:
        """True once the registry table has been created."""
        return inspect(self._engine).has_table(ExpirationRuleModel.__tablename__)

    def is_writable(self) -> bool:
        """False while a PostgreSQL server is in recovery (a read-only standby)."""
        if not is_postgres(self._engine):
            return True
        with self._engine.connect() as connection:
            in_recovery = connection.execute(text("SELECT pg_is_in_recovery()")).scalar()
        return not in_recovery
