"""
Module: ttl_kernel.db.base
Responsibility: Declarative base classes for the registry's SQLAlchemy ORM
    models.  Provides the type annotation map for consistent column types and
    the TimestampedBase mixin for created/updated timestamps.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.  This module MUST NOT
    import from models/, services/, domain/, or outer layers.

Invariants enforced:
    - 64-bit counters: ``int`` maps to BigInteger, so ``total_rows_deleted``
      cannot overflow on long-lived rules.
    - Timezone-aware timestamps: ``datetime`` maps to DateTime(timezone=True).

Unlike most schemas, registry tables use natural keys (the rule key
``(collection_id, time_field)``, the lock name) rather than surrogate ids, so
Base declares no primary key of its own.
"""

from datetime import datetime
from typing import ClassVar

from sqlalchemy import BigInteger, DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """
    Declarative base for all TTL registry models.

    Guarantees:
        - datetime maps to DateTime(timezone=True) -- always timezone-aware.
        - int maps to BigInteger -- safe for monotonic counters.
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        int: BigInteger,
    }


class TimestampedBase(Base):
    """
    Abstract base with creation and modification timestamps.

    Services set both columns from the injected Clock; the server defaults
    only cover rows written outside the registry service.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=True,
    )
