"""
ORM model for single-flight runner leases.

Contract:
    One row per held lock name.  The row's existence means "held" until
    ``expires_at``; an expired row may be taken over by another holder.
    Used by ``ttl_worker.services.guard.LeaseTableGuard`` on stores without
    session-scoped advisory locks.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from ttl_kernel.db.base import Base


class RunnerLeaseModel(Base):
    """A time-bounded claim on a named lock."""

    __tablename__ = "ttl_runner_leases"

    lock_name: Mapped[str] = mapped_column(String(200), primary_key=True)
    holder: Mapped[str] = mapped_column(String(200), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
