"""Database layer - engine helpers and declarative base classes."""

from ttl_kernel.db.base import Base, TimestampedBase
from ttl_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
    session_scope,
)

__all__ = [
    "Base",
    "TimestampedBase",
    "create_tables",
    "get_session_factory",
    "init_engine_from_url",
    "is_postgres",
    "session_scope",
]
