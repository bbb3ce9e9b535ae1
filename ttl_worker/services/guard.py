"""
Single-flight guards -- at most one cleanup pass at a time, across processes.

Contract:
    ``try_acquire(name)`` never blocks: it returns False when the name is
    already held (by anyone, including this guard instance) and the caller
    skips its pass.  ``release(name)`` is idempotent.  ``held(name)`` pairs
    the two so release happens on every exit path.

Backends:
    - ``AdvisoryLockGuard``: PostgreSQL session-level advisory lock held on a
      dedicated connection for the duration of the pass.  If the process
      dies, the server ends the session and frees the lock.
    - ``LeaseTableGuard``: a row in ``ttl_runner_leases`` with an expiry, for
      stores without advisory locks.  A crashed holder's lease lapses after
      ``ttl_seconds``.

Non-goals:
    - No fencing tokens.  A lease that outlives its TTL can be taken over
      while the first holder is still deleting; keep ``ttl_seconds``
      well above the longest expected pass.
"""

from __future__ import annotations

import os
import socket
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import ContextManager, Generator, Protocol, runtime_checkable
from uuid import uuid4

from sqlalchemy import delete, func, insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ttl_kernel.db.engine import is_postgres
from ttl_kernel.domain.clock import Clock, SystemClock
from ttl_kernel.exceptions import GuardError
from ttl_kernel.logging_config import get_logger
from ttl_kernel.models.runner_lease import RunnerLeaseModel

logger = get_logger("worker.guard")


@runtime_checkable
class SingleFlightGuard(Protocol):
    """Named, non-blocking mutual exclusion."""

    def try_acquire(self, name: str) -> bool: ...

    def release(self, name: str) -> None: ...

    def held(self, name: str) -> ContextManager[bool]: ...


class GuardBase:
    """Supplies ``held()`` on top of ``try_acquire()`` and ``release()``."""

    @contextmanager
    def held(self, name: str) -> Generator[bool, None, None]:
        """Yield whether ``name`` was acquired; release it on exit if it was."""
        acquired = self.try_acquire(name)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class AdvisoryLockGuard(GuardBase):
    """PostgreSQL ``pg_try_advisory_lock(hashtext(name))`` guard."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def try_acquire(self, name: str) -> bool:
        with self._lock:
            if name in self._connections:
                return False

            try:
                connection = self._engine.connect()
            except SQLAlchemyError as exc:
                raise GuardError(name, "acquire", str(exc)) from exc

            try:
                acquired = connection.execute(
                    select(func.pg_try_advisory_lock(func.hashtext(name)))
                ).scalar()
                connection.commit()
            except SQLAlchemyError as exc:
                connection.invalidate()
                connection.close()
                raise GuardError(name, "acquire", str(exc)) from exc

            if not acquired:
                connection.close()
                return False

            self._connections[name] = connection
            return True

    def release(self, name: str) -> None:
        with self._lock:
            connection = self._connections.pop(name, None)
        if connection is None:
            return

        try:
            connection.execute(select(func.pg_advisory_unlock(func.hashtext(name))))
            connection.commit()
        except SQLAlchemyError as exc:
            # Dropping the session is the only other way to free the lock.
            connection.invalidate()
            raise GuardError(name, "release", str(exc)) from exc
        finally:
            connection.close()


class LeaseTableGuard(GuardBase):
    """Lease rows with a TTL in ``ttl_runner_leases``."""

    def __init__(
        self,
        engine: Engine,
        clock: Clock | None = None,
        ttl_seconds: int = 3600,
        holder: str | None = None,
    ):
        self._engine = engine
        self._clock = clock or SystemClock()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._holder = holder or default_holder_id()
        self._held: set[str] = set()
        self._lock = threading.Lock()

    @property
    def holder(self) -> str:
        return self._holder

    def try_acquire(self, name: str) -> bool:
        leases = RunnerLeaseModel.__table__
        with self._lock:
            if name in self._held:
                return False

            now = self._clock.now()
            try:
                with self._engine.begin() as connection:
                    expired = connection.execute(
                        delete(leases).where(
                            leases.c.lock_name == name,
                            leases.c.expires_at <= now,
                        )
                    )
                    if expired.rowcount:
                        logger.warning(
                            "runner_lease_expired_takeover",
                            extra={"lock_name": name, "holder": self._holder},
                        )
                    connection.execute(
                        insert(leases).values(
                            lock_name=name,
                            holder=self._holder,
                            acquired_at=now,
                            expires_at=now + self._ttl,
                        )
                    )
            except IntegrityError:
                return False
            except SQLAlchemyError as exc:
                raise GuardError(name, "acquire", str(exc)) from exc

            self._held.add(name)
            return True

    def release(self, name: str) -> None:
        leases = RunnerLeaseModel.__table__
        with self._lock:
            if name not in self._held:
                return
            self._held.discard(name)

        try:
            with self._engine.begin() as connection:
                connection.execute(
                    delete(leases).where(
                        leases.c.lock_name == name,
                        leases.c.holder == self._holder,
                    )
                )
        except SQLAlchemyError as exc:
            raise GuardError(name, "release", str(exc)) from exc


def guard_for_engine(
    engine: Engine,
    clock: Clock | None = None,
    lease_ttl_seconds: int = 3600,
) -> SingleFlightGuard:
    """Advisory locks on PostgreSQL, leases everywhere else."""
    if is_postgres(engine):
        return AdvisoryLockGuard(engine)
    return LeaseTableGuard(engine, clock=clock, ttl_seconds=lease_ttl_seconds)
