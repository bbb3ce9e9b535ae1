"""
Pytest fixtures for the TTL expiration engine test suite.

Provides:
- File-backed SQLite databases (one per test, under tmp_path) so worker
  threads and the test thread see the same data
- Collection-table factories and row helpers
- A deterministic clock with naive datetimes (SQLite strips tzinfo)
- Structured-log capture

Environment Variables:
- DATABASE_URL: PostgreSQL connection URL for tests marked ``postgres``.
  Those tests are skipped when it is not set.
"""

import json
import logging
import os
from datetime import datetime, timedelta
from io import StringIO

import pytest
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
)

from ttl_kernel.db.engine import create_tables, get_session_factory
from ttl_kernel.domain.clock import DeterministicClock
from ttl_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)


# Fixed "now" for deterministic tests
TEST_NOW = datetime(2026, 2, 1, 12, 0, 0)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture ttl logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, runner):
            runner.run_one_pass()
            logs = captured_logs()
            assert any(r["message"] == "cleanup_pass_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("ttl")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as exercising real thread timing"
    )


def pytest_collection_modifyitems(config, items):
    if os.environ.get("DATABASE_URL"):
        return
    skip_pg = pytest.mark.skip(reason="DATABASE_URL not set")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Clock fixtures
# =============================================================================


@pytest.fixture
def clock():
    # Use naive datetimes for SQLite compatibility (SQLite strips tzinfo)
    return DeterministicClock(fixed_time=TEST_NOW)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'ttl.db'}"


@pytest.fixture
def engine(db_url):
    eng = create_engine(db_url, connect_args={"check_same_thread": False})
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def bare_engine(tmp_path):
    """SQLite engine without the registry tables."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'bare.db'}",
        connect_args={"check_same_thread": False},
    )
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# Collection helpers
# =============================================================================


@pytest.fixture
def make_collection(engine):
    """Factory fixture creating an application table with a time column.

    Usage::

        orders = make_collection("orders", "created_at")
    """

    def _create(name: str, time_field: str = "created_at") -> Table:
        table = Table(
            name,
            MetaData(),
            Column("id", Integer, primary_key=True),
            Column(time_field, DateTime, nullable=False),
            Column("payload", String(50)),
        )
        table.create(engine)
        return table

    return _create


@pytest.fixture
def insert_rows(engine):
    """Insert rows with the given timestamps into a collection table."""

    def _insert(table: Table, timestamps: list[datetime], time_field: str = "created_at") -> None:
        if not timestamps:
            return
        with engine.begin() as conn:
            conn.execute(
                insert(table),
                [{time_field: ts, "payload": f"row-{i}"} for i, ts in enumerate(timestamps)],
            )

    return _insert


@pytest.fixture
def count_rows(engine):
    def _count(table: Table) -> int:
        with engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar_one()

    return _count


@pytest.fixture
def ages():
    """Timestamps ``seconds`` before TEST_NOW."""

    def _ages(*seconds: float) -> list[datetime]:
        return [TEST_NOW - timedelta(seconds=s) for s in seconds]

    return _ages
