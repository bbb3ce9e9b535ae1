"""
Tests for ttl_worker.services.runner -- CleanupRunner.

Validates the cleanup pass: skip conditions, single-flight exclusion,
per-rule isolation, statistics writeback and monotonicity, deterministic
ordering, interruption and orchestrator-fatal errors.

Uses file-backed SQLite with real ORM models.
"""

import threading

import pytest

from ttl_kernel.db.engine import session_scope
from ttl_kernel.domain.rules import ExpirationRule, RuleKey
from ttl_kernel.exceptions import GuardError, RuleEnumerationError
from ttl_kernel.services.rule_registry import RuleRegistry
from ttl_worker.domain.types import PassStatus, RuleOutcomeStatus
from ttl_worker.services.deleter import BatchDeleter
from ttl_worker.services.guard import GuardBase, LeaseTableGuard
from ttl_worker.services.runner import CleanupRunner
from ttl_worker.services.store import SqlStore

DAY = 86400
LOCK = "ttl_expiration_runner"


# =============================================================================
# Test doubles
# =============================================================================


class SpyGuard(GuardBase):
    """In-process guard that records calls; optionally refuses or fails."""

    def __init__(self, refuse: bool = False, fail: bool = False):
        self.refuse = refuse
        self.fail = fail
        self.acquired: list[str] = []
        self.released: list[str] = []

    def try_acquire(self, name):
        if self.fail:
            raise GuardError(name, "acquire", "backend unavailable")
        if self.refuse:
            return False
        self.acquired.append(name)
        return True

    def release(self, name):
        self.released.append(name)


class BrokenStatsStore(SqlStore):
    def update_rule_stats(self, key, last_run, rows_deleted_last_run, total_rows_deleted_delta):
        raise RuntimeError("stats table locked")


class EnumerationFailingStore:
    def registry_ready(self):
        return True

    def count_active_rules(self):
        return 1

    def active_rules(self):
        raise RuleEnumerationError("connection reset")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store(engine, clock):
    return SqlStore(engine, clock=clock)


@pytest.fixture
def stop_event():
    return threading.Event()


@pytest.fixture
def make_runner(store, engine, clock, stop_event):
    def _make(guard=None, store_=None, sleep=None, holder="runner-1"):
        target = store_ or store
        deleter = BatchDeleter(
            target,
            clock=clock,
            sleep=sleep or (lambda _s: None),
            should_stop=stop_event.is_set,
        )
        return CleanupRunner(
            store=target,
            guard=guard or LeaseTableGuard(engine, clock=clock, holder=holder),
            deleter=deleter,
            clock=clock,
            lock_name=LOCK,
            stop_event=stop_event,
        )

    return _make


@pytest.fixture
def runner(make_runner):
    return make_runner()


@pytest.fixture
def register(session_factory, clock):
    def _register(collection_id, time_field="created_at", retention=DAY, batch_size=2):
        with session_scope(session_factory) as session:
            return RuleRegistry(session, clock).register_rule(
                collection_id, time_field, retention, batch_size=batch_size,
            )

    return _register


@pytest.fixture
def get_rule(session_factory, clock):
    def _get(collection_id, time_field="created_at") -> ExpirationRule:
        with session_scope(session_factory) as session:
            return RuleRegistry(session, clock).get_rule(collection_id, time_field)

    return _get


@pytest.fixture
def orders(make_collection, insert_rows, ages, register):
    """3 rows older than a day plus 1 recent row; rule batch_size 2."""
    table = make_collection("orders", "created_at")
    insert_rows(table, ages(2 * DAY, 3 * DAY, 4 * DAY, 3600))
    register("orders", batch_size=2)
    return table


# =============================================================================
# Skip conditions
# =============================================================================


class TestSkips:

    def test_not_ready_without_registry_table(self, bare_engine, clock, make_runner):
        bare_store = SqlStore(bare_engine, clock=clock)
        guard = SpyGuard()

        result = make_runner(guard=guard, store_=bare_store).run_one_pass()

        assert result.status == PassStatus.SKIPPED_NOT_READY
        assert result.skipped is True
        assert guard.acquired == []

    def test_zero_rules_skips_without_guard(self, make_runner):
        guard = SpyGuard()

        result = make_runner(guard=guard).run_one_pass()

        assert result.status == PassStatus.SKIPPED_NO_RULES
        assert result.total_rows_deleted == 0
        assert guard.acquired == []
        assert guard.released == []

    def test_only_inactive_rules_counts_as_zero(self, make_runner, orders, session_factory, clock):
        with session_scope(session_factory) as session:
            RuleRegistry(session, clock).deactivate_rule("orders", "created_at")

        result = make_runner(guard=SpyGuard()).run_one_pass()

        assert result.status == PassStatus.SKIPPED_NO_RULES

    def test_locked_elsewhere(self, make_runner, orders, count_rows, get_rule):
        result = make_runner(guard=SpyGuard(refuse=True)).run_one_pass()

        assert result.status == PassStatus.SKIPPED_LOCKED
        assert result.per_rule_outcomes == ()
        assert count_rows(orders) == 4
        assert get_rule("orders").last_run is None

    def test_skip_is_logged_at_info(self, make_runner, captured_logs):
        make_runner(guard=SpyGuard()).run_one_pass()

        skipped = [r for r in captured_logs() if r["message"] == "cleanup_pass_skipped"]
        assert skipped[0]["level"] == "INFO"
        assert skipped[0]["status"] == "skipped_no_rules"


# =============================================================================
# Cleanup and statistics
# =============================================================================


class TestCleanupPass:

    def test_orders_scenario(self, runner, orders, count_rows, get_rule, clock):
        result = runner.run_one_pass()

        assert result.status == PassStatus.COMPLETED
        assert result.total_rows_deleted == 3
        (outcome,) = result.per_rule_outcomes
        assert outcome.rule_key == RuleKey("orders", "created_at")
        assert outcome.batches == 2
        assert count_rows(orders) == 1

        rule = get_rule("orders")
        assert rule.rows_deleted_last_run == 3
        assert rule.total_rows_deleted == 3
        assert rule.last_run == clock.now()

    def test_second_pass_is_idempotent(self, runner, orders, count_rows, get_rule, clock):
        runner.run_one_pass()
        clock.advance(60)

        result = runner.run_one_pass()

        assert result.total_rows_deleted == 0
        assert count_rows(orders) == 1
        rule = get_rule("orders")
        assert rule.rows_deleted_last_run == 0
        assert rule.total_rows_deleted == 3
        assert rule.last_run == clock.now()

    def test_result_metadata(self, runner, orders, clock):
        result = runner.run_one_pass()

        assert len(result.pass_id) == 32
        assert result.started_at == clock.now()
        assert result.completed_at == clock.now()
        assert result.failed_rules == ()

    def test_guard_released_after_pass(self, runner, orders, engine, clock):
        runner.run_one_pass()

        other = LeaseTableGuard(engine, clock=clock, holder="runner-2")
        assert other.try_acquire(LOCK) is True

    def test_rules_processed_in_key_order(self, runner, make_collection, register):
        for name in ("sessions", "audit", "events"):
            make_collection(name, "created_at")
            register(name)

        result = runner.run_one_pass()

        keys = [o.rule_key for o in result.per_rule_outcomes]
        assert keys == [
            RuleKey("audit", "created_at"),
            RuleKey("events", "created_at"),
            RuleKey("sessions", "created_at"),
        ]

    def test_statistics_monotonic(
        self, runner, orders, insert_rows, ages, get_rule, clock,
    ):
        totals = []
        for extra in (0, 5, 0, 2):
            insert_rows(orders, ages(*[2 * DAY + i for i in range(extra)]))
            runner.run_one_pass()
            totals.append(get_rule("orders").total_rows_deleted)
            clock.advance(60)

        assert totals == sorted(totals)
        assert totals[-1] == 3 + 5 + 2

    def test_pass_logs_completion(self, runner, orders, captured_logs):
        result = runner.run_one_pass()

        done = [r for r in captured_logs() if r["message"] == "cleanup_pass_completed"]
        assert len(done) == 1
        assert done[0]["pass_id"] == result.pass_id
        assert done[0]["total_rows_deleted"] == 3
        assert done[0]["lock_name"] == LOCK


# =============================================================================
# Per-rule isolation
# =============================================================================


class TestIsolation:

    def test_missing_collection_does_not_stop_others(
        self, runner, orders, make_collection, register, engine, count_rows, get_rule,
        captured_logs,
    ):
        ghost = make_collection("archive", "created_at")
        register("archive")
        ghost.drop(engine)

        result = runner.run_one_pass()

        assert result.status == PassStatus.PARTIALLY_COMPLETED
        statuses = {o.rule_key.collection_id: o.status for o in result.per_rule_outcomes}
        assert statuses == {
            "archive": RuleOutcomeStatus.FAILED,
            "orders": RuleOutcomeStatus.SUCCEEDED,
        }
        assert count_rows(orders) == 1

        archive = get_rule("archive")
        assert archive.last_run is None
        assert archive.total_rows_deleted == 0

        failed = [r for r in captured_logs() if r["message"] == "rule_cleanup_failed"]
        assert failed[0]["level"] == "WARNING"
        assert failed[0]["collection_id"] == "archive"
        assert failed[0]["error_code"] == "RULE_TARGET_INVALID"

    def test_writeback_failure_marks_rule_failed(
        self, make_runner, engine, clock, orders, count_rows, get_rule,
    ):
        broken = BrokenStatsStore(engine, clock=clock)

        result = make_runner(store_=broken).run_one_pass()

        (outcome,) = result.per_rule_outcomes
        assert outcome.status == RuleOutcomeStatus.FAILED
        assert outcome.error_code == "RuntimeError"
        assert outcome.rows_deleted == 3
        assert result.status == PassStatus.PARTIALLY_COMPLETED
        assert count_rows(orders) == 1
        assert get_rule("orders").total_rows_deleted == 0


# =============================================================================
# Interruption
# =============================================================================


class TestInterruption:

    def test_stop_before_first_rule(self, runner, orders, stop_event, count_rows, engine, clock):
        stop_event.set()

        result = runner.run_one_pass()

        assert result.status == PassStatus.INTERRUPTED
        assert result.per_rule_outcomes == ()
        assert count_rows(orders) == 4
        assert LeaseTableGuard(engine, clock=clock, holder="x").try_acquire(LOCK) is True

    def test_stop_mid_rule_records_progress(
        self, make_runner, make_collection, insert_rows, ages, register, stop_event,
        get_rule, clock,
    ):
        for name in ("alpha", "beta"):
            table = make_collection(name, "created_at")
            insert_rows(table, ages(*[2 * DAY + i for i in range(6)]))
            register(name, batch_size=2)

        runner = make_runner(sleep=lambda _s: stop_event.set())
        result = runner.run_one_pass()

        assert result.status == PassStatus.INTERRUPTED
        (outcome,) = result.per_rule_outcomes
        assert outcome.rule_key == RuleKey("alpha", "created_at")
        assert outcome.status == RuleOutcomeStatus.INTERRUPTED
        assert outcome.rows_deleted == 4

        alpha = get_rule("alpha")
        assert alpha.rows_deleted_last_run == 4
        assert alpha.last_run == clock.now()
        assert get_rule("beta").last_run is None


# =============================================================================
# Orchestrator-fatal errors
# =============================================================================


class TestFatalErrors:

    def test_guard_failure_raises(self, make_runner, orders):
        with pytest.raises(GuardError):
            make_runner(guard=SpyGuard(fail=True)).run_one_pass()

    def test_enumeration_failure_raises_and_releases(self, make_runner):
        guard = SpyGuard()

        with pytest.raises(RuleEnumerationError):
            make_runner(guard=guard, store_=EnumerationFailingStore()).run_one_pass()

        assert guard.released == [LOCK]


# =============================================================================
# Single-flight across threads
# =============================================================================


class TestSingleFlight:

    def test_concurrent_pass_is_skipped(
        self, make_runner, make_collection, insert_rows, ages, register, count_rows,
    ):
        table = make_collection("orders", "created_at")
        insert_rows(table, ages(*[2 * DAY + i for i in range(3)]))
        register("orders", batch_size=1)

        inside = threading.Event()
        proceed = threading.Event()

        def blocking_sleep(_seconds):
            inside.set()
            proceed.wait(timeout=10)

        first = make_runner(sleep=blocking_sleep, holder="runner-a")
        second = make_runner(holder="runner-b")
        results = {}

        thread = threading.Thread(target=lambda: results.setdefault("a", first.run_one_pass()))
        thread.start()
        try:
            assert inside.wait(timeout=10)
            results["b"] = second.run_one_pass()
        finally:
            proceed.set()
            thread.join(timeout=10)

        assert results["b"].status == PassStatus.SKIPPED_LOCKED
        assert results["a"].status == PassStatus.COMPLETED
        assert results["a"].total_rows_deleted == 3
        assert count_rows(table) == 0
