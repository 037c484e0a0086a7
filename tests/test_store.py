"""Tests for the SQLite record store."""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from garage_workflow.core.clock import FixedClock
from garage_workflow.db.engine import init_db
from garage_workflow.db.models import Role, TaskStatus
from garage_workflow.db.store import Store
from garage_workflow.errors import IntegrityViolation, NotFoundError, StoreError, VersionConflict

NOW = datetime(2026, 3, 10, 9, 0)


@pytest.fixture
def store():
    """Create a temporary SQLite-backed store for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield Store(conn, clock=FixedClock(NOW))
        conn.close()


def _task(store, **overrides):
    record = {"org_id": "g1", "created_by": "u1", "title": "Oil change"}
    record.update(overrides)
    return store.insert("tasks", record)


class TestInsertAndGet:
    def test_insert_assigns_id_and_version(self, store):
        row = store.insert("members", {"org_id": "g1", "full_name": "Dana", "role": Role.STAFF})
        assert row["id"]
        assert row["version"] == 1
        assert row["role"] == "STAFF"
        assert row["created_at"] == NOW.isoformat()

    def test_json_columns_round_trip(self, store):
        row = _task(store, assigned_to=["a", "b"], metadata={"extra": {"k": 1}})
        assert row["assigned_to"] == ["a", "b"]
        assert row["metadata"] == {"extra": {"k": 1}}

    def test_get_missing_raises(self, store):
        with pytest.raises(NotFoundError, match="tasks record not found: nope"):
            store.get("tasks", "nope")

    def test_unknown_column_rejected(self, store):
        with pytest.raises(StoreError, match="Unknown columns"):
            store.insert("members", {"org_id": "g1", "full_name": "X", "role": "STAFF", "shoe_size": 44})


class TestFind:
    def test_filters_and_operators(self, store):
        _task(store, title="A", status=TaskStatus.WAITING, assigned_to=["u7"], price=10)
        _task(store, title="B", status=TaskStatus.IN_PROGRESS, price=50)
        _task(store, title="C", status=TaskStatus.CANCELLED)

        assert [r["title"] for r in store.find("tasks", status="WAITING")] == ["A"]
        assert {r["title"] for r in store.find("tasks", status__ne=TaskStatus.CANCELLED)} == {"A", "B"}
        assert [r["title"] for r in store.find("tasks", price__gt=20)] == ["B"]
        assert [r["title"] for r in store.find("tasks", assigned_to__contains="u7")] == ["A"]
        assert [r["title"] for r in store.find("tasks", price__isnull=True)] == ["C"]
        assert {r["title"] for r in store.find("tasks", status__in=["WAITING", "CANCELLED"])} == {"A", "C"}
        assert store.find("tasks", status__in=[]) == []

    def test_order_and_limit(self, store):
        for title in ("b", "c", "a"):
            _task(store, title=title)
        assert [r["title"] for r in store.find("tasks", order_by="-title", limit=2)] == ["c", "b"]

    def test_unknown_operator(self, store):
        with pytest.raises(StoreError, match="Unknown filter operator"):
            store.find("tasks", price__about=3)


class TestUpdate:
    def test_update_bumps_version(self, store):
        row = _task(store)
        updated = store.update("tasks", row["id"], {"title": "Brakes"})
        assert updated["title"] == "Brakes"
        assert updated["version"] == 2

    def test_stale_version_rejected(self, store):
        row = _task(store)
        store.update("tasks", row["id"], {"title": "First"}, expected_version=1)
        with pytest.raises(VersionConflict):
            store.update("tasks", row["id"], {"title": "Second"}, expected_version=1)
        assert store.get("tasks", row["id"])["title"] == "First"

    def test_update_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.update("tasks", "ghost", {"title": "x"}, expected_version=1)


class TestTransactions:
    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                _task(store, title="doomed")
                raise RuntimeError("boom")
        assert store.find("tasks") == []

    def test_nested_failure_keeps_outer_work(self, store):
        store.insert("vehicles", {"org_id": "g1", "plate": "1234567"})
        with store.transaction():
            _task(store, title="kept")
            with pytest.raises(IntegrityViolation):
                with store.transaction():
                    _task(store, title="dropped")
                    store.insert("vehicles", {"org_id": "g1", "plate": "1234567"})
        assert [r["title"] for r in store.find("tasks")] == ["kept"]


class TestSchema:
    def test_reopen_keeps_data(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_path = Path(tmp) / "test.db"
            conn = init_db(db_path)
            Store(conn).insert("members", {"org_id": "garage-1", "full_name": "Maya", "role": Role.STAFF})
            conn.close()

            conn = init_db(db_path)
            try:
                columns = {r["name"] for r in conn.execute("PRAGMA table_info(tasks)")}
                assert {"scheduled_reminder_at", "reminder_sent", "slot_date"} <= columns
                assert [r["full_name"] for r in Store(conn).find("members")] == ["Maya"]
            finally:
                conn.close()
