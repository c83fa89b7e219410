"""Tests for the record store implementations."""

import threading
import time
from datetime import datetime, timedelta

import pytest

from timekeeper import catalog
from timekeeper.db import SQLiteStore
from timekeeper.errors import StorageError
from timekeeper.storage import (
    CLIENTS,
    PROJECTS,
    TIME_ENTRIES,
    Filter,
    Order,
    eq,
    gte,
    lt,
)

BASE = datetime(2024, 5, 6, 9, 0, 0)


@pytest.fixture
def project_id(store):
    client = store.insert(CLIENTS, {"name": "Acme", "hourly_rate": 40.0})
    project = store.insert(PROJECTS, {"client_id": client["id"], "name": "Site"})
    return project["id"]


def _entry(project_id, hours, running=False, notes=None):
    start = BASE + timedelta(hours=hours)
    record = {
        "project_id": project_id,
        "start_time": start,
        "is_running": running,
        "is_manual": False,
        "notes": notes,
    }
    if not running:
        record["end_time"] = start + timedelta(minutes=30)
        record["duration_seconds"] = 1800
    return record


class TestInsert:
    def test_generates_id_and_timestamps(self, store, project_id):
        record = store.insert(TIME_ENTRIES, _entry(project_id, 0))

        assert record["id"]
        assert isinstance(record["created_at"], datetime)
        assert isinstance(record["updated_at"], datetime)

    def test_round_trips_types(self, store, project_id):
        record = store.insert(TIME_ENTRIES, _entry(project_id, 1, notes="hello"))
        fetched = store.query_one(TIME_ENTRIES, [eq("id", record["id"])])

        assert fetched["start_time"] == BASE + timedelta(hours=1)
        assert fetched["is_running"] is False
        assert fetched["duration_seconds"] == 1800
        assert fetched["notes"] == "hello"

    def test_ids_are_unique(self, store, project_id):
        first = store.insert(TIME_ENTRIES, _entry(project_id, 0))
        second = store.insert(TIME_ENTRIES, _entry(project_id, 1))

        assert first["id"] != second["id"]

    def test_unknown_table(self, store):
        with pytest.raises(StorageError):
            store.insert("invoices", {"total": 1})

    def test_omitted_columns_are_filled(self, store, project_id):
        """Every column comes back, with schema defaults or None."""
        record = store.insert(
            TIME_ENTRIES, {"project_id": project_id, "start_time": BASE}
        )

        assert record["end_time"] is None
        assert record["duration_seconds"] is None
        assert record["notes"] is None
        assert record["is_running"] is False
        assert record["is_manual"] is False

    def test_client_defaults(self, store):
        record = store.insert(CLIENTS, {"name": "Initech"})

        assert record["status"] == "active"
        assert record["hourly_rate"] == 0
        assert record["color"] == "#3A7D44"
        assert [client.name for client in catalog.list_clients(store)] == ["Initech"]

    def test_unknown_column_rejected(self, store, project_id):
        with pytest.raises(StorageError):
            store.insert(TIME_ENTRIES, {**_entry(project_id, 0), "billable": True})
        assert store.query_many(TIME_ENTRIES) == []


class TestQueries:
    def test_no_rows_is_none(self, store):
        assert store.query_one(TIME_ENTRIES, [eq("id", "nope")]) is None

    def test_equality_filters(self, store, project_id):
        store.insert(TIME_ENTRIES, _entry(project_id, 0))
        running = store.insert(TIME_ENTRIES, _entry(project_id, 1, running=True))

        rows = store.query_many(
            TIME_ENTRIES, [eq("project_id", project_id), eq("is_running", True)]
        )

        assert [row["id"] for row in rows] == [running["id"]]
        assert rows[0]["end_time"] is None

    def test_null_equality(self, store, project_id):
        store.insert(TIME_ENTRIES, _entry(project_id, 0, notes="x"))
        bare = store.insert(TIME_ENTRIES, _entry(project_id, 1))

        rows = store.query_many(TIME_ENTRIES, [eq("notes", None)])

        assert [row["id"] for row in rows] == [bare["id"]]

    def test_range_filters(self, store, project_id):
        for hours in range(5):
            store.insert(TIME_ENTRIES, _entry(project_id, hours))

        rows = store.query_many(
            TIME_ENTRIES,
            [gte("start_time", BASE + timedelta(hours=1)), lt("start_time", BASE + timedelta(hours=3))],
            Order("start_time"),
        )

        assert [row["start_time"] for row in rows] == [
            BASE + timedelta(hours=1),
            BASE + timedelta(hours=2),
        ]

    def test_descending_order_and_limit(self, store, project_id):
        for hours in (2, 0, 3, 1):
            store.insert(TIME_ENTRIES, _entry(project_id, hours))

        rows = store.query_many(
            TIME_ENTRIES, order=Order("start_time", descending=True), limit=2
        )

        assert [row["start_time"] for row in rows] == [
            BASE + timedelta(hours=3),
            BASE + timedelta(hours=2),
        ]

    def test_query_one_respects_order(self, store, project_id):
        for hours in (1, 4, 2):
            store.insert(TIME_ENTRIES, _entry(project_id, hours))

        latest = store.query_one(
            TIME_ENTRIES, [eq("project_id", project_id)], Order("start_time", descending=True)
        )

        assert latest["start_time"] == BASE + timedelta(hours=4)

    def test_null_sorts_last(self, store, project_id):
        store.insert(TIME_ENTRIES, _entry(project_id, 0, running=True))
        closed = store.insert(TIME_ENTRIES, _entry(project_id, 1))

        rows = store.query_many(TIME_ENTRIES, order=Order("end_time", descending=True))

        assert rows[0]["id"] == closed["id"]
        assert rows[-1]["end_time"] is None

    def test_unknown_filter_column(self, store):
        with pytest.raises(StorageError):
            store.query_many(TIME_ENTRIES, [eq("drop table", 1)])

    def test_bad_operator(self):
        with pytest.raises(ValueError):
            Filter("start_time", "like", "x")


class TestUpdateDelete:
    def test_update_returns_new_state(self, store, project_id):
        record = store.insert(TIME_ENTRIES, _entry(project_id, 0, running=True))
        end = BASE + timedelta(minutes=45)

        updated = store.update(
            TIME_ENTRIES,
            record["id"],
            {"end_time": end, "duration_seconds": 2700, "is_running": False},
        )

        assert updated["end_time"] == end
        assert updated["duration_seconds"] == 2700
        assert updated["is_running"] is False
        assert updated["created_at"] == record["created_at"]

    def test_update_missing_row(self, store):
        with pytest.raises(StorageError):
            store.update(TIME_ENTRIES, "missing", {"notes": "x"})

    def test_update_unknown_column(self, store, project_id):
        record = store.insert(TIME_ENTRIES, _entry(project_id, 0))

        with pytest.raises(StorageError):
            store.update(TIME_ENTRIES, record["id"], {"billable": True})

    def test_delete(self, store, project_id):
        record = store.insert(TIME_ENTRIES, _entry(project_id, 0))

        assert store.delete(TIME_ENTRIES, record["id"]) is True
        assert store.delete(TIME_ENTRIES, record["id"]) is False
        assert store.query_one(TIME_ENTRIES, [eq("id", record["id"])]) is None


class TestTransaction:
    def test_failed_block_is_rolled_back(self, store, project_id):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert(TIME_ENTRIES, _entry(project_id, 0))
                raise RuntimeError("boom")

        assert store.query_many(TIME_ENTRIES) == []

    def test_rollback_restores_updated_and_deleted_rows(self, store, project_id):
        kept = store.insert(TIME_ENTRIES, _entry(project_id, 0, notes="before"))
        removed = store.insert(TIME_ENTRIES, _entry(project_id, 1))

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.update(TIME_ENTRIES, kept["id"], {"notes": "after"})
                store.delete(TIME_ENTRIES, removed["id"])
                store.insert(TIME_ENTRIES, _entry(project_id, 2))
                raise RuntimeError("boom")

        rows = store.query_many(TIME_ENTRIES, order=Order("start_time"))
        assert [row["id"] for row in rows] == [kept["id"], removed["id"]]
        assert rows[0]["notes"] == "before"

    def test_rollback_keeps_writes_from_other_threads(self, store, project_id):
        """A write waiting on a failing transaction lands once it finishes."""
        waiting = threading.Event()
        errors = []

        def add_client():
            waiting.set()
            try:
                store.insert(CLIENTS, {"name": "Globex"})
            except Exception as exc:
                errors.append(exc)

        worker = threading.Thread(target=add_client)
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert(TIME_ENTRIES, _entry(project_id, 0))
                worker.start()
                waiting.wait(timeout=5)
                time.sleep(0.05)
                raise RuntimeError("boom")
        worker.join(timeout=5)

        assert errors == []
        assert [row["name"] for row in store.query_many(CLIENTS, order=Order("name"))] == [
            "Acme",
            "Globex",
        ]
        assert store.query_many(TIME_ENTRIES) == []

    def test_nested_blocks_commit_once(self, store, project_id):
        with store.transaction():
            store.insert(TIME_ENTRIES, _entry(project_id, 0))
            with store.transaction():
                store.insert(TIME_ENTRIES, _entry(project_id, 1))

        assert len(store.query_many(TIME_ENTRIES)) == 2


class TestSQLiteStore:
    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "nested" / "data.sqlite3"
        first = SQLiteStore(path)
        client = first.insert(CLIENTS, {"name": "Acme", "hourly_rate": 10.0})
        first.close()

        second = SQLiteStore(path)
        try:
            assert second.query_one(CLIENTS, [eq("id", client["id"])])["name"] == "Acme"
        finally:
            second.close()

    def test_foreign_key_violation_is_storage_error(self, tmp_path):
        store = SQLiteStore(tmp_path / "data.sqlite3")
        try:
            with pytest.raises(StorageError):
                store.insert(TIME_ENTRIES, _entry("no-such-project", 0))
        finally:
            store.close()
