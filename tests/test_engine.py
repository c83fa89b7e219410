"""Tests for the timer engine lifecycle, queries and classification."""

from datetime import datetime, timedelta

import pytest

from timekeeper.config import EngineSettings
from timekeeper.db import SQLiteStore
from timekeeper.engine import TimerEngine
from timekeeper.errors import ErrorKind, StorageError
from timekeeper.memory_store import MemoryStore
from timekeeper.models import TimerState
from timekeeper.storage import TIME_ENTRIES, eq


def _running_rows(store, project_id):
    return store.query_many(
        TIME_ENTRIES, [eq("project_id", project_id), eq("is_running", True)]
    )


def _assert_consistent(entry):
    if entry.is_running:
        assert entry.end_time is None
        assert entry.duration_seconds is None
    else:
        assert entry.end_time is not None
        assert entry.duration_seconds is not None


class TestStart:
    def test_creates_running_entry(self, engine, project, clock):
        result = engine.start(project.id, notes="kickoff")

        assert result.success
        entry = result.entry
        assert entry.project_id == project.id
        assert entry.start_time == clock()
        assert entry.is_running
        assert not entry.is_manual
        assert entry.notes == "kickoff"
        _assert_consistent(entry)

    def test_second_start_conflicts(self, engine, project):
        """Scenario A: a double start is rejected."""
        assert engine.start(project.id).success

        second = engine.start(project.id)

        assert not second.success
        assert second.error is ErrorKind.CONFLICT
        assert second.entry is None
        assert len(_running_rows(engine.store, project.id)) == 1

    def test_projects_run_independently(self, engine, project, other_project, clock):
        assert engine.start(project.id).success
        clock.advance(seconds=5)
        assert engine.start(other_project.id).success

        running = engine.running_entries()

        assert [entry.project_id for entry in running] == [other_project.id, project.id]
        assert engine.count_running() == 2

    def test_empty_notes_stored_as_absent(self, engine, project):
        assert engine.start(project.id, notes="").entry.notes is None


class TestStop:
    def test_duration_from_elapsed_time(self, engine, project, clock):
        """Scenario B: stop 90 s after start."""
        entry = engine.start(project.id).entry
        clock.advance(seconds=90)

        result = engine.stop(entry.id)

        assert result.success
        assert result.entry.duration_seconds == 90
        assert result.entry.end_time == clock()
        assert not result.entry.is_running
        _assert_consistent(result.entry)

    def test_duration_floors_partial_seconds(self, engine, project, clock):
        entry = engine.start(project.id).entry
        clock.advance(seconds=59, milliseconds=999)

        assert engine.stop(entry.id).entry.duration_seconds == 59

    def test_stop_twice_is_invalid(self, engine, project, clock):
        """Scenario D: stopping a stopped entry."""
        entry = engine.start(project.id).entry
        clock.advance(seconds=10)
        assert engine.stop(entry.id).success

        again = engine.stop(entry.id)

        assert not again.success
        assert again.error is ErrorKind.INVALID_STATE

    def test_unknown_entry(self, engine):
        result = engine.stop("missing")

        assert result.error is ErrorKind.NOT_FOUND

    def test_stop_for_project(self, engine, project, clock):
        engine.start(project.id)
        clock.advance(minutes=2)

        result = engine.stop_for_project(project.id)

        assert result.success
        assert result.entry.duration_seconds == 120
        assert engine.running_entry_for_project(project.id) is None

    def test_stop_for_project_without_timer(self, engine, project):
        result = engine.stop_for_project(project.id)

        assert result.error is ErrorKind.NOT_FOUND
        assert "No running timer" in result.message

    def test_clock_behind_start_closes_with_zero(self, engine, project, clock):
        entry = engine.start(project.id).entry
        clock.advance(seconds=-3)

        stopped = engine.stop(entry.id).entry

        assert stopped.duration_seconds == 0
        assert stopped.end_time == entry.start_time

    def test_frozen_clock_closes_at_start(self, engine, project):
        """A stop at the start instant yields an empty interval, not a failure."""
        entry = engine.start(project.id).entry

        result = engine.stop(entry.id)

        assert result.success
        assert result.entry.end_time == entry.start_time
        assert result.entry.duration_seconds == 0
        assert engine.timer_state(project.id) is TimerState.PAUSED


class TestPauseResume:
    def test_pause_stops_the_running_entry(self, engine, project, clock):
        engine.start(project.id)
        clock.advance(minutes=25)

        result = engine.pause(project.id)

        assert result.success
        assert result.entry.duration_seconds == 25 * 60
        assert engine.running_entry_for_project(project.id) is None

    def test_pause_without_timer(self, engine, project):
        assert engine.pause(project.id).error is ErrorKind.NOT_FOUND

    def test_resume_copies_notes(self, engine, project, clock):
        """Scenario E: notes carry over by default."""
        engine.start(project.id, notes="x")
        clock.advance(minutes=5)
        engine.pause(project.id)
        clock.advance(minutes=5)

        result = engine.resume(project.id, copy_notes=True)

        assert result.success
        assert result.entry.is_running
        assert result.entry.notes == "x"
        assert result.entry.start_time == clock()

    def test_resume_without_copying_notes(self, engine, project, clock):
        engine.start(project.id, notes="x")
        clock.advance(minutes=5)
        engine.pause(project.id)

        result = engine.resume(project.id, copy_notes=False)

        assert result.success
        assert result.entry.notes is None

    def test_resume_while_running_conflicts(self, engine, project):
        engine.start(project.id)

        result = engine.resume(project.id)

        assert result.error is ErrorKind.CONFLICT
        assert len(_running_rows(engine.store, project.id)) == 1

    def test_resume_with_no_history_starts_fresh(self, engine, project):
        result = engine.resume(project.id)

        assert result.success
        assert result.entry.notes is None

    def test_resume_uses_latest_entry_notes(self, engine, project, clock):
        engine.create_manual_entry(
            project.id,
            clock() - timedelta(hours=5),
            clock() - timedelta(hours=4),
            notes="older",
        )
        engine.create_manual_entry(
            project.id,
            clock() - timedelta(hours=2),
            clock() - timedelta(hours=1),
            notes="newer",
        )

        assert engine.resume(project.id).entry.notes == "newer"


class TestManualEntry:
    def test_round_trip(self, engine, project):
        start = datetime(2024, 5, 1, 9, 0, 0)
        end = datetime(2024, 5, 1, 11, 30, 15, 700000)

        created = engine.create_manual_entry(project.id, start, end, notes="backfill")
        stored = engine.get_entry(created.entry.id)

        assert stored.duration_seconds == 2 * 3600 + 30 * 60 + 15
        assert stored.is_manual
        assert not stored.is_running
        assert stored.start_time == start
        assert stored.end_time == end
        _assert_consistent(stored)

    @pytest.mark.parametrize("offset", [0, -1, -3600])
    def test_end_not_after_start_is_rejected(self, engine, project, offset):
        start = datetime(2024, 5, 1, 9, 0, 0)

        result = engine.create_manual_entry(
            project.id, start, start + timedelta(seconds=offset)
        )

        assert result.error is ErrorKind.VALIDATION
        assert engine.most_recent_entry(project.id) is None

    def test_one_second_entry(self, engine, project):
        start = datetime(2024, 5, 1, 9, 0, 0)

        result = engine.create_manual_entry(project.id, start, start + timedelta(seconds=1))

        assert result.success
        assert result.entry.duration_seconds == 1

    def test_does_not_affect_running_timer(self, engine, project, clock):
        engine.start(project.id)

        result = engine.create_manual_entry(
            project.id, clock() - timedelta(hours=3), clock() - timedelta(hours=2)
        )

        assert result.success
        assert engine.count_running() == 1


class TestUpdateEntry:
    @pytest.fixture
    def closed_entry(self, engine, project):
        return engine.create_manual_entry(
            project.id,
            datetime(2024, 5, 1, 9, 0, 0),
            datetime(2024, 5, 1, 10, 0, 0),
            notes="draft",
        ).entry

    def test_both_times_recompute_duration(self, engine, closed_entry):
        result = engine.update_entry(
            closed_entry.id,
            start_time=datetime(2024, 5, 1, 8, 0, 0),
            end_time=datetime(2024, 5, 1, 8, 45, 0),
        )

        assert result.success
        assert result.entry.duration_seconds == 45 * 60

    def test_only_end_uses_existing_start(self, engine, closed_entry):
        result = engine.update_entry(
            closed_entry.id, end_time=datetime(2024, 5, 1, 9, 30, 0)
        )

        assert result.entry.start_time == datetime(2024, 5, 1, 9, 0, 0)
        assert result.entry.duration_seconds == 30 * 60

    def test_only_start_uses_existing_end(self, engine, closed_entry):
        result = engine.update_entry(
            closed_entry.id, start_time=datetime(2024, 5, 1, 9, 50, 0)
        )

        assert result.entry.duration_seconds == 10 * 60

    def test_notes_only_keeps_duration(self, engine, closed_entry):
        result = engine.update_entry(closed_entry.id, notes="final")

        assert result.entry.notes == "final"
        assert result.entry.duration_seconds == 3600

    def test_clear_notes(self, engine, closed_entry):
        assert engine.update_entry(closed_entry.id, notes=None).entry.notes is None

    def test_no_changes_returns_record(self, engine, closed_entry):
        result = engine.update_entry(closed_entry.id)

        assert result.success
        assert result.entry.notes == "draft"

    def test_inverted_times_rejected(self, engine, closed_entry):
        result = engine.update_entry(
            closed_entry.id, start_time=datetime(2024, 5, 1, 10, 30, 0)
        )

        assert result.error is ErrorKind.VALIDATION
        assert engine.get_entry(closed_entry.id).start_time == datetime(2024, 5, 1, 9, 0, 0)

    def test_missing_entry(self, engine):
        result = engine.update_entry("missing", end_time=datetime(2024, 5, 1, 9, 0, 0))

        assert result.error is ErrorKind.NOT_FOUND

    def test_running_entry_start_can_move(self, engine, project, clock):
        entry = engine.start(project.id).entry

        result = engine.update_entry(entry.id, start_time=clock() - timedelta(minutes=15))

        assert result.success
        assert result.entry.is_running
        assert result.entry.duration_seconds is None
        _assert_consistent(result.entry)

    def test_running_entry_end_is_rejected(self, engine, project, clock):
        entry = engine.start(project.id).entry

        result = engine.update_entry(entry.id, end_time=clock() + timedelta(minutes=5))

        assert result.error is ErrorKind.INVALID_STATE
        assert engine.get_entry(entry.id).is_running


class TestDeleteEntry:
    def test_deletes_closed_entry(self, engine, project, clock):
        entry = engine.start(project.id).entry
        clock.advance(seconds=30)
        engine.stop(entry.id)

        result = engine.delete_entry(entry.id)

        assert result.success
        assert engine.get_entry(entry.id) is None

    def test_running_entry_cannot_be_deleted(self, engine, project):
        """Scenario D: deleting a running timer."""
        entry = engine.start(project.id).entry

        result = engine.delete_entry(entry.id)

        assert result.error is ErrorKind.INVALID_STATE
        assert "running" in result.message
        assert engine.get_entry(entry.id) is not None

    def test_missing_entry(self, engine):
        assert engine.delete_entry("missing").error is ErrorKind.NOT_FOUND


class TestTimerState:
    def test_no_entries_is_stopped(self, engine, project):
        assert engine.timer_state(project.id) is TimerState.STOPPED

    def test_running(self, engine, project):
        engine.start(project.id)
        assert engine.timer_state(project.id) is TimerState.RUNNING

    def test_paused_until_window_expires(self, engine, project, clock):
        """Scenario F: paused right after stop, stopped a day later."""
        engine.start(project.id)
        clock.advance(minutes=10)
        engine.stop_for_project(project.id)

        assert engine.timer_state(project.id) is TimerState.PAUSED

        clock.advance(hours=24)
        assert engine.timer_state(project.id) is TimerState.PAUSED

        clock.advance(seconds=1)
        assert engine.timer_state(project.id) is TimerState.STOPPED

    def test_classification_is_repeatable(self, engine, project, clock):
        engine.start(project.id)
        clock.advance(minutes=1)
        engine.pause(project.id)

        assert engine.timer_state(project.id) == engine.timer_state(project.id)

    def test_window_is_configurable(self, store, project, clock):
        engine = TimerEngine(
            store,
            EngineSettings(backend="memory", paused_window=timedelta(hours=1)),
            clock=clock,
        )
        engine.start(project.id)
        clock.advance(minutes=1)
        engine.stop_for_project(project.id)
        clock.advance(hours=2)

        assert engine.timer_state(project.id) is TimerState.STOPPED

    def test_old_manual_entry_is_stopped(self, engine, project, clock):
        engine.create_manual_entry(
            project.id, clock() - timedelta(days=3), clock() - timedelta(days=2)
        )

        assert engine.timer_state(project.id) is TimerState.STOPPED


class TestQueries:
    def test_most_recent_entry_includes_running(self, engine, project, clock):
        engine.create_manual_entry(
            project.id, clock() - timedelta(hours=2), clock() - timedelta(hours=1)
        )
        running = engine.start(project.id).entry

        assert engine.most_recent_entry(project.id).id == running.id

    def test_running_entry_for_other_project_is_none(self, engine, project, other_project):
        engine.start(project.id)

        assert engine.running_entry_for_project(other_project.id) is None
        assert engine.has_running_entry(project.id)

    def test_count_running(self, engine, project, other_project):
        assert engine.count_running() == 0
        engine.start(project.id)
        engine.start(other_project.id)
        engine.stop_for_project(project.id)

        assert engine.count_running() == 1


class TestRates:
    def test_effective_rate_from_client(self, engine, project):
        assert engine.effective_rate(project.id) == 50.0

    def test_effective_rate_override(self, engine, other_project):
        assert engine.effective_rate(other_project.id) == 80.0

    def test_running_cost(self, engine, other_project, clock):
        entry = engine.start(other_project.id).entry
        clock.advance(minutes=30)

        assert engine.running_cost(entry, 80.0) == pytest.approx(40.0)


class TestInvariants:
    def test_random_walk_keeps_one_running_entry(self, engine, project, other_project, clock):
        operations = [
            lambda p: engine.start(p),
            lambda p: engine.pause(p),
            lambda p: engine.resume(p),
            lambda p: engine.start(p),
            lambda p: engine.stop_for_project(p),
            lambda p: engine.resume(p, copy_notes=False),
            lambda p: engine.resume(p),
        ]
        for step, operation in enumerate(operations * 3):
            target = project.id if step % 2 else other_project.id
            operation(target)
            clock.advance(seconds=17)
            for project_id in (project.id, other_project.id):
                assert len(_running_rows(engine.store, project_id)) <= 1

        for record in engine.store.query_many(TIME_ENTRIES):
            entry = engine.get_entry(record["id"])
            _assert_consistent(entry)
            if entry.end_time is not None:
                assert entry.end_time > entry.start_time


class _FailingUpdates(MemoryStore):
    """Memory store whose updates fail like a lost database."""

    def update(self, table, record_id, changes):
        raise StorageError("database is locked")


class _FailsAfterInsert(MemoryStore):
    """Memory store that writes the row and then reports an I/O error."""

    def insert(self, table, record):
        super().insert(table, record)
        raise StorageError("disk I/O error")


class TestStorageFailures:
    def test_foreign_key_failure_is_reported(self, tmp_path, clock):
        store = SQLiteStore(tmp_path / "timekeeper.sqlite3")
        try:
            engine = TimerEngine(store, clock=clock)

            result = engine.start("no-such-project")

            assert not result.success
            assert result.error is ErrorKind.STORAGE
            assert "FOREIGN KEY" in result.message
            assert store.query_many(TIME_ENTRIES) == []
        finally:
            store.close()

    def test_failed_stop_leaves_timer_running(self, clock):
        store = _FailingUpdates()
        engine = TimerEngine(store, clock=clock)
        entry = engine.start("p1").entry
        clock.advance(minutes=5)

        result = engine.stop(entry.id)

        assert not result.success
        assert result.error is ErrorKind.STORAGE
        assert result.message == "database is locked"
        assert engine.running_entry_for_project("p1").id == entry.id

    def test_failed_start_is_rolled_back(self, clock):
        store = _FailsAfterInsert()
        engine = TimerEngine(store, clock=clock)

        result = engine.start("p1")

        assert result.error is ErrorKind.STORAGE
        assert store.query_many(TIME_ENTRIES) == []
        assert engine.count_running() == 0
