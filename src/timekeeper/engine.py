"""Timer engine: the lifecycle rules for time entries.

Lifecycle operations never raise :class:`~timekeeper.errors.TimerError`; they
return a :class:`~timekeeper.models.TimerResult` so callers branch on
``result.success``. Queries return plain values and let storage failures
propagate.

Pausing is stopping, and resuming is starting a new entry on the same project.
The paused state exists only as a classification derived from the most recent
entry (see :meth:`TimerEngine.timer_state`).
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Callable, Optional

from . import timing
from .config import EngineSettings
from .errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    TimerError,
    ValidationError,
)
from .models import Client, Project, TimeEntry, TimerResult, TimerState
from .storage import (
    CLIENTS,
    PROJECTS,
    TIME_ENTRIES,
    Order,
    RecordStore,
    eq,
)

logger = logging.getLogger(__name__)

_UNSET = object()


def _returns_result(func: Callable[..., Optional[TimeEntry]]) -> Callable[..., TimerResult]:
    """Turn a raising operation into one that reports a ``TimerResult``."""

    @functools.wraps(func)
    def wrapper(self: "TimerEngine", *args, **kwargs) -> TimerResult:
        try:
            entry = func(self, *args, **kwargs)
        except TimerError as exc:
            logger.warning("%s failed (%s): %s", func.__name__, exc.kind.value, exc.message)
            return TimerResult.fail(exc.kind, exc.message)
        return TimerResult.ok(entry)

    return wrapper


class TimerEngine:
    """Start, stop, pause, resume and edit time entries through a record store."""

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ----- Lifecycle -----
    @_returns_result
    def start(self, project_id: str, notes: Optional[str] = None) -> TimeEntry:
        with self.store.transaction():
            return self._start(project_id, notes)

    @_returns_result
    def stop(self, entry_id: str) -> TimeEntry:
        with self.store.transaction():
            return self._stop(entry_id)

    @_returns_result
    def stop_for_project(self, project_id: str) -> TimeEntry:
        with self.store.transaction():
            return self._stop_for_project(project_id)

    @_returns_result
    def pause(self, project_id: str) -> TimeEntry:
        """Stop the project's running entry as a temporary break."""
        with self.store.transaction():
            return self._stop_for_project(project_id)

    @_returns_result
    def resume(self, project_id: str, copy_notes: bool = True) -> TimeEntry:
        """Start a new entry, optionally carrying notes from the latest one."""
        with self.store.transaction():
            notes = None
            if copy_notes:
                previous = self.most_recent_entry(project_id)
                if previous is not None and previous.notes:
                    notes = previous.notes
            return self._start(project_id, notes)

    @_returns_result
    def create_manual_entry(
        self,
        project_id: str,
        start_time: datetime,
        end_time: datetime,
        notes: Optional[str] = None,
    ) -> TimeEntry:
        if end_time <= start_time:
            raise ValidationError("End time must be after start time")
        duration = timing.elapsed_seconds(start_time, end_time)
        record = self.store.insert(
            TIME_ENTRIES,
            {
                "project_id": project_id,
                "start_time": start_time,
                "end_time": end_time,
                "duration_seconds": duration,
                "is_running": False,
                "is_manual": True,
                "notes": notes or None,
            },
        )
        entry = TimeEntry.from_record(record)
        logger.info(
            "Added manual entry %s for project %s (%d seconds)",
            entry.id,
            project_id,
            duration,
        )
        return entry

    @_returns_result
    def update_entry(
        self,
        entry_id: str,
        *,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        notes: object = _UNSET,
    ) -> TimeEntry:
        """Edit times and notes, recomputing the duration when both ends are known.

        Passing ``notes=None`` clears the notes; omitting it leaves them alone.
        """
        with self.store.transaction():
            existing = self._require_entry(entry_id)
            changes: dict[str, object] = {}
            if notes is not _UNSET:
                changes["notes"] = notes or None
            if start_time is not None:
                changes["start_time"] = start_time
            if end_time is not None:
                if existing.is_running:
                    raise InvalidStateError(
                        "Cannot set an end time on a running timer; stop it instead"
                    )
                changes["end_time"] = end_time

            resolved_start = start_time if start_time is not None else existing.start_time
            resolved_end = end_time if end_time is not None else existing.end_time
            if resolved_end is not None and ("start_time" in changes or "end_time" in changes):
                if resolved_end <= resolved_start:
                    raise ValidationError("End time must be after start time")
                changes["duration_seconds"] = timing.elapsed_seconds(
                    resolved_start, resolved_end
                )

            if not changes:
                return existing
            updated = self._apply_update(entry_id, changes)
        logger.info("Updated entry %s (%s)", entry_id, ", ".join(sorted(changes)))
        return updated

    @_returns_result
    def delete_entry(self, entry_id: str) -> TimeEntry:
        with self.store.transaction():
            entry = self._require_entry(entry_id)
            if entry.is_running:
                raise InvalidStateError("Cannot delete a running timer")
            if not self.store.delete(TIME_ENTRIES, entry_id):
                raise NotFoundError(f"Time entry {entry_id} not found")
        logger.info("Deleted entry %s", entry_id)
        return entry

    # ----- Queries -----
    def get_entry(self, entry_id: str) -> Optional[TimeEntry]:
        record = self.store.query_one(TIME_ENTRIES, [eq("id", entry_id)])
        return TimeEntry.from_record(record) if record else None

    def running_entry_for_project(self, project_id: str) -> Optional[TimeEntry]:
        record = self.store.query_one(
            TIME_ENTRIES,
            [eq("project_id", project_id), eq("is_running", True)],
            Order("start_time", descending=True),
        )
        return TimeEntry.from_record(record) if record else None

    def has_running_entry(self, project_id: str) -> bool:
        return self.running_entry_for_project(project_id) is not None

    def running_entries(self) -> list[TimeEntry]:
        records = self.store.query_many(
            TIME_ENTRIES,
            [eq("is_running", True)],
            Order("start_time", descending=True),
        )
        return [TimeEntry.from_record(record) for record in records]

    def most_recent_entry(self, project_id: str) -> Optional[TimeEntry]:
        record = self.store.query_one(
            TIME_ENTRIES,
            [eq("project_id", project_id)],
            Order("start_time", descending=True),
        )
        return TimeEntry.from_record(record) if record else None

    def count_running(self) -> int:
        return len(self.running_entries())

    def timer_state(self, project_id: str) -> TimerState:
        """Classify the project as running, recently paused, or stopped."""
        if self.running_entry_for_project(project_id) is not None:
            return TimerState.RUNNING
        latest = self.most_recent_entry(project_id)
        if latest is None or latest.is_running or latest.end_time is None:
            return TimerState.STOPPED
        if self.now() - latest.end_time <= self.settings.paused_window:
            return TimerState.PAUSED
        return TimerState.STOPPED

    # ----- Rates -----
    def get_project(self, project_id: str) -> Optional[Project]:
        record = self.store.query_one(PROJECTS, [eq("id", project_id)])
        return Project.from_record(record) if record else None

    def get_client(self, client_id: str) -> Optional[Client]:
        record = self.store.query_one(CLIENTS, [eq("id", client_id)])
        return Client.from_record(record) if record else None

    def effective_rate(self, project_id: str) -> float:
        project = self.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")
        return timing.effective_rate(project, self.get_client(project.client_id))

    def running_cost(self, entry: TimeEntry, hourly_rate: float) -> float:
        """Cost so far for a running entry, or the final cost of a closed one."""
        if entry.duration_seconds is not None:
            seconds = entry.duration_seconds
        else:
            seconds = timing.clamp_elapsed(
                timing.elapsed_seconds(entry.start_time, self.now())
            )
        return timing.cost(seconds, hourly_rate)

    # ----- Internals -----
    def _start(self, project_id: str, notes: Optional[str]) -> TimeEntry:
        if self.running_entry_for_project(project_id) is not None:
            raise ConflictError("A timer is already running for this project")
        record = self.store.insert(
            TIME_ENTRIES,
            {
                "project_id": project_id,
                "start_time": self.now(),
                "end_time": None,
                "duration_seconds": None,
                "is_running": True,
                "is_manual": False,
                "notes": notes or None,
            },
        )
        entry = TimeEntry.from_record(record)
        logger.info("Started timer %s for project %s", entry.id, project_id)
        return entry

    def _stop(self, entry_id: str) -> TimeEntry:
        entry = self._require_entry(entry_id)
        if not entry.is_running:
            raise InvalidStateError("Timer is not running")
        # A clock at or behind the start time closes an empty interval, end == start.
        end_time = max(self.now(), entry.start_time)
        duration = timing.elapsed_seconds(entry.start_time, end_time)
        updated = self._apply_update(
            entry_id,
            {"end_time": end_time, "duration_seconds": duration, "is_running": False},
        )
        logger.info("Stopped timer %s after %d seconds", entry_id, duration)
        return updated

    def _stop_for_project(self, project_id: str) -> TimeEntry:
        running = self.running_entry_for_project(project_id)
        if running is None:
            raise NotFoundError("No running timer found for this project")
        return self._stop(running.id)

    def _require_entry(self, entry_id: str) -> TimeEntry:
        entry = self.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Time entry {entry_id} not found")
        return entry

    def _apply_update(self, entry_id: str, changes: dict[str, object]) -> TimeEntry:
        return TimeEntry.from_record(self.store.update(TIME_ENTRIES, entry_id, changes))
