"""Domain models for clients, projects and tracked time."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import ErrorKind


class TimerState(str, Enum):
    """Derived per-project timer classification; never persisted."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(slots=True)
class TimeEntry:
    """A contiguous span of tracked work on one project."""

    id: str
    project_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    is_running: bool = False
    is_manual: bool = False
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.end_time is not None and not self.is_running

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "TimeEntry":
        duration = record.get("duration_seconds")
        return cls(
            id=record["id"],
            project_id=record["project_id"],
            start_time=record["start_time"],
            end_time=record.get("end_time"),
            duration_seconds=int(duration) if duration is not None else None,
            is_running=bool(record.get("is_running", False)),
            is_manual=bool(record.get("is_manual", False)),
            notes=record.get("notes"),
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "is_running": self.is_running,
            "is_manual": self.is_manual,
            "notes": self.notes,
        }


@dataclass(slots=True)
class Client:
    id: str
    name: str
    hourly_rate: float = 0.0
    color: str = "#3A7D44"
    status: str = "active"

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Client":
        return cls(
            id=record["id"],
            name=record["name"],
            hourly_rate=float(record.get("hourly_rate") or 0.0),
            color=record.get("color") or "#3A7D44",
            status=record.get("status") or "active",
        )


@dataclass(slots=True)
class Project:
    id: str
    client_id: str
    name: str
    hourly_rate_override: Optional[float] = None
    status: str = "active"

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Project":
        override = record.get("hourly_rate_override")
        return cls(
            id=record["id"],
            client_id=record["client_id"],
            name=record["name"],
            hourly_rate_override=float(override) if override is not None else None,
            status=record.get("status") or "active",
        )


@dataclass(slots=True)
class TimerResult:
    """Outcome of a lifecycle operation: either an entry or an error."""

    success: bool
    entry: Optional[TimeEntry] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, entry: Optional[TimeEntry] = None) -> "TimerResult":
        return cls(success=True, entry=entry)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> "TimerResult":
        return cls(success=False, error=kind, message=message)
