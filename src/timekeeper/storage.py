"""Record store interface consumed by the timer engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ContextManager, Iterable, Optional, Protocol, Sequence

from .errors import StorageError

Record = dict[str, Any]

CLIENTS = "clients"
PROJECTS = "projects"
TIME_ENTRIES = "time_entries"

TABLES = (CLIENTS, PROJECTS, TIME_ENTRIES)

COLUMNS: dict[str, tuple[str, ...]] = {
    CLIENTS: (
        "id",
        "name",
        "hourly_rate",
        "color",
        "status",
        "created_at",
        "updated_at",
    ),
    PROJECTS: (
        "id",
        "client_id",
        "name",
        "hourly_rate_override",
        "status",
        "created_at",
        "updated_at",
    ),
    TIME_ENTRIES: (
        "id",
        "project_id",
        "start_time",
        "end_time",
        "duration_seconds",
        "notes",
        "is_manual",
        "is_running",
        "created_at",
        "updated_at",
    ),
}

# Values a column takes when an insert leaves it out; anything else is NULL.
DEFAULTS: dict[str, Record] = {
    CLIENTS: {"hourly_rate": 0.0, "color": "#3A7D44", "status": "active"},
    PROJECTS: {"status": "active"},
    TIME_ENTRIES: {"is_manual": False, "is_running": False},
}

STATUSES = ("active", "archived")

FILTER_OPS = ("eq", "neq", "gt", "gte", "lt", "lte")


def columns_for(table: str) -> tuple[str, ...]:
    try:
        return COLUMNS[table]
    except KeyError as exc:
        raise StorageError(f"Unknown table: {table}") from exc


def check_columns(table: str, names: Iterable[str]) -> tuple[str, ...]:
    """Return the table's columns, failing on any name outside them."""
    columns = columns_for(table)
    for name in names:
        if name not in columns:
            raise StorageError(f"Unknown column {name} for {table}")
    return columns


@dataclass(frozen=True, slots=True)
class Filter:
    """Comparison of a named field against a value."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {self.op!r}")

    def matches(self, record: Record) -> bool:
        current = record.get(self.field)
        if self.op == "eq":
            return current == self.value
        if self.op == "neq":
            return current != self.value
        # NULL never satisfies a range comparison.
        if current is None or self.value is None:
            return False
        if self.op == "gt":
            return current > self.value
        if self.op == "gte":
            return current >= self.value
        if self.op == "lt":
            return current < self.value
        return current <= self.value


@dataclass(frozen=True, slots=True)
class Order:
    field: str
    descending: bool = False


def eq(field: str, value: Any) -> Filter:
    return Filter(field, "eq", value)


def gte(field: str, value: Any) -> Filter:
    return Filter(field, "gte", value)


def lt(field: str, value: Any) -> Filter:
    return Filter(field, "lt", value)


class RecordStore(Protocol):
    """Generic table-oriented store.

    Implementations generate ``id``, ``created_at`` and ``updated_at`` and raise
    :class:`~timekeeper.errors.StorageError` when the backend itself fails.
    """

    def transaction(self) -> ContextManager[None]:
        """Group calls so check-then-act sequences run atomically."""
        ...

    def insert(self, table: str, record: Record) -> Record:
        ...

    def update(self, table: str, record_id: str, changes: Record) -> Record:
        ...

    def delete(self, table: str, record_id: str) -> bool:
        ...

    def query_one(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
    ) -> Optional[Record]:
        ...

    def query_many(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> list[Record]:
        ...

    def close(self) -> None:
        ...
