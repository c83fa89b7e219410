"""SQLite database layer for clients, projects and time entries."""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from .errors import StorageError
from .storage import Filter, Order, Record, check_columns, columns_for

logger = logging.getLogger(__name__)

DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

_DATETIME_COLUMNS = frozenset({"start_time", "end_time", "created_at", "updated_at"})
_BOOL_COLUMNS = frozenset({"is_manual", "is_running"})

_SQL_OPS = {"eq": "=", "neq": "!=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS clients (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            hourly_rate REAL NOT NULL DEFAULT 0,
            color TEXT DEFAULT '#3A7D44',
            status TEXT DEFAULT 'active' CHECK (status IN ('active', 'archived')),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            client_id TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            hourly_rate_override REAL,
            status TEXT DEFAULT 'active' CHECK (status IN ('active', 'archived')),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS time_entries (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration_seconds INTEGER,
            notes TEXT,
            is_manual INTEGER NOT NULL DEFAULT 0,
            is_running INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_time_entries_project
            ON time_entries(project_id);
        CREATE INDEX IF NOT EXISTS idx_time_entries_start
            ON time_entries(start_time);
        CREATE INDEX IF NOT EXISTS idx_projects_client
            ON projects(client_id);
        """
    )


class SQLiteStore:
    """File-backed implementation of :class:`~timekeeper.storage.RecordStore`.

    One connection is shared across threads and guarded by a re-entrant lock, so
    ``transaction()`` blocks can call the other store methods freely.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = open_database(self.path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self.path}: {exc}") from exc
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._execute("ROLLBACK")
                raise
            self._depth -= 1
            if outermost:
                self._execute("COMMIT")

    def insert(self, table: str, record: Record) -> Record:
        check_columns(table, record)
        now = datetime.now()
        row = dict(record)
        row.setdefault("id", uuid.uuid4().hex)
        row["created_at"] = now
        row["updated_at"] = now
        names = list(row)
        placeholders = ", ".join("?" for _ in names)
        with self._lock:
            self._execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                [_encode(name, row[name]) for name in names],
            )
            logger.debug("Inserted %s into %s", row["id"], table)
            return self._fetch_by_id(table, row["id"])

    def update(self, table: str, record_id: str, changes: Record) -> Record:
        columns = columns_for(table)
        fields: list[str] = []
        params: list[object] = []
        for name, value in changes.items():
            if name in ("id", "created_at", "updated_at"):
                continue
            if name not in columns:
                raise StorageError(f"Unknown column {name} for {table}")
            fields.append(f"{name} = ?")
            params.append(_encode(name, value))
        fields.append("updated_at = ?")
        params.append(_encode("updated_at", datetime.now()))
        params.append(record_id)

        with self._lock:
            cur = self._execute(
                f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?",
                params,
            )
            if cur.rowcount == 0:
                raise StorageError(f"No row with id {record_id} in {table}")
            return self._fetch_by_id(table, record_id)

    def delete(self, table: str, record_id: str) -> bool:
        columns_for(table)
        with self._lock:
            cur = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cur.rowcount > 0

    def query_one(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
    ) -> Optional[Record]:
        rows = self.query_many(table, filters, order, limit=1)
        return rows[0] if rows else None

    def query_many(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> list[Record]:
        columns = columns_for(table)
        sql = f"SELECT * FROM {table}"
        params: list[object] = []
        clauses: list[str] = []
        for flt in filters:
            if flt.field not in columns:
                raise StorageError(f"Unknown column {flt.field} for {table}")
            if flt.value is None and flt.op in ("eq", "neq"):
                clauses.append(
                    f"{flt.field} IS {'NOT ' if flt.op == 'neq' else ''}NULL"
                )
                continue
            clauses.append(f"{flt.field} {_SQL_OPS[flt.op]} ?")
            params.append(_encode(flt.field, flt.value))
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order is not None:
            if order.field not in columns:
                raise StorageError(f"Unknown column {order.field} for {table}")
            direction = "DESC" if order.descending else "ASC"
            sql += f" ORDER BY {order.field} IS NULL, {order.field} {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            rows = self._execute(sql, params).fetchall()
        return [_decode_row(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _fetch_by_id(self, table: str, record_id: str) -> Record:
        row = self._execute(
            f"SELECT * FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            raise StorageError(f"Row {record_id} vanished from {table}")
        return _decode_row(row)

    def _execute(self, sql: str, params: Sequence[object] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _DATETIME_COLUMNS and isinstance(value, datetime):
        return value.strftime(DATETIME_FMT)
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _decode_row(row: sqlite3.Row) -> Record:
    record: Record = {}
    for key in row.keys():
        value = row[key]
        if value is not None and key in _DATETIME_COLUMNS:
            value = datetime.strptime(value, DATETIME_FMT)
        elif key in _BOOL_COLUMNS:
            value = bool(value)
        record[key] = value
    return record
