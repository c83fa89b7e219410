"""In-memory record store used for tests and demo runs."""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional, Sequence

from .errors import StorageError
from .storage import (
    DEFAULTS,
    TABLES,
    Filter,
    Order,
    Record,
    check_columns,
    columns_for,
)

logger = logging.getLogger(__name__)

# (table, id, row before the change or None when the row was inserted)
_UndoStep = tuple[str, str, Optional[Record]]


class MemoryStore:
    """Dict-backed implementation of :class:`~timekeeper.storage.RecordStore`.

    Rows carry every column of their table, the same shape ``SQLiteStore``
    returns. A transaction journals the previous version of each row it
    touches and puts them back in place if the block fails.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        self._tables: dict[str, dict[str, Record]] = {name: {} for name in TABLES}
        self._lock = threading.RLock()
        self._journal: Optional[list[_UndoStep]] = None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._journal is not None:
                yield
                return
            self._journal = []
            try:
                yield
            except BaseException:
                self._undo(self._journal)
                raise
            finally:
                self._journal = None

    def insert(self, table: str, record: Record) -> Record:
        columns = check_columns(table, record)
        now = self._clock()
        stored: Record = {name: None for name in columns}
        stored.update(DEFAULTS[table])
        stored.update(record)
        if stored["id"] is None:
            stored["id"] = uuid.uuid4().hex
        stored["created_at"] = now
        stored["updated_at"] = now
        with self._lock:
            rows = self._tables[table]
            if stored["id"] in rows:
                raise StorageError(f"Duplicate id {stored['id']} in {table}")
            self._record(table, stored["id"], None)
            rows[stored["id"]] = stored
        logger.debug("Inserted %s into %s", stored["id"], table)
        return dict(stored)

    def update(self, table: str, record_id: str, changes: Record) -> Record:
        check_columns(table, changes)
        with self._lock:
            current = self._tables[table].get(record_id)
            if current is None:
                raise StorageError(f"No row with id {record_id} in {table}")
            self._record(table, record_id, dict(current))
            current.update(
                {
                    key: value
                    for key, value in changes.items()
                    if key not in ("id", "created_at", "updated_at")
                }
            )
            current["updated_at"] = self._clock()
            return dict(current)

    def delete(self, table: str, record_id: str) -> bool:
        columns_for(table)
        with self._lock:
            removed = self._tables[table].pop(record_id, None)
            if removed is None:
                return False
            self._record(table, record_id, removed)
            return True

    def query_one(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
    ) -> Optional[Record]:
        matches = self.query_many(table, filters, order, limit=1)
        return matches[0] if matches else None

    def query_many(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> list[Record]:
        check_columns(table, [flt.field for flt in filters])
        if order is not None:
            check_columns(table, [order.field])
        with self._lock:
            selected = [
                dict(row)
                for row in self._tables[table].values()
                if all(f.matches(row) for f in filters)
            ]
        if order is not None:
            # NULLs sort last in either direction.
            present = [row for row in selected if row[order.field] is not None]
            missing = [row for row in selected if row[order.field] is None]
            present.sort(key=lambda row: row[order.field], reverse=order.descending)
            selected = present + missing
        if limit is not None:
            selected = selected[:limit]
        return selected

    def close(self) -> None:
        return None

    def _record(self, table: str, record_id: str, previous: Optional[Record]) -> None:
        if self._journal is not None:
            self._journal.append((table, record_id, previous))

    def _undo(self, journal: list[_UndoStep]) -> None:
        for table, record_id, previous in reversed(journal):
            rows = self._tables[table]
            if previous is None:
                rows.pop(record_id, None)
            else:
                rows[record_id] = previous
        logger.debug("Rolled back %d change(s)", len(journal))
