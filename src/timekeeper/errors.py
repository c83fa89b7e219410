"""Error taxonomy shared by the timer engine and storage backends."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    VALIDATION = "validation"
    STORAGE = "storage"


class TimerError(Exception):
    """Base class for failures reported by timer operations."""

    kind: ErrorKind = ErrorKind.STORAGE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConflictError(TimerError):
    """A second running entry would exist for the same project."""

    kind = ErrorKind.CONFLICT


class NotFoundError(TimerError):
    kind = ErrorKind.NOT_FOUND


class InvalidStateError(TimerError):
    """The entry is not in a state that allows the operation."""

    kind = ErrorKind.INVALID_STATE


class ValidationError(TimerError):
    kind = ErrorKind.VALIDATION


class StorageError(TimerError):
    """The backing store failed; the message is the backend's own."""

    kind = ErrorKind.STORAGE
