"""Configuration models and helpers for the timekeeper."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from .paths import get_db_path
from .storage import RecordStore

logger = logging.getLogger(__name__)

BACKENDS = ("sqlite", "memory")


@dataclass(slots=True)
class EngineSettings:
    """Runtime configuration for the timer engine and its store."""

    backend: str = "sqlite"
    db_path: Optional[Path] = None
    paused_window: timedelta = timedelta(hours=24)

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(
                f"Unknown backend {self.backend!r}; expected one of {', '.join(BACKENDS)}"
            )
        if self.paused_window <= timedelta(0):
            raise ValueError("paused_window must be positive")

    @classmethod
    def from_options(
        cls,
        backend: Optional[str] = None,
        db_path: Optional[Path] = None,
        paused_hours: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "EngineSettings":
        """Combine explicit options with ``TIMEKEEPER_*`` environment defaults."""
        defaults = cls.from_env(env)
        return cls(
            backend=backend or defaults.backend,
            db_path=Path(db_path) if db_path is not None else defaults.db_path,
            paused_window=(
                timedelta(hours=paused_hours)
                if paused_hours is not None
                else defaults.paused_window
            ),
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if env is None else env
        db_value = env.get("TIMEKEEPER_DB")
        hours_value = env.get("TIMEKEEPER_PAUSED_HOURS")
        return cls(
            backend=env.get("TIMEKEEPER_BACKEND", "sqlite"),
            db_path=Path(db_value) if db_value else None,
            paused_window=(
                timedelta(hours=float(hours_value))
                if hours_value
                else timedelta(hours=24)
            ),
        )

    def resolved_db_path(self) -> Path:
        return self.db_path or get_db_path()


def create_store(settings: EngineSettings) -> RecordStore:
    """Build the record store selected by ``settings.backend``."""
    if settings.backend == "memory":
        from .memory_store import MemoryStore

        logger.info("Using in-memory store; data will not be persisted.")
        return MemoryStore()

    from .db import SQLiteStore

    path = settings.resolved_db_path()
    logger.info("Using SQLite store at %s", path)
    return SQLiteStore(path)
