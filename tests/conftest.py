"""Shared fixtures: a controllable clock and engines over both stores."""

from datetime import datetime, timedelta

import pytest

from timekeeper import catalog
from timekeeper.config import EngineSettings
from timekeeper.db import SQLiteStore
from timekeeper.engine import TimerEngine
from timekeeper.memory_store import MemoryStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 6, 9, 0, 0))


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        backend = MemoryStore()
    else:
        backend = SQLiteStore(tmp_path / "timekeeper.sqlite3")
    yield backend
    backend.close()


@pytest.fixture
def engine(store, clock):
    return TimerEngine(store, EngineSettings(backend="memory"), clock=clock)


@pytest.fixture
def client(store):
    return catalog.create_client(store, "Acme Corp", hourly_rate=50.0)


@pytest.fixture
def project(store, client):
    return catalog.create_project(store, client.id, "Website")


@pytest.fixture
def other_project(store, client):
    return catalog.create_project(store, client.id, "Mobile App", hourly_rate_override=80.0)
