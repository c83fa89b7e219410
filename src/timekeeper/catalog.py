"""Client and project bookkeeping backing rate resolution."""

from __future__ import annotations

import logging
from typing import Optional

from .errors import NotFoundError, ValidationError
from .models import Client, Project
from .storage import CLIENTS, PROJECTS, STATUSES, Order, RecordStore, eq

logger = logging.getLogger(__name__)

_UNSET = object()

# Clients created by ``seed_default_clients``: (name, hourly rate, color, projects).
DEFAULT_CLIENTS = (
    ("B.B.", 30.0, "#2563EB", ("GA Gymnastics State Meets",)),
    ("Mariah", 45.0, "#7C3AED", ("Evermore Equine",)),
)


def create_client(
    store: RecordStore,
    name: str,
    hourly_rate: float = 0.0,
    color: Optional[str] = None,
) -> Client:
    record = {"name": _require_name(name, "Client"), "hourly_rate": _check_rate(hourly_rate)}
    if color:
        record["color"] = color
    client = Client.from_record(store.insert(CLIENTS, record))
    logger.info("Created client %s (%s)", client.name, client.id)
    return client


def create_project(
    store: RecordStore,
    client_id: str,
    name: str,
    hourly_rate_override: Optional[float] = None,
) -> Project:
    name = _require_name(name, "Project")
    if hourly_rate_override is not None:
        _check_rate(hourly_rate_override)
    require_client(store, client_id)
    project = Project.from_record(
        store.insert(
            PROJECTS,
            {
                "client_id": client_id,
                "name": name,
                "hourly_rate_override": hourly_rate_override,
            },
        )
    )
    logger.info("Created project %s (%s)", project.name, project.id)
    return project


def update_client(
    store: RecordStore,
    client_id: str,
    *,
    name: Optional[str] = None,
    hourly_rate: Optional[float] = None,
    color: Optional[str] = None,
) -> Client:
    """Change a client's name, default rate or color; omitted fields stay."""
    current = require_client(store, client_id)
    changes: dict[str, object] = {}
    if name is not None:
        changes["name"] = _require_name(name, "Client")
    if hourly_rate is not None:
        changes["hourly_rate"] = _check_rate(hourly_rate)
    if color:
        changes["color"] = color
    if not changes:
        return current
    client = Client.from_record(store.update(CLIENTS, client_id, changes))
    logger.info("Updated client %s (%s)", client_id, ", ".join(sorted(changes)))
    return client


def update_project(
    store: RecordStore,
    project_id: str,
    *,
    name: Optional[str] = None,
    client_id: Optional[str] = None,
    hourly_rate_override: object = _UNSET,
) -> Project:
    """Rename a project, move it to another client or change its rate override.

    Passing ``hourly_rate_override=None`` falls back to the client's rate;
    omitting it leaves the override alone.
    """
    current = require_project(store, project_id)
    changes: dict[str, object] = {}
    if name is not None:
        changes["name"] = _require_name(name, "Project")
    if client_id is not None and client_id != current.client_id:
        require_client(store, client_id)
        changes["client_id"] = client_id
    if hourly_rate_override is not _UNSET:
        if hourly_rate_override is not None:
            _check_rate(hourly_rate_override)
        changes["hourly_rate_override"] = hourly_rate_override
    if not changes:
        return current
    project = Project.from_record(store.update(PROJECTS, project_id, changes))
    logger.info("Updated project %s (%s)", project_id, ", ".join(sorted(changes)))
    return project


def set_client_status(store: RecordStore, client_id: str, status: str) -> Client:
    require_client(store, client_id)
    client = Client.from_record(
        store.update(CLIENTS, client_id, {"status": _check_status(status)})
    )
    logger.info("Client %s is now %s", client_id, status)
    return client


def set_project_status(store: RecordStore, project_id: str, status: str) -> Project:
    require_project(store, project_id)
    project = Project.from_record(
        store.update(PROJECTS, project_id, {"status": _check_status(status)})
    )
    logger.info("Project %s is now %s", project_id, status)
    return project


def seed_default_clients(store: RecordStore) -> list[Client]:
    """Create the default clients and their projects, skipping existing names."""
    existing = {row["name"] for row in store.query_many(CLIENTS)}
    seeded: list[Client] = []
    with store.transaction():
        for name, rate, color, projects in DEFAULT_CLIENTS:
            if name in existing:
                continue
            client = create_client(store, name, rate, color)
            for project_name in projects:
                create_project(store, client.id, project_name)
            seeded.append(client)
    return seeded


def require_client(store: RecordStore, client_id: str) -> Client:
    record = store.query_one(CLIENTS, [eq("id", client_id)])
    if record is None:
        raise NotFoundError(f"Client {client_id} not found")
    return Client.from_record(record)


def require_project(store: RecordStore, project_id: str) -> Project:
    record = store.query_one(PROJECTS, [eq("id", project_id)])
    if record is None:
        raise NotFoundError(f"Project {project_id} not found")
    return Project.from_record(record)


def list_clients(store: RecordStore, include_archived: bool = False) -> list[Client]:
    filters = [] if include_archived else [eq("status", "active")]
    return [
        Client.from_record(row)
        for row in store.query_many(CLIENTS, filters, Order("name"))
    ]


def list_projects(
    store: RecordStore,
    client_id: Optional[str] = None,
    include_archived: bool = False,
) -> list[Project]:
    filters = [] if include_archived else [eq("status", "active")]
    if client_id is not None:
        filters.append(eq("client_id", client_id))
    return [
        Project.from_record(row)
        for row in store.query_many(PROJECTS, filters, Order("name"))
    ]


def _require_name(name: str, label: str) -> str:
    name = name.strip()
    if not name:
        raise ValidationError(f"{label} name is required")
    return name


def _check_rate(rate: float) -> float:
    if rate < 0:
        raise ValidationError("Hourly rate cannot be negative")
    return rate


def _check_status(status: str) -> str:
    if status not in STATUSES:
        raise ValidationError(f"Status must be one of: {', '.join(STATUSES)}")
    return status
