"""FastAPI application that exposes the timer engine over a local HTTP API."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import catalog
from .config import EngineSettings, create_store
from .engine import TimerEngine
from .errors import ErrorKind, TimerError
from .models import Client, Project, TimerResult
from .reporting import (
    csv_filename,
    daily_totals,
    generate_csv,
    load_report_rows,
    running_totals,
    summarize_by_client,
)
from .storage import RecordStore
from .timing import format_duration

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.STORAGE: 503,
}


class ClientPayload(BaseModel):
    name: str
    hourly_rate: float = Field(default=0.0, ge=0)
    color: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ProjectPayload(BaseModel):
    client_id: str
    name: str
    hourly_rate_override: Optional[float] = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


class ClientUpdate(BaseModel):
    name: Optional[str] = None
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    color: Optional[str] = None
    status: Optional[Literal["active", "archived"]] = None

    model_config = ConfigDict(extra="forbid")


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    client_id: Optional[str] = None
    hourly_rate_override: Optional[float] = Field(default=None, ge=0)
    status: Optional[Literal["active", "archived"]] = None

    model_config = ConfigDict(extra="forbid")


class StartPayload(BaseModel):
    notes: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ResumePayload(BaseModel):
    copy_notes: bool = True

    model_config = ConfigDict(extra="forbid")


class ManualEntryPayload(BaseModel):
    project_id: str
    start_time: datetime
    end_time: datetime
    notes: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("start_time", "end_time")
    @classmethod
    def _local_time(cls, value: datetime) -> datetime:
        return _to_local_naive(value)


class EntryUpdate(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("start_time", "end_time")
    @classmethod
    def _local_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_local_naive(value) if value is not None else None


def _to_local_naive(value: datetime) -> datetime:
    # Stored times are naive local time.
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def create_app(
    *,
    settings: Optional[EngineSettings] = None,
    store: Optional[RecordStore] = None,
    engine: Optional[TimerEngine] = None,
) -> FastAPI:
    """Instantiate the FastAPI application.

    The store is owned by the app unless an engine or store is passed in, in
    which case the caller closes it.
    """
    resolved_settings = settings or (engine.settings if engine else EngineSettings())
    owns_store = engine is None and store is None
    if engine is None:
        engine = TimerEngine(store or create_store(resolved_settings), resolved_settings)

    app = FastAPI(title="Timekeeper", version="0.3.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine
    app.state.settings = resolved_settings

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if owns_store:
            logger.info("Closing record store.")
            engine.store.close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        engine_ = _engine(request)
        return {
            "backend": resolved_settings.backend,
            "database_path": (
                str(resolved_settings.resolved_db_path())
                if resolved_settings.backend == "sqlite"
                else None
            ),
            "paused_window_hours": resolved_settings.paused_window.total_seconds() / 3600.0,
            "running_count": _guard(engine_.count_running),
        }

    @app.get("/api/clients")
    def list_clients(
        request: Request,
        include_archived: bool = Query(default=False),
    ) -> Dict[str, Any]:
        clients = _guard(catalog.list_clients, _engine(request).store, include_archived)
        return {"clients": [_client_payload(client) for client in clients]}

    @app.post("/api/clients", status_code=201)
    def create_client(payload: ClientPayload, request: Request) -> Dict[str, Any]:
        client = _guard(
            catalog.create_client,
            _engine(request).store,
            payload.name,
            payload.hourly_rate,
            payload.color,
        )
        return {"client": _client_payload(client)}

    @app.patch("/api/clients/{client_id}")
    def update_client(
        client_id: str, payload: ClientUpdate, request: Request
    ) -> Dict[str, Any]:
        store = _engine(request).store
        updates = payload.model_dump(exclude_unset=True)
        status = updates.pop("status", None)
        with store.transaction():
            client = _guard(catalog.update_client, store, client_id, **updates)
            if status is not None:
                client = _guard(catalog.set_client_status, store, client_id, status)
        return {"client": _client_payload(client)}

    @app.get("/api/projects")
    def list_projects(
        request: Request,
        client_id: Optional[str] = Query(default=None),
        include_archived: bool = Query(default=False),
    ) -> Dict[str, Any]:
        engine_ = _engine(request)
        projects = _guard(catalog.list_projects, engine_.store, client_id, include_archived)
        return {
            "projects": [
                {
                    **_project_payload(project),
                    "effective_rate": _guard(engine_.effective_rate, project.id),
                    "state": _guard(engine_.timer_state, project.id).value,
                }
                for project in projects
            ]
        }

    @app.post("/api/projects", status_code=201)
    def create_project(payload: ProjectPayload, request: Request) -> Dict[str, Any]:
        project = _guard(
            catalog.create_project,
            _engine(request).store,
            payload.client_id,
            payload.name,
            payload.hourly_rate_override,
        )
        return {"project": _project_payload(project)}

    @app.patch("/api/projects/{project_id}")
    def update_project(
        project_id: str, payload: ProjectUpdate, request: Request
    ) -> Dict[str, Any]:
        engine_ = _engine(request)
        updates = payload.model_dump(exclude_unset=True)
        status = updates.pop("status", None)
        with engine_.store.transaction():
            project = _guard(catalog.update_project, engine_.store, project_id, **updates)
            if status is not None:
                project = _guard(
                    catalog.set_project_status, engine_.store, project_id, status
                )
        return {
            "project": {
                **_project_payload(project),
                "effective_rate": _guard(engine_.effective_rate, project.id),
            }
        }

    @app.get("/api/timers")
    def running_timers(request: Request) -> Dict[str, Any]:
        totals = _guard(running_totals, _engine(request))
        return {
            "count": len(totals),
            "timers": [
                {
                    **item.entry.to_payload(),
                    "project_name": item.project_name,
                    "elapsed_seconds": item.elapsed_seconds,
                    "elapsed": format_duration(item.elapsed_seconds),
                    "running_cost": item.running_cost,
                }
                for item in totals
            ],
        }

    @app.get("/api/projects/{project_id}/state")
    def project_state(project_id: str, request: Request) -> Dict[str, Any]:
        engine_ = _engine(request)
        running = _guard(engine_.running_entry_for_project, project_id)
        return {
            "project_id": project_id,
            "state": _guard(engine_.timer_state, project_id).value,
            "running_entry": running.to_payload() if running else None,
        }

    @app.post("/api/projects/{project_id}/start", status_code=201)
    def start_timer(
        project_id: str,
        request: Request,
        payload: Optional[StartPayload] = None,
    ) -> Dict[str, Any]:
        notes = payload.notes if payload else None
        return _result_payload(_engine(request).start(project_id, notes))

    @app.post("/api/projects/{project_id}/stop")
    def stop_project_timer(project_id: str, request: Request) -> Dict[str, Any]:
        return _result_payload(_engine(request).stop_for_project(project_id))

    @app.post("/api/projects/{project_id}/pause")
    def pause_timer(project_id: str, request: Request) -> Dict[str, Any]:
        return _result_payload(_engine(request).pause(project_id))

    @app.post("/api/projects/{project_id}/resume", status_code=201)
    def resume_timer(
        project_id: str,
        request: Request,
        payload: Optional[ResumePayload] = None,
    ) -> Dict[str, Any]:
        copy_notes = payload.copy_notes if payload else True
        return _result_payload(_engine(request).resume(project_id, copy_notes=copy_notes))

    @app.get("/api/entries")
    def list_entries(
        request: Request,
        start: Optional[str] = Query(
            default=None,
            description="Start date in YYYY-MM-DD format (inclusive).",
        ),
        end: Optional[str] = Query(
            default=None,
            description="End date in YYYY-MM-DD format (inclusive).",
        ),
        client_id: Optional[str] = Query(default=None),
        project_id: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        start_day, end_exclusive = _parse_range(start, end)
        rows = _guard(
            load_report_rows,
            _engine(request).store,
            start=start_day,
            end=end_exclusive,
            client_id=client_id,
            project_id=project_id,
        )
        return {
            "entries": [
                {
                    **row.entry.to_payload(),
                    "project_name": row.project_name,
                    "client_name": row.client_name,
                    "effective_rate": row.effective_rate,
                    "cost": row.cost,
                }
                for row in rows
            ]
        }

    @app.post("/api/entries", status_code=201)
    def create_manual_entry(
        payload: ManualEntryPayload, request: Request
    ) -> Dict[str, Any]:
        return _result_payload(
            _engine(request).create_manual_entry(
                payload.project_id,
                payload.start_time,
                payload.end_time,
                payload.notes,
            )
        )

    @app.patch("/api/entries/{entry_id}")
    def update_entry(
        entry_id: str,
        payload: EntryUpdate,
        request: Request,
    ) -> Dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        return _result_payload(_engine(request).update_entry(entry_id, **updates))

    @app.post("/api/entries/{entry_id}/stop")
    def stop_entry(entry_id: str, request: Request) -> Dict[str, Any]:
        return _result_payload(_engine(request).stop(entry_id))

    @app.delete("/api/entries/{entry_id}")
    def delete_entry(entry_id: str, request: Request) -> Dict[str, Any]:
        result = _engine(request).delete_entry(entry_id)
        _raise_for_failure(result)
        return {"deleted": entry_id}

    @app.get("/api/report")
    def report(
        request: Request,
        start: Optional[str] = Query(default=None),
        end: Optional[str] = Query(default=None),
        client_id: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        start_day, end_exclusive = _parse_range(start, end)
        rows = _guard(
            load_report_rows,
            _engine(request).store,
            start=start_day,
            end=end_exclusive,
            client_id=client_id,
        )
        summaries = summarize_by_client(rows)
        return {
            "totals": {
                "seconds": sum(item.total_seconds for item in summaries),
                "cost": sum(item.total_cost for item in summaries),
                "entries": len(rows),
            },
            "clients": [
                {
                    "id": item.id,
                    "name": item.name,
                    "seconds": item.total_seconds,
                    "cost": item.total_cost,
                    "entries": item.entry_count,
                    "projects": [
                        {
                            "id": project.id,
                            "name": project.name,
                            "seconds": project.total_seconds,
                            "cost": project.total_cost,
                            "entries": project.entry_count,
                        }
                        for project in item.projects
                    ],
                }
                for item in summaries
            ],
            "days": [
                {"date": day.isoformat(), "seconds": seconds}
                for day, seconds in daily_totals(rows)
            ],
        }

    @app.get("/api/export.csv")
    def export_csv(
        request: Request,
        start: Optional[str] = Query(default=None),
        end: Optional[str] = Query(default=None),
        client_id: Optional[str] = Query(default=None),
    ) -> Response:
        engine_ = _engine(request)
        start_day, end_exclusive = _parse_range(start, end)
        rows = _guard(
            load_report_rows,
            engine_.store,
            start=start_day,
            end=end_exclusive,
            client_id=client_id,
        )
        client = _guard(engine_.get_client, client_id) if client_id else None
        filename = csv_filename(client.name if client else None, start, end)
        return Response(
            content=generate_csv(rows),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return app


def _engine(request: Request) -> TimerEngine:
    return request.app.state.engine


def _guard(func, *args, **kwargs):
    """Call a query and translate timer errors into HTTP errors."""
    try:
        return func(*args, **kwargs)
    except TimerError as exc:
        raise HTTPException(
            status_code=_STATUS_CODES[exc.kind], detail=exc.message
        ) from exc


def _raise_for_failure(result: TimerResult) -> None:
    if result.success:
        return
    kind = result.error or ErrorKind.STORAGE
    raise HTTPException(
        status_code=_STATUS_CODES[kind],
        detail={"error": kind.value, "message": result.message},
    )


def _result_payload(result: TimerResult) -> Dict[str, Any]:
    _raise_for_failure(result)
    return {"entry": result.entry.to_payload() if result.entry else None}


def _parse_range(
    start: Optional[str], end: Optional[str]
) -> tuple[Optional[datetime], Optional[datetime]]:
    start_day = _parse_date(start) if start else None
    end_day = _parse_date(end) if end else None
    if start_day and end_day and end_day < start_day:
        raise HTTPException(
            status_code=400, detail="end date must be on or after start date"
        )
    end_exclusive = end_day + timedelta(days=1) if end_day else None
    return start_day, end_exclusive


def _parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc


def _client_payload(client: Client) -> Dict[str, Any]:
    return {
        "id": client.id,
        "name": client.name,
        "hourly_rate": client.hourly_rate,
        "color": client.color,
        "status": client.status,
    }


def _project_payload(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "client_id": project.client_id,
        "name": project.name,
        "hourly_rate_override": project.hourly_rate_override,
        "status": project.status,
    }
