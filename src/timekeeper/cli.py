"""Command-line interface for the timekeeper."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

import typer

from . import catalog
from .config import BACKENDS, EngineSettings, create_store
from .engine import TimerEngine
from .errors import TimerError
from .models import TimeEntry, TimerResult
from .server_runner import run_dashboard
from .timing import format_currency, format_duration

app = typer.Typer(help="Multi-client time tracker with billable timers.")

_DATETIME_FORMATS = ["%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S"]

_state: dict[str, object] = {}


@app.callback(no_args_is_help=True)
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs."),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the timekeeper SQLite database.",
    ),
    backend: Optional[str] = typer.Option(
        None,
        "--backend",
        help=f"Storage backend ({' or '.join(BACKENDS)}).",
    ),
    paused_hours: Optional[float] = typer.Option(
        None,
        "--paused-hours",
        min=0.01,
        help="How long a stopped timer still counts as paused.",
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        _state["settings"] = EngineSettings.from_options(
            backend=backend, db_path=db_path, paused_hours=paused_hours
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


@contextmanager
def _open_engine() -> Iterator[TimerEngine]:
    settings = _state.get("settings") or EngineSettings.from_env()
    try:
        store = create_store(settings)
    except TimerError as exc:
        _fail(exc.message)
    try:
        yield TimerEngine(store, settings)
    except TimerError as exc:
        _fail(exc.message)
    finally:
        store.close()


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _check(result: TimerResult) -> TimeEntry:
    if not result.success:
        _fail(result.message or "Operation failed")
    return result.entry


def _describe(entry: TimeEntry) -> str:
    if entry.is_running:
        span = f"started {entry.start_time:%Y-%m-%d %H:%M:%S}"
    else:
        span = (
            f"{entry.start_time:%Y-%m-%d %H:%M} - {entry.end_time:%H:%M} "
            f"({format_duration(entry.duration_seconds or 0)})"
        )
    notes = f" [{entry.notes}]" if entry.notes else ""
    return f"{entry.id}  {span}{notes}"


@app.command("add-client")
def add_client(
    name: str = typer.Argument(..., help="Client name."),
    hourly_rate: float = typer.Option(0.0, "--rate", min=0.0, help="Default hourly rate."),
    color: Optional[str] = typer.Option(None, "--color", help="Display color, e.g. #2563EB."),
) -> None:
    """Create a client with a default hourly rate."""
    with _open_engine() as engine:
        client = catalog.create_client(engine.store, name, hourly_rate, color)
    typer.echo(f"Created client {client.name} ({client.id})")


@app.command("add-project")
def add_project(
    client_id: str = typer.Argument(..., help="Owning client id."),
    name: str = typer.Argument(..., help="Project name."),
    hourly_rate: Optional[float] = typer.Option(
        None, "--rate", min=0.0, help="Override the client's hourly rate."
    ),
) -> None:
    """Create a project under a client."""
    with _open_engine() as engine:
        project = catalog.create_project(engine.store, client_id, name, hourly_rate)
    typer.echo(f"Created project {project.name} ({project.id})")


@app.command("edit-client")
def edit_client(
    client_id: str = typer.Argument(..., help="Client to edit."),
    name: Optional[str] = typer.Option(None, "--name", help="New name."),
    hourly_rate: Optional[float] = typer.Option(None, "--rate", min=0.0, help="New hourly rate."),
    color: Optional[str] = typer.Option(None, "--color", help="New display color."),
) -> None:
    """Change a client's name, rate or color."""
    with _open_engine() as engine:
        client = catalog.update_client(
            engine.store, client_id, name=name, hourly_rate=hourly_rate, color=color
        )
    typer.echo(f"Updated client {client.name} ({format_currency(client.hourly_rate)}/h)")


@app.command("edit-project")
def edit_project(
    project_id: str = typer.Argument(..., help="Project to edit."),
    name: Optional[str] = typer.Option(None, "--name", help="New name."),
    client_id: Optional[str] = typer.Option(None, "--client", help="Move to this client."),
    hourly_rate: Optional[float] = typer.Option(
        None, "--rate", min=0.0, help="Override the client's hourly rate."
    ),
    client_rate: bool = typer.Option(
        False, "--client-rate", help="Drop the override and bill at the client's rate."
    ),
) -> None:
    """Rename a project, move it or change its rate override."""
    changes: dict[str, object] = {"name": name, "client_id": client_id}
    if client_rate:
        changes["hourly_rate_override"] = None
    elif hourly_rate is not None:
        changes["hourly_rate_override"] = hourly_rate
    with _open_engine() as engine:
        project = catalog.update_project(engine.store, project_id, **changes)
        rate = engine.effective_rate(project.id)
    typer.echo(f"Updated project {project.name} ({format_currency(rate)}/h)")


@app.command("archive-client")
def archive_client(
    client_id: str = typer.Argument(..., help="Client to archive."),
    restore: bool = typer.Option(False, "--restore", help="Make the client active again."),
) -> None:
    """Hide a client from listings, or bring it back with --restore."""
    with _open_engine() as engine:
        client = catalog.set_client_status(
            engine.store, client_id, "active" if restore else "archived"
        )
    typer.echo(f"Client {client.name} is {client.status}")


@app.command("archive-project")
def archive_project(
    project_id: str = typer.Argument(..., help="Project to archive."),
    restore: bool = typer.Option(False, "--restore", help="Make the project active again."),
) -> None:
    """Hide a project from listings, or bring it back with --restore."""
    with _open_engine() as engine:
        project = catalog.set_project_status(
            engine.store, project_id, "active" if restore else "archived"
        )
    typer.echo(f"Project {project.name} is {project.status}")


@app.command()
def seed() -> None:
    """Create the default clients and projects if they are missing."""
    with _open_engine() as engine:
        created = catalog.seed_default_clients(engine.store)
    if not created:
        typer.echo("Default clients already exist.")
        return
    typer.echo(f"Seeded {len(created)} default client(s) with projects")


@app.command()
def clients(
    include_archived: bool = typer.Option(False, "--all", help="Include archived clients."),
) -> None:
    """List clients with their default rate."""
    with _open_engine() as engine:
        items = catalog.list_clients(engine.store, include_archived)
    if not items:
        typer.echo("No clients yet.")
        return
    for client in items:
        typer.echo(
            f"{client.id}  {client.name:<30} {format_currency(client.hourly_rate):>10}/h"
            f"  {client.status}"
        )


@app.command()
def projects(
    client_id: Optional[str] = typer.Option(None, "--client", help="Only this client's projects."),
    include_archived: bool = typer.Option(False, "--all", help="Include archived projects."),
) -> None:
    """List projects with their effective rate and timer state."""
    with _open_engine() as engine:
        items = catalog.list_projects(engine.store, client_id, include_archived)
        if not items:
            typer.echo("No projects yet.")
            return
        for project in items:
            rate = engine.effective_rate(project.id)
            state = engine.timer_state(project.id)
            archived = "  (archived)" if project.status == "archived" else ""
            typer.echo(
                f"{project.id}  {project.name:<30} {format_currency(rate):>10}/h"
                f"  {state.value}{archived}"
            )


@app.command()
def start(
    project_id: str = typer.Argument(..., help="Project to time."),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Notes for the entry."),
) -> None:
    """Start a timer for a project."""
    with _open_engine() as engine:
        entry = _check(engine.start(project_id, notes))
    typer.echo(f"Started {_describe(entry)}")


@app.command()
def stop(
    target: str = typer.Argument(..., help="Project id, or entry id with --entry."),
    by_entry: bool = typer.Option(False, "--entry", help="Treat TARGET as an entry id."),
) -> None:
    """Stop a running timer."""
    with _open_engine() as engine:
        result = engine.stop(target) if by_entry else engine.stop_for_project(target)
        entry = _check(result)
    typer.echo(f"Stopped {_describe(entry)}")


@app.command()
def pause(project_id: str = typer.Argument(..., help="Project to pause.")) -> None:
    """Pause a project's timer; resume it later with `resume`."""
    with _open_engine() as engine:
        entry = _check(engine.pause(project_id))
    typer.echo(f"Paused {_describe(entry)}")


@app.command()
def resume(
    project_id: str = typer.Argument(..., help="Project to resume."),
    copy_notes: bool = typer.Option(
        True,
        "--copy-notes/--no-copy-notes",
        help="Carry notes over from the previous entry.",
    ),
) -> None:
    """Start a new timer on a paused project."""
    with _open_engine() as engine:
        entry = _check(engine.resume(project_id, copy_notes=copy_notes))
    typer.echo(f"Resumed {_describe(entry)}")


@app.command()
def status(
    project_id: Optional[str] = typer.Argument(None, help="Show a single project."),
) -> None:
    """Show running timers, or one project's timer state."""
    from .reporting import running_totals

    with _open_engine() as engine:
        if project_id:
            typer.echo(f"{project_id}: {engine.timer_state(project_id).value}")
            running = engine.running_entry_for_project(project_id)
            if running:
                typer.echo(f"  {_describe(running)}")
            return
        totals = running_totals(engine)
    if not totals:
        typer.echo("No timers running.")
        return
    typer.echo(f"{len(totals)} running:")
    for item in totals:
        typer.echo(
            f"  {item.project_name:<30} {format_duration(item.elapsed_seconds)} "
            f"{format_currency(item.running_cost):>10}"
        )


@app.command()
def add(
    project_id: str = typer.Argument(..., help="Project for the entry."),
    start_time: datetime = typer.Option(
        ..., "--start", formats=_DATETIME_FORMATS, help="Start, e.g. '2024-05-01 09:00'."
    ),
    end_time: datetime = typer.Option(
        ..., "--end", formats=_DATETIME_FORMATS, help="End, e.g. '2024-05-01 11:30'."
    ),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Notes for the entry."),
) -> None:
    """Add a manual time entry."""
    with _open_engine() as engine:
        entry = _check(engine.create_manual_entry(project_id, start_time, end_time, notes))
    typer.echo(f"Added {_describe(entry)}")


@app.command()
def edit(
    entry_id: str = typer.Argument(..., help="Entry to edit."),
    start_time: Optional[datetime] = typer.Option(
        None, "--start", formats=_DATETIME_FORMATS, help="New start time."
    ),
    end_time: Optional[datetime] = typer.Option(
        None, "--end", formats=_DATETIME_FORMATS, help="New end time."
    ),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Replace the notes."),
    clear_notes: bool = typer.Option(False, "--clear-notes", help="Remove the notes."),
) -> None:
    """Edit an entry's times or notes."""
    changes: dict[str, object] = {"start_time": start_time, "end_time": end_time}
    if clear_notes:
        changes["notes"] = None
    elif notes is not None:
        changes["notes"] = notes
    with _open_engine() as engine:
        entry = _check(engine.update_entry(entry_id, **changes))
    typer.echo(f"Updated {_describe(entry)}")


@app.command()
def delete(entry_id: str = typer.Argument(..., help="Entry to delete.")) -> None:
    """Delete a stopped time entry."""
    with _open_engine() as engine:
        _check(engine.delete_entry(entry_id))
    typer.echo(f"Deleted {entry_id}")


@app.command()
def report(
    start: Optional[str] = typer.Option(None, "--start", help="First day (YYYY-MM-DD)."),
    end: Optional[str] = typer.Option(None, "--end", help="Last day (YYYY-MM-DD)."),
    client_id: Optional[str] = typer.Option(None, "--client", help="Only this client."),
) -> None:
    """Print billed time and cost per client and project."""
    from .reporting import SummaryPrinter

    start_day, end_exclusive = _parse_range(start, end)
    with _open_engine() as engine:
        SummaryPrinter(engine.store).print_summary(start_day, end_exclusive, client_id)


@app.command()
def export(
    start: Optional[str] = typer.Option(None, "--start", help="First day (YYYY-MM-DD)."),
    end: Optional[str] = typer.Option(None, "--end", help="Last day (YYYY-MM-DD)."),
    client_id: Optional[str] = typer.Option(None, "--client", help="Only this client."),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", path_type=Path, help="Target file or directory."
    ),
) -> None:
    """Export billed time as CSV."""
    from .reporting import csv_filename, generate_csv, load_report_rows

    start_day, end_exclusive = _parse_range(start, end)
    with _open_engine() as engine:
        rows = load_report_rows(
            engine.store, start=start_day, end=end_exclusive, client_id=client_id
        )
        client = engine.get_client(client_id) if client_id else None
    filename = csv_filename(client.name if client else None, start, end)
    if output is None:
        target = Path.cwd() / filename
    elif output.is_dir():
        target = output / filename
    else:
        target = output
    target.write_text(generate_csv(rows), encoding="utf-8")
    typer.echo(f"Wrote {len(rows)} entries to {target}")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
) -> None:
    """Serve the HTTP API."""
    run_dashboard(
        host=host,
        port=port,
        settings=_state.get("settings") or EngineSettings.from_env(),
        open_browser=open_browser,
    )


def _parse_range(
    start: Optional[str], end: Optional[str]
) -> tuple[Optional[datetime], Optional[datetime]]:
    try:
        start_day = datetime.strptime(start, "%Y-%m-%d") if start else None
        end_day = datetime.strptime(end, "%Y-%m-%d") if end else None
    except ValueError as exc:
        raise typer.BadParameter("Dates must use YYYY-MM-DD") from exc
    return start_day, end_day + timedelta(days=1) if end_day else None
