"""Aggregation, CSV export and console reporting for billed time."""

from __future__ import annotations

import csv
import io
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Iterable, Optional

from .models import Client, Project, TimeEntry
from .storage import CLIENTS, PROJECTS, TIME_ENTRIES, Order, RecordStore, eq, gte, lt
from .timing import (
    clamp_elapsed,
    cost,
    effective_rate,
    elapsed_seconds,
    format_currency,
    format_duration,
)

if TYPE_CHECKING:
    from .engine import TimerEngine

CSV_HEADERS = [
    "Client",
    "Project",
    "Date",
    "Start Time",
    "End Time",
    "Duration",
    "Hours (Decimal)",
    "Hourly Rate",
    "Cost",
    "Notes",
    "Type",
]


@dataclass(slots=True)
class ReportRow:
    """A closed time entry joined to its project, client and billing rate."""

    entry: TimeEntry
    project_name: str
    client_id: str
    client_name: str
    effective_rate: float

    @property
    def seconds(self) -> int:
        return self.entry.duration_seconds or 0

    @property
    def cost(self) -> float:
        return cost(self.seconds, self.effective_rate)


@dataclass(slots=True)
class ProjectSummary:
    id: str
    name: str
    total_seconds: int = 0
    total_cost: float = 0.0
    entry_count: int = 0


@dataclass(slots=True)
class ClientSummary:
    id: str
    name: str
    total_seconds: int = 0
    total_cost: float = 0.0
    entry_count: int = 0
    projects: list[ProjectSummary] = field(default_factory=list)


@dataclass(slots=True)
class RunningTotal:
    entry: TimeEntry
    project_name: str
    elapsed_seconds: int
    running_cost: float


def load_report_rows(
    store: RecordStore,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    client_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> list[ReportRow]:
    """Closed entries with ``start <= start_time < end``, newest first."""
    filters = [eq("is_running", False)]
    if start is not None:
        filters.append(gte("start_time", start))
    if end is not None:
        filters.append(lt("start_time", end))
    if project_id is not None:
        filters.append(eq("project_id", project_id))
    records = store.query_many(
        TIME_ENTRIES, filters, Order("start_time", descending=True)
    )

    projects = {
        row["id"]: Project.from_record(row) for row in store.query_many(PROJECTS)
    }
    clients = {row["id"]: Client.from_record(row) for row in store.query_many(CLIENTS)}

    rows: list[ReportRow] = []
    for record in records:
        entry = TimeEntry.from_record(record)
        project = projects.get(entry.project_id)
        client = clients.get(project.client_id) if project else None
        if client_id is not None and (project is None or project.client_id != client_id):
            continue
        rows.append(
            ReportRow(
                entry=entry,
                project_name=project.name if project else "Unknown",
                client_id=client.id if client else "",
                client_name=client.name if client else "Unknown",
                effective_rate=effective_rate(project, client) if project else 0.0,
            )
        )
    return rows


def summarize_by_client(rows: Iterable[ReportRow]) -> list[ClientSummary]:
    clients: dict[str, ClientSummary] = {}
    projects: dict[tuple[str, str], ProjectSummary] = {}
    for row in rows:
        summary = clients.get(row.client_id)
        if summary is None:
            summary = clients[row.client_id] = ClientSummary(
                id=row.client_id, name=row.client_name
            )
        key = (row.client_id, row.entry.project_id)
        project = projects.get(key)
        if project is None:
            project = projects[key] = ProjectSummary(
                id=row.entry.project_id, name=row.project_name
            )
            summary.projects.append(project)
        for target in (summary, project):
            target.total_seconds += row.seconds
            target.total_cost += row.cost
            target.entry_count += 1

    for summary in clients.values():
        summary.projects.sort(key=lambda item: item.total_seconds, reverse=True)
    return sorted(clients.values(), key=lambda item: item.total_seconds, reverse=True)


def daily_totals(rows: Iterable[ReportRow]) -> list[tuple[date, int]]:
    totals: defaultdict[date, int] = defaultdict(int)
    for row in rows:
        totals[row.entry.start_time.date()] += row.seconds
    return sorted(totals.items())


def running_totals(engine: "TimerEngine", now: Optional[datetime] = None) -> list[RunningTotal]:
    """Elapsed time and cost so far for every running entry."""
    now = now or engine.now()
    totals: list[RunningTotal] = []
    for entry in engine.running_entries():
        project = engine.get_project(entry.project_id)
        client = engine.get_client(project.client_id) if project else None
        rate = effective_rate(project, client) if project else 0.0
        seconds = clamp_elapsed(elapsed_seconds(entry.start_time, now))
        totals.append(
            RunningTotal(
                entry=entry,
                project_name=project.name if project else "Unknown",
                elapsed_seconds=seconds,
                running_cost=cost(seconds, rate),
            )
        )
    return totals


def generate_csv(rows: Iterable[ReportRow]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for row in rows:
        entry = row.entry
        writer.writerow(
            [
                row.client_name,
                row.project_name,
                entry.start_time.strftime("%Y-%m-%d"),
                entry.start_time.strftime("%H:%M"),
                entry.end_time.strftime("%H:%M") if entry.end_time else "",
                format_duration(row.seconds),
                f"{row.seconds / 3600:.2f}",
                format_currency(row.effective_rate),
                format_currency(row.cost),
                entry.notes or "",
                "Manual" if entry.is_manual else "Timer",
            ]
        )
    return buffer.getvalue()


def csv_filename(
    client_name: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> str:
    parts = ["timekeeper"]
    if client_name:
        parts.append(re.sub(r"\s+", "-", client_name.strip().lower()))
    if start:
        parts.append(start)
    if end:
        parts.extend(["to", end])
    elif start:
        parts.append("onwards")
    parts.append("export")
    return "_".join(parts) + ".csv"


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def print_summary(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        client_id: Optional[str] = None,
    ) -> None:
        rows = load_report_rows(self.store, start=start, end=end, client_id=client_id)
        if not rows:
            print("No billed time recorded for the selected period.")
            return

        summaries = summarize_by_client(rows)
        total_seconds = sum(item.total_seconds for item in summaries)
        total_cost = sum(item.total_cost for item in summaries)

        print(f"Total time: {format_duration(total_seconds)}")
        print(f"Total cost: {format_currency(total_cost)}")
        print("-" * 40)
        for summary in summaries:
            print(
                f"{summary.name:<28} {format_duration(summary.total_seconds)} "
                f"{format_currency(summary.total_cost):>12}"
            )
            for project in summary.projects:
                print(
                    f"  {project.name[:26]:<26} {format_duration(project.total_seconds)} "
                    f"{format_currency(project.total_cost):>12}"
                )
