"""Pure duration, cost and rate helpers."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from .models import Client, Project


def elapsed_seconds(start_time: datetime, reference_now: datetime) -> int:
    """Whole seconds between ``start_time`` and ``reference_now``.

    Floors, so a clock behind ``start_time`` yields a negative value; display
    callers should pass the result through :func:`clamp_elapsed`.
    """
    return math.floor((reference_now - start_time).total_seconds())


def clamp_elapsed(seconds: int) -> int:
    return max(0, seconds)


def cost(duration_seconds: float, hourly_rate: float) -> float:
    """Unrounded cost of ``duration_seconds`` billed at ``hourly_rate``."""
    return (duration_seconds / 3600) * hourly_rate


def effective_rate(project: Project, client: Optional[Client]) -> float:
    """The project's own override rate if set, else its client's rate."""
    if project.hourly_rate_override is not None:
        return project.hourly_rate_override
    if client is None:
        return 0.0
    return client.hourly_rate


def format_duration(seconds: float) -> str:
    total_seconds = max(0, int(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_currency(amount: float) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
