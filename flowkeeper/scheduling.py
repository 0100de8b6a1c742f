"""Cron schedule helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from .models import utcnow


def is_valid_cron(expression: str) -> bool:
    return croniter.is_valid(expression)


def next_run(
    expression: str, after: Optional[datetime] = None, tz: str = "UTC"
) -> datetime:
    """Return the first firing of ``expression`` strictly after ``after`` in UTC.

    The expression is interpreted in ``tz`` so that ``0 9 * * *`` means nine in
    the morning local time.
    """
    base = after or utcnow()
    if base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)
    local = base.astimezone(ZoneInfo(tz))
    fired = croniter(expression, local).get_next(datetime)
    return fired.astimezone(timezone.utc)
