from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_today_start(now: datetime | None = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return datetime.combine(current.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Stores such as SQLite hand back naive datetimes; every stored datetime is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date_value(value: Any, *, end_of_day: bool = False) -> Any:
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if _DATE_ONLY_RE.match(raw):
            day = datetime.strptime(raw, "%Y-%m-%d").replace(tzinfo=timezone.utc)
            if end_of_day:
                return day + timedelta(days=1) - timedelta(microseconds=1)
            return day
        return raw
    return value
