from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

_RELATIVE_RE = re.compile(r"^now(?:\s*-\s*(\d+)\s*([smhdw]))?$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to UTC. Naive datetimes are taken as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    """
    Render as RFC3339 in UTC with seconds precision, e.g. 2018-03-15T13:00:00Z.
    """
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class TimeRange:
    """
    Absolute [start, end] window, stored in UTC. end must be after start.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start = to_utc(self.start)
        end = to_utc(self.end)
        if end <= start:
            raise ValueError(f"time range end ({format_rfc3339(end)}) must be after start ({format_rfc3339(start)})")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @classmethod
    def last(cls, span: timedelta, now: Optional[datetime] = None) -> TimeRange:
        end = to_utc(now) if now is not None else utc_now()
        return cls(start=end - span, end=end)


def parse_time_expr(value: str, now: Optional[datetime] = None) -> datetime:
    """
    Parse an absolute ISO-8601 timestamp or a relative expression such as
    'now', 'now-6h', 'now-30m', 'now-7d'.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty time expression")
    m = _RELATIVE_RE.match(raw)
    if m:
        base = to_utc(now) if now is not None else utc_now()
        amount, unit = m.group(1), m.group(2)
        if amount is None:
            return base
        return base - timedelta(seconds=int(amount) * _UNIT_SECONDS[unit.lower()])
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(raw))
    except ValueError as e:
        raise ValueError(f"invalid time expression: {value!r}") from e


def parse_time_range(start: str, end: str, now: Optional[datetime] = None) -> TimeRange:
    ref = to_utc(now) if now is not None else utc_now()
    return TimeRange(start=parse_time_expr(start, now=ref), end=parse_time_expr(end, now=ref))
