from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from .config import get_config


def clinic_zone(tz_name: str | None = None) -> ZoneInfo:
    return ZoneInfo(tz_name or get_config().clinic_timezone)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def local_now(now: datetime | None = None, tz_name: str | None = None) -> datetime:
    now = now or now_utc()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(clinic_zone(tz_name))


def clinic_today(now: datetime | None = None, tz_name: str | None = None) -> date:
    return local_now(now, tz_name).date()


def parse_hhmm(value: str) -> time:
    hh, mm = value.strip().split(":")[:2]
    return time(hour=int(hh), minute=int(mm))


def weekday_sunday_first(day: date) -> int:
    # Python: Monday=0; practice settings: Sunday=0
    return (day.weekday() + 1) % 7


def whole_minutes_between(start: datetime, end: datetime) -> int:
    # half a minute or more rounds up
    return math.floor((end - start).total_seconds() / 60 + 0.5)
