from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session as OrmSession

from .errors import InvalidRange, RangeTooLarge
from .ledger import empty_status_counts
from .models import QueueEntry, QueueStatus

MAX_RANGE_DAYS = 31


@dataclass
class RangeReport:
    start_date: date
    end_date: date
    daily: dict[date, dict[str, int]] = field(default_factory=dict)
    totals: dict[str, int] = field(default_factory=empty_status_counts)


def validate_range(start: date, end: date) -> None:
    if start > end:
        raise InvalidRange(start_date=start.isoformat(), end_date=end.isoformat())
    if (end - start).days > MAX_RANGE_DAYS:
        raise RangeTooLarge(
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            max_days=MAX_RANGE_DAYS,
        )


def build_report(db: OrmSession, start: date, end: date) -> RangeReport:
    """Per-date and whole-range counts by status for ``start``..``end`` inclusive."""
    validate_range(start, end)

    q = (
        select(QueueEntry.appointment_date, QueueEntry.status, func.count(QueueEntry.id))
        .where(QueueEntry.appointment_date.between(start, end))
        .group_by(QueueEntry.appointment_date, QueueEntry.status)
        .order_by(QueueEntry.appointment_date.asc())
    )

    report = RangeReport(start_date=start, end_date=end)
    for day, status, n in db.execute(q).all():
        key = QueueStatus(status).value
        bucket = report.daily.setdefault(day, empty_status_counts())
        bucket[key] += n
        bucket["total"] += n
        report.totals[key] += n
        report.totals["total"] += n
    return report
