from __future__ import annotations

from datetime import date, datetime, time, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session as OrmSession

from .clock import clinic_zone, to_naive_utc
from .models import ActivityLog


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    # Clinic-local day, expressed in the naive UTC used by created_at.
    zone = clinic_zone()
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return to_naive_utc(start), to_naive_utc(end)


def recent_activities(
    db: OrmSession,
    limit: int = 20,
    type: str | None = None,
    day: date | None = None,
) -> list[ActivityLog]:
    q = select(ActivityLog)
    if type and type != "all":
        q = q.where(ActivityLog.type == type)
    if day is not None:
        start, end = _day_bounds(day)
        q = q.where(ActivityLog.created_at >= start, ActivityLog.created_at < end)
    q = q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(max(1, min(limit, 200)))
    return list(db.execute(q).scalars().all())


def activity_stats(db: OrmSession, day: date) -> dict[str, int]:
    start, end = _day_bounds(day)
    q = (
        select(ActivityLog.type, func.count(ActivityLog.id))
        .where(ActivityLog.created_at >= start, ActivityLog.created_at < end)
        .group_by(ActivityLog.type)
    )
    return {t: int(n) for t, n in db.execute(q).all()}
