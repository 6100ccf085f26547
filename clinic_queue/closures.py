from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session as OrmSession, joinedload

from .errors import ClosureAlreadyActive, ClosureNotFound
from .events import EventSink, NullEventSink
from .models import ActivityType, EmergencyClosure, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ClosurePage:
    closures: list[EmergencyClosure]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def get_active_closure(db: OrmSession, day: date) -> EmergencyClosure | None:
    q = (
        select(EmergencyClosure)
        .options(joinedload(EmergencyClosure.creator))
        .where(EmergencyClosure.closure_date == day, EmergencyClosure.is_active.is_(True))
        .order_by(EmergencyClosure.id.desc())
    )
    return db.execute(q).scalars().first()


def create_closure(db: OrmSession, day: date, reason: str, creator_id: int, affected_count: int = 0) -> EmergencyClosure:
    """Add an active closure for ``day`` to the session without committing."""
    if get_active_closure(db, day) is not None:
        raise ClosureAlreadyActive(closure_date=day.isoformat())

    closure = EmergencyClosure(
        closure_date=day,
        reason=reason,
        created_by=creator_id,
        affected_count=affected_count,
        is_active=True,
    )
    db.add(closure)
    db.flush()
    return closure


def get_closure(db: OrmSession, closure_id: int) -> EmergencyClosure:
    closure = db.get(EmergencyClosure, closure_id, options=[joinedload(EmergencyClosure.creator)])
    if closure is None:
        raise ClosureNotFound(closure_id=closure_id)
    return closure


def deactivate_closure(
    db: OrmSession,
    closure_id: int,
    actor_id: int | None = None,
    sink: EventSink | None = None,
) -> EmergencyClosure:
    sink = sink or NullEventSink()
    closure = get_closure(db, closure_id)
    if closure.is_active:
        closure.is_active = False
        closure.deactivated_at = utcnow()
        db.commit()
        logger.info("Emergency closure %s for %s deactivated", closure.id, closure.closure_date)

        sink.record_activity(
            ActivityType.SETTINGS_UPDATED,
            "Emergency closure deactivated",
            f"Emergency closure on {closure.closure_date.isoformat()} was deactivated",
            patient_id=actor_id,
            metadata={
                "emergency_closure_id": closure.id,
                "closure_date": closure.closure_date.isoformat(),
                "deactivated_by": actor_id,
            },
        )
    return closure


def list_closures(db: OrmSession, page: int = 1, limit: int = 10, is_active: bool | None = None) -> ClosurePage:
    page = max(1, page)
    limit = max(1, min(limit, 100))

    q = select(EmergencyClosure).options(joinedload(EmergencyClosure.creator))
    count_q = select(func.count(EmergencyClosure.id))
    if is_active is not None:
        q = q.where(EmergencyClosure.is_active.is_(is_active))
        count_q = count_q.where(EmergencyClosure.is_active.is_(is_active))

    total = int(db.execute(count_q).scalar() or 0)
    rows = db.execute(
        q.order_by(EmergencyClosure.created_at.desc(), EmergencyClosure.id.desc()).limit(limit).offset((page - 1) * limit)
    ).scalars().all()
    return ClosurePage(closures=list(rows), total=total, page=page, limit=limit)
