from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session as OrmSession

from .errors import NotificationNotFound
from .models import Notification


@dataclass
class NotificationPage:
    notifications: list[Notification]
    unread_count: int
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def list_notifications(
    db: OrmSession,
    patient_id: int,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
) -> NotificationPage:
    page = max(1, page)
    limit = max(1, min(limit, 100))

    filters = [Notification.patient_id == patient_id]
    if unread_only:
        filters.append(Notification.is_read.is_(False))

    total = int(db.execute(select(func.count(Notification.id)).where(*filters)).scalar() or 0)
    unread = int(
        db.execute(
            select(func.count(Notification.id)).where(
                Notification.patient_id == patient_id, Notification.is_read.is_(False)
            )
        ).scalar()
        or 0
    )
    rows = db.execute(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).scalars().all()
    return NotificationPage(notifications=list(rows), unread_count=unread, total=total, page=page, limit=limit)


def mark_read(db: OrmSession, notification_id: int, patient_id: int | None = None) -> Notification:
    n = db.get(Notification, notification_id)
    if n is None or (patient_id is not None and n.patient_id != patient_id):
        raise NotificationNotFound(notification_id=notification_id)
    n.is_read = True
    db.commit()
    return n


def mark_all_read(db: OrmSession, patient_id: int) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.patient_id == patient_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    db.commit()
    return int(result.rowcount or 0)
