from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session as OrmSession, joinedload

from .errors import EntryNotFound
from .models import ACTIVE_STATUSES, QueueEntry, QueueStatus


def get_entry(db: OrmSession, entry_id: int, refresh: bool = False) -> QueueEntry:
    entry = db.get(QueueEntry, entry_id, options=[joinedload(QueueEntry.patient)], populate_existing=refresh)
    if entry is None:
        raise EntryNotFound(entry_id=entry_id)
    return entry


def get_serving_entry(db: OrmSession, day: date) -> QueueEntry | None:
    q = (
        select(QueueEntry)
        .options(joinedload(QueueEntry.patient))
        .where(QueueEntry.appointment_date == day, QueueEntry.status == QueueStatus.IN_SERVICE)
        .order_by(QueueEntry.queue_number.asc())
    )
    return db.execute(q).scalars().first()


def get_next_waiting_entry(db: OrmSession, day: date) -> QueueEntry | None:
    q = (
        select(QueueEntry)
        .options(joinedload(QueueEntry.patient))
        .where(QueueEntry.appointment_date == day, QueueEntry.status == QueueStatus.WAITING)
        .order_by(QueueEntry.queue_number.asc())
    )
    return db.execute(q).scalars().first()


def get_waiting_entries(db: OrmSession, day: date, limit: int | None = None) -> list[QueueEntry]:
    q = (
        select(QueueEntry)
        .options(joinedload(QueueEntry.patient))
        .where(QueueEntry.appointment_date == day, QueueEntry.status == QueueStatus.WAITING)
        .order_by(QueueEntry.queue_number.asc())
    )
    if limit is not None:
        q = q.limit(limit)
    return list(db.execute(q).scalars().all())


def get_entries_for_date(db: OrmSession, day: date) -> list[QueueEntry]:
    q = (
        select(QueueEntry)
        .options(joinedload(QueueEntry.patient))
        .where(QueueEntry.appointment_date == day)
        .order_by(QueueEntry.queue_number.asc())
    )
    return list(db.execute(q).scalars().all())


def get_active_entries_for_date(db: OrmSession, day: date) -> list[QueueEntry]:
    q = (
        select(QueueEntry)
        .options(joinedload(QueueEntry.patient))
        .where(
            QueueEntry.appointment_date == day,
            QueueEntry.status.in_(ACTIVE_STATUSES),
        )
        .order_by(QueueEntry.queue_number.asc())
    )
    return list(db.execute(q).scalars().all())


def get_patient_entries(db: OrmSession, patient_id: int, limit: int = 20) -> list[QueueEntry]:
    q = (
        select(QueueEntry)
        .options(joinedload(QueueEntry.patient))
        .where(QueueEntry.patient_id == patient_id)
        .order_by(QueueEntry.appointment_date.desc(), QueueEntry.queue_number.desc())
        .limit(limit)
    )
    return list(db.execute(q).scalars().all())


def find_patient_booking(db: OrmSession, patient_id: int, day: date) -> QueueEntry | None:
    q = select(QueueEntry).where(
        QueueEntry.patient_id == patient_id,
        QueueEntry.appointment_date == day,
        QueueEntry.status != QueueStatus.CANCELLED,
    )
    return db.execute(q).scalars().first()


def count_booked(db: OrmSession, day: date) -> int:
    """Entries holding a slot on ``day``: everything except patient cancellations."""
    q = select(func.count(QueueEntry.id)).where(
        QueueEntry.appointment_date == day,
        QueueEntry.status != QueueStatus.CANCELLED,
    )
    return int(db.execute(q).scalar() or 0)


def count_with_status(db: OrmSession, day: date, status: QueueStatus) -> int:
    q = select(func.count(QueueEntry.id)).where(QueueEntry.appointment_date == day, QueueEntry.status == status)
    return int(db.execute(q).scalar() or 0)


def next_queue_number(db: OrmSession, day: date) -> int:
    # Numbers are never reused, so cancelled entries still count here.
    max_no = db.execute(select(func.max(QueueEntry.queue_number)).where(QueueEntry.appointment_date == day)).scalar()
    return int(max_no or 0) + 1


def empty_status_counts() -> dict[str, int]:
    counts = {"total": 0}
    counts.update({s.value: 0 for s in QueueStatus})
    return counts


def status_counts(entries: list[QueueEntry]) -> dict[str, int]:
    counts = empty_status_counts()
    for e in entries:
        counts["total"] += 1
        counts[QueueStatus(e.status).value] += 1
    return counts
