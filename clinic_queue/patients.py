from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session as OrmSession

from .clock import clinic_today, clinic_zone, to_naive_utc
from .errors import PatientNotFound
from .ledger import empty_status_counts, get_patient_entries
from .models import ACTIVE_STATUSES, ActivityLog, QueueEntry, QueueStatus, User, UserRole

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
ACTIVITY_LIMIT = 20
VISIT_MONTHS = 6


@dataclass
class PatientSummary:
    patient: User
    queue_stats: dict[str, int]
    last_entry: QueueEntry | None = None


@dataclass
class PatientPage:
    patients: list[PatientSummary]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


@dataclass
class PatientDetail:
    patient: User
    entries: list[QueueEntry]
    activities: list[ActivityLog]
    stats: dict[str, int]
    visit_frequency: list[tuple[str, int]] = field(default_factory=list)


@dataclass
class PatientStats:
    total: int
    active: int
    inactive: int
    new_this_month: int
    with_active_entries: int


def get_patient(db: OrmSession, patient_id: int) -> User:
    patient = db.get(User, patient_id)
    if patient is None or patient.role != UserRole.PATIENT:
        raise PatientNotFound(patient_id=patient_id)
    return patient


def _stats_by_patient(db: OrmSession, patient_ids: list[int]) -> dict[int, dict[str, int]]:
    out = {pid: empty_status_counts() for pid in patient_ids}
    if not patient_ids:
        return out
    q = (
        select(QueueEntry.patient_id, QueueEntry.status, func.count(QueueEntry.id))
        .where(QueueEntry.patient_id.in_(patient_ids))
        .group_by(QueueEntry.patient_id, QueueEntry.status)
    )
    for pid, status, n in db.execute(q).all():
        counts = out[pid]
        counts[QueueStatus(status).value] += int(n)
        counts["total"] += int(n)
    return out


def list_patients(db: OrmSession, page: int = 1, limit: int = 20, search: str = "") -> PatientPage:
    page = max(1, page)
    limit = max(1, min(limit, 100))

    filters = [User.role == UserRole.PATIENT]
    search = (search or "").strip()
    if search:
        pattern = f"%{search}%"
        filters.append(or_(User.full_name.ilike(pattern), User.phone_number.ilike(pattern)))

    total = int(db.execute(select(func.count(User.id)).where(*filters)).scalar() or 0)
    rows = db.execute(
        select(User).where(*filters).order_by(User.created_at.desc(), User.id.desc()).limit(limit).offset((page - 1) * limit)
    ).scalars().all()

    stats = _stats_by_patient(db, [p.id for p in rows])
    summaries = []
    for p in rows:
        last = get_patient_entries(db, p.id, limit=1)
        summaries.append(PatientSummary(patient=p, queue_stats=stats[p.id], last_entry=last[0] if last else None))
    return PatientPage(patients=summaries, total=total, page=page, limit=limit)


def _first_of_month(day: date, months_back: int = 0) -> date:
    idx = day.year * 12 + (day.month - 1) - months_back
    return date(idx // 12, idx % 12 + 1, 1)


def _visit_frequency(db: OrmSession, patient_id: int, today: date) -> list[tuple[str, int]]:
    # Completed visits per month, current month included.
    since = _first_of_month(today, VISIT_MONTHS - 1)
    q = select(QueueEntry.appointment_date).where(
        QueueEntry.patient_id == patient_id,
        QueueEntry.status == QueueStatus.COMPLETED,
        QueueEntry.appointment_date >= since,
    )
    months = Counter(d.strftime("%Y-%m") for d in db.execute(q).scalars().all())
    return sorted(months.items())


def get_patient_detail(db: OrmSession, patient_id: int, now: datetime | None = None) -> PatientDetail:
    patient = get_patient(db, patient_id)
    entries = get_patient_entries(db, patient_id, limit=HISTORY_LIMIT)
    activities = db.execute(
        select(ActivityLog)
        .where(ActivityLog.patient_id == patient_id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(ACTIVITY_LIMIT)
    ).scalars().all()
    return PatientDetail(
        patient=patient,
        entries=entries,
        activities=list(activities),
        stats=_stats_by_patient(db, [patient_id])[patient_id],
        visit_frequency=_visit_frequency(db, patient_id, clinic_today(now)),
    )


def set_patient_active(db: OrmSession, patient_id: int, is_active: bool) -> User:
    patient = get_patient(db, patient_id)
    patient.is_active = is_active
    db.commit()
    logger.info("Patient %s %s", patient_id, "activated" if is_active else "deactivated")
    return patient


def patient_stats(db: OrmSession, now: datetime | None = None) -> PatientStats:
    is_patient = User.role == UserRole.PATIENT
    total = int(db.execute(select(func.count(User.id)).where(is_patient)).scalar() or 0)
    active = int(db.execute(select(func.count(User.id)).where(is_patient, User.is_active.is_(True))).scalar() or 0)

    month_start = datetime.combine(_first_of_month(clinic_today(now)), time.min, tzinfo=clinic_zone())
    new_this_month = int(
        db.execute(
            select(func.count(User.id)).where(is_patient, User.created_at >= to_naive_utc(month_start))
        ).scalar()
        or 0
    )
    with_active = int(
        db.execute(
            select(func.count(func.distinct(QueueEntry.patient_id)))
            .select_from(QueueEntry)
            .join(User, User.id == QueueEntry.patient_id)
            .where(is_patient, QueueEntry.status.in_(ACTIVE_STATUSES))
        ).scalar()
        or 0
    )
    return PatientStats(
        total=total,
        active=active,
        inactive=total - active,
        new_this_month=new_this_month,
        with_active_entries=with_active,
    )
