from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator

from sqlalchemy.orm import Session as OrmSession

from .closures import create_closure
from .clock import clinic_today, local_now, now_utc, to_naive_utc, whole_minutes_between
from .config import get_config
from .errors import (
    AlreadyInService,
    EmptyReason,
    EntryNotFound,
    InvalidStatus,
    InvalidTransition,
    NoWaitingEntries,
    PastCancellationDeadline,
)
from .events import EventSink, NullEventSink
from .ledger import (
    get_active_entries_for_date,
    get_entries_for_date,
    get_entry,
    get_next_waiting_entry,
    get_patient_entries,
    get_serving_entry,
    get_waiting_entries,
    status_counts,
)
from .locking import serialized_for_date
from .messaging import format_called, format_emergency_closure
from .models import ActivityType, EmergencyClosure, NotificationType, QueueEntry, QueueStatus, UserRole
from .practice import get_active_configuration

logger = logging.getLogger(__name__)

# Targets an admin may set directly.
ADMIN_TARGETS = (QueueStatus.COMPLETED, QueueStatus.CANCELLED, QueueStatus.NO_SHOW)

ACTIVITY_FOR_STATUS = {
    QueueStatus.IN_SERVICE: (ActivityType.QUEUE_CALLED, "Queue entry called"),
    QueueStatus.COMPLETED: (ActivityType.QUEUE_COMPLETED, "Queue entry completed"),
    QueueStatus.CANCELLED: (ActivityType.QUEUE_CANCELLED, "Queue entry cancelled"),
    QueueStatus.NO_SHOW: (ActivityType.QUEUE_NO_SHOW, "Patient did not show up"),
    QueueStatus.EMERGENCY_CANCELLED: (ActivityType.QUEUE_EMERGENCY_CANCELLED, "Emergency practice closure"),
}


@dataclass(frozen=True)
class Actor:
    id: int
    role: UserRole = UserRole.PATIENT

    @property
    def is_patient(self) -> bool:
        return self.role == UserRole.PATIENT


@dataclass
class CurrentState:
    date: date
    serving: QueueEntry | None
    waiting: list[QueueEntry]

    @property
    def total_waiting(self) -> int:
        return len(self.waiting)


@dataclass
class DateEntries:
    date: date
    entries: list[QueueEntry]
    stats: dict[str, int]


@dataclass
class EmergencyResult:
    closure: EmergencyClosure
    affected: list[QueueEntry] = field(default_factory=list)

    @property
    def affected_count(self) -> int:
        return len(self.affected)


def _stamp(now: datetime | None) -> datetime:
    return to_naive_utc(now or now_utc())


def _emit_transition(
    sink: EventSink,
    entry: QueueEntry,
    previous: QueueStatus | None,
    description: str,
    event_name: str,
    **extra,
) -> None:
    activity_type, title = ACTIVITY_FOR_STATUS[QueueStatus(entry.status)]
    metadata = {
        "queue_number": entry.queue_number,
        "appointment_date": entry.appointment_date,
        "patient_name": entry.patient_name,
        "previous_status": previous,
        "new_status": entry.status,
    }
    metadata.update(extra)
    sink.record_activity(
        activity_type,
        title,
        description,
        patient_id=entry.patient_id,
        entry_id=entry.id,
        metadata=metadata,
    )
    sink.broadcast(
        event_name,
        {
            "entry_id": entry.id,
            "queue_number": entry.queue_number,
            "appointment_date": entry.appointment_date,
            "patient_name": entry.patient_name,
            "status": entry.status,
            "previous_status": previous,
        },
    )


@contextmanager
def _locked_entry(db: OrmSession, entry_id: int) -> Iterator[QueueEntry]:
    """Yield the entry, patient included, re-read under its date's lock."""
    day = get_entry(db, entry_id).appointment_date
    with serialized_for_date(db, day):
        yield get_entry(db, entry_id, refresh=True)


def _finish_service(entry: QueueEntry, stamp: datetime) -> None:
    started = entry.service_started_at or stamp
    entry.service_started_at = started
    entry.service_completed_at = stamp
    entry.actual_service_minutes = max(0, whole_minutes_between(started, stamp))


def call_next(db: OrmSession, day: date, sink: EventSink | None = None, now: datetime | None = None) -> QueueEntry:
    """Move the lowest-numbered waiting entry on ``day`` into service."""
    sink = sink or NullEventSink()
    stamp = _stamp(now)

    with serialized_for_date(db, day):
        current = get_serving_entry(db, day)
        if current is not None:
            raise AlreadyInService(entry_id=current.id, queue_number=current.queue_number)

        nxt = get_next_waiting_entry(db, day)
        if nxt is None:
            raise NoWaitingEntries(appointment_date=day.isoformat())

        nxt.status = QueueStatus.IN_SERVICE
        nxt.service_started_at = stamp
        nxt.last_state_change_at = stamp
        db.commit()

    logger.info("Called queue #%s on %s (entry %s)", nxt.queue_number, day, nxt.id)
    _emit_transition(
        sink,
        nxt,
        QueueStatus.WAITING,
        f"{nxt.patient_name} (number {nxt.queue_number}) was called for service",
        "queue_called",
        called_at=stamp,
    )
    if nxt.patient and nxt.patient.phone_number:
        sink.send_sms(nxt.patient.phone_number, format_called(nxt.queue_number))
    return nxt


def complete(db: OrmSession, entry_id: int, sink: EventSink | None = None, now: datetime | None = None) -> QueueEntry:
    sink = sink or NullEventSink()
    stamp = _stamp(now)

    with _locked_entry(db, entry_id) as entry:
        if entry.status != QueueStatus.IN_SERVICE:
            raise InvalidTransition(
                "Only an entry in service can be completed.",
                entry_id=entry.id,
                status=QueueStatus(entry.status).value,
            )
        entry.status = QueueStatus.COMPLETED
        _finish_service(entry, stamp)
        entry.last_state_change_at = stamp
        db.commit()

    logger.info("Completed queue #%s on %s in %s min", entry.queue_number, entry.appointment_date, entry.actual_service_minutes)
    _emit_transition(
        sink,
        entry,
        QueueStatus.IN_SERVICE,
        f"{entry.patient_name} (number {entry.queue_number}) has been served",
        "queue_completed",
        service_minutes=entry.actual_service_minutes,
        completed_at=stamp,
    )
    return entry


def cancel(
    db: OrmSession,
    entry_id: int,
    actor: Actor,
    sink: EventSink | None = None,
    now: datetime | None = None,
) -> QueueEntry:
    """Cancel a waiting entry.

    A patient may only cancel their own entry, and not on the appointment day
    once operating hours have started.
    """
    sink = sink or NullEventSink()
    stamp = _stamp(now)

    with _locked_entry(db, entry_id) as entry:
        owner = entry.patient_id == actor.id
        if actor.is_patient and not owner:
            raise EntryNotFound(entry_id=entry_id)

        if entry.status != QueueStatus.WAITING:
            raise InvalidTransition(
                "Only a waiting entry can be cancelled.",
                entry_id=entry.id,
                status=QueueStatus(entry.status).value,
            )

        if actor.is_patient and entry.appointment_date == clinic_today(now):
            config = get_active_configuration(db)
            if local_now(now).time() >= config.operating_hours.start_time:
                raise PastCancellationDeadline(
                    entry_id=entry.id,
                    operating_hours_start=config.operating_hours.start,
                )

        entry.status = QueueStatus.CANCELLED
        entry.last_state_change_at = stamp
        db.commit()

    logger.info("Cancelled queue #%s on %s by %s %s", entry.queue_number, entry.appointment_date, actor.role.value, actor.id)
    _emit_transition(
        sink,
        entry,
        QueueStatus.WAITING,
        f"{entry.patient_name} cancelled queue number {entry.queue_number}",
        "queue_updated",
        cancelled_at=stamp,
        cancelled_by=actor.id,
    )
    return entry


def parse_status(value: str | QueueStatus) -> QueueStatus:
    if isinstance(value, QueueStatus):
        return value
    try:
        return QueueStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidStatus(status=value) from None


def set_status(
    db: OrmSession,
    entry_id: int,
    status: str | QueueStatus,
    notes: str | None = None,
    actor_admin_id: int | None = None,
    sink: EventSink | None = None,
    now: datetime | None = None,
) -> QueueEntry:
    """Admin override to completed, cancelled or no_show."""
    sink = sink or NullEventSink()
    target = parse_status(status)
    if target not in ADMIN_TARGETS:
        raise InvalidStatus(
            f"Status '{target.value}' cannot be set directly.",
            status=target.value,
            allowed=[s.value for s in ADMIN_TARGETS],
        )
    stamp = _stamp(now)

    with _locked_entry(db, entry_id) as entry:
        previous = QueueStatus(entry.status)
        if previous.is_terminal:
            raise InvalidTransition(
                f"Entry is already {previous.value}.",
                entry_id=entry.id,
                status=previous.value,
                target=target.value,
            )

        entry.status = target
        if notes:
            entry.notes = notes
        if target == QueueStatus.COMPLETED:
            _finish_service(entry, stamp)
        entry.last_state_change_at = stamp
        db.commit()

    logger.info(
        "Admin %s set queue #%s on %s from %s to %s",
        actor_admin_id,
        entry.queue_number,
        entry.appointment_date,
        previous.value,
        target.value,
    )
    _, title = ACTIVITY_FOR_STATUS[target]
    description = f"{entry.patient_name} (number {entry.queue_number}) - {title.lower()}"
    if notes:
        description += f". Notes: {notes}"
    extra = {"notes": notes, "updated_by": actor_admin_id}
    if target == QueueStatus.COMPLETED:
        extra["service_minutes"] = entry.actual_service_minutes
    _emit_transition(sink, entry, previous, description, "queue_updated", **extra)
    return entry


def update_notes(db: OrmSession, entry_id: int, notes: str | None) -> QueueEntry:
    entry = get_entry(db, entry_id)
    entry.notes = notes
    db.commit()
    return entry


def emergency_cancel_all(
    db: OrmSession,
    day: date,
    reason: str,
    actor_admin_id: int,
    sink: EventSink | None = None,
    now: datetime | None = None,
) -> EmergencyResult:
    """Close ``day`` and move every waiting or in-service entry to emergency_cancelled.

    The closure row and all entry transitions commit together; activity,
    notifications and broadcasts follow afterwards.
    """
    sink = sink or NullEventSink()
    reason = (reason or "").strip()
    if not reason:
        raise EmptyReason()
    stamp = _stamp(now)

    with serialized_for_date(db, day):
        closure = create_closure(db, day, reason, actor_admin_id)
        affected = get_active_entries_for_date(db, day)
        previous = {e.id: QueueStatus(e.status) for e in affected}

        for entry in affected:
            entry.status = QueueStatus.EMERGENCY_CANCELLED
            entry.notes = f"Practice closed due to an emergency: {reason}"
            entry.last_state_change_at = stamp
        closure.affected_count = len(affected)
        db.commit()

    logger.info("Emergency closure %s on %s: %d entries cancelled", closure.id, day, len(affected))

    for entry in affected:
        _emit_transition(
            sink,
            entry,
            previous[entry.id],
            f"Queue entry of {entry.patient_name} (no. {entry.queue_number}) cancelled by emergency closure: {reason}",
            "queue_updated",
            closure_reason=reason,
            emergency_closure_id=closure.id,
        )

    sink.record_activity(
        ActivityType.EMERGENCY_CLOSURE,
        "Admin declared an emergency closure",
        f"Practice closed on {day.isoformat()}: {reason}. {len(affected)} queue entries affected",
        patient_id=actor_admin_id,
        metadata={
            "closure_date": day,
            "reason": reason,
            "affected_count": len(affected),
            "emergency_closure_id": closure.id,
        },
    )

    expires_at = stamp + timedelta(days=get_config().notification_ttl_days)
    for entry in affected:
        sink.enqueue_notification(
            entry.patient_id,
            NotificationType.EMERGENCY_CLOSURE,
            "Practice closed due to an emergency",
            format_emergency_closure(day, reason),
            action_data={
                "emergency_closure_id": closure.id,
                "original_entry_id": entry.id,
                "original_date": day,
                "original_queue_number": entry.queue_number,
            },
            related_id=entry.id,
            expires_at=expires_at,
        )
        sink.broadcast(
            "emergency_closure",
            {
                "patient_id": entry.patient_id,
                "closure_date": day,
                "reason": reason,
                "queue_number": entry.queue_number,
            },
        )
        if entry.patient and entry.patient.phone_number:
            sink.send_sms(entry.patient.phone_number, format_emergency_closure(day, reason))

    try:
        closure.notification_sent = True
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not mark notifications sent for closure %s", closure.id)

    return EmergencyResult(closure=closure, affected=affected)


def current_state(db: OrmSession, day: date) -> CurrentState:
    return CurrentState(date=day, serving=get_serving_entry(db, day), waiting=get_waiting_entries(db, day))


def entries_by_date(db: OrmSession, day: date) -> DateEntries:
    entries = get_entries_for_date(db, day)
    return DateEntries(date=day, entries=entries, stats=status_counts(entries))


def my_entries(db: OrmSession, patient_id: int, limit: int = 20) -> list[QueueEntry]:
    return get_patient_entries(db, patient_id, limit=limit)
