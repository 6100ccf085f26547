
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as OrmSession

from .closures import get_active_closure
from .clock import clinic_today, weekday_sunday_first
from .config import get_config
from .errors import (
    CapacityExceeded,
    ClosureClosed,
    ConfigurationMissing,
    Contention,
    DateInPast,
    DuplicateBooking,
    NonOperatingDay,
    PatientInactive,
    PatientNotFound,
)
from .events import EventSink, NullEventSink
from .ledger import count_booked, count_with_status, find_patient_booking, next_queue_number
from .locking import serialized_for_date
from .messaging import format_booking_confirmation
from .models import ActivityType, QueueEntry, QueueStatus, User, UserRole
from .practice import (
    DAY_NAMES,
    OperatingHours,
    PracticeConfiguration,
    find_active_configuration,
    get_active_configuration,
)

logger = logging.getLogger(__name__)


class AvailabilityStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED_EMERGENCY = "closed_emergency"
    NON_OPERATING_DAY = "non_operating_day"


@dataclass
class ClosureInfo:
    id: int
    reason: str
    created_by: str
    created_at: datetime
    affected_count: int


@dataclass
class Availability:
    date: date
    status: AvailabilityStatus
    total_booked: int
    available_slots: int
    max_slots: int = 0
    operating_hours: OperatingHours | None = None
    operating_days: list[int] = field(default_factory=list)
    operating_day_names: list[str] = field(default_factory=list)
    day_name: str = ""
    closure: ClosureInfo | None = None
    message: str = ""

    @property
    def is_operating_day(self) -> bool:
        return self.status != AvailabilityStatus.NON_OPERATING_DAY

    @property
    def is_emergency_closure(self) -> bool:
        return self.status == AvailabilityStatus.CLOSED_EMERGENCY


def _evaluate(db: OrmSession, day: date, config: PracticeConfiguration | None) -> Availability:
    day_name = DAY_NAMES[weekday_sunday_first(day)]
    base: dict[str, Any] = dict(date=day, day_name=day_name)
    if config is not None:
        base.update(
            max_slots=config.max_slots_per_day,
            operating_hours=config.operating_hours,
            operating_days=sorted(config.operating_days),
            operating_day_names=config.operating_day_names,
        )

    # an active closure wins even when no practice settings exist
    closure = get_active_closure(db, day)
    if closure is not None:
        affected = count_with_status(db, day, QueueStatus.EMERGENCY_CANCELLED)
        return Availability(
            status=AvailabilityStatus.CLOSED_EMERGENCY,
            total_booked=affected,
            available_slots=0,
            closure=ClosureInfo(
                id=closure.id,
                reason=closure.reason,
                created_by=closure.creator_name,
                created_at=closure.created_at,
                affected_count=affected,
            ),
            message=f"The practice is closed due to an emergency: {closure.reason}",
            **base,
        )

    if config is None:
        logger.error("No active practice settings row; availability for %s cannot be evaluated", day)
        raise ConfigurationMissing()

    if weekday_sunday_first(day) not in config.operating_days:
        return Availability(
            status=AvailabilityStatus.NON_OPERATING_DAY,
            total_booked=0,
            available_slots=0,
            message=(
                f"The practice does not operate on {day_name}. "
                f"Operating days: {', '.join(config.operating_day_names)}"
            ),
            **base,
        )

    total_booked = count_booked(db, day)
    return Availability(
        status=AvailabilityStatus.OPEN,
        total_booked=total_booked,
        available_slots=max(0, config.max_slots_per_day - total_booked),
        **base,
    )


def check_availability(db: OrmSession, day: date) -> Availability:
    return _evaluate(db, day, find_active_configuration(db))


def _admit(db: OrmSession, day: date, patient_id: int) -> tuple[User, PracticeConfiguration]:
    patient = db.get(User, patient_id)
    if patient is None or patient.role != UserRole.PATIENT:
        raise PatientNotFound(patient_id=patient_id)
    if not patient.is_active:
        raise PatientInactive(patient_id=patient_id)

    if find_patient_booking(db, patient_id, day) is not None:
        raise DuplicateBooking(patient_id=patient_id, appointment_date=day.isoformat())

    config = get_active_configuration(db)

    availability = _evaluate(db, day, config)
    if availability.status == AvailabilityStatus.CLOSED_EMERGENCY:
        raise ClosureClosed(availability.message, appointment_date=day.isoformat())
    if availability.status == AvailabilityStatus.NON_OPERATING_DAY:
        raise NonOperatingDay(availability.message, appointment_date=day.isoformat())
    if availability.total_booked >= config.max_slots_per_day:
        raise CapacityExceeded(
            appointment_date=day.isoformat(),
            max_slots=config.max_slots_per_day,
            total_booked=availability.total_booked,
        )
    return patient, config


def _allocate(
    db: OrmSession,
    day: date,
    patient_id: int,
    notes: str | None,
    booked_by_id: int | None,
    default_notes: bool = False,
) -> tuple[QueueEntry, User, PracticeConfiguration]:
    cfg = get_config()
    attempts = 0
    while True:
        attempts += 1
        try:
            with serialized_for_date(db, day):
                patient, config = _admit(db, day, patient_id)
                if default_notes and not notes:
                    notes = f"Booked by admin for {patient.full_name}"

                entry = QueueEntry(
                    patient_id=patient_id,
                    appointment_date=day,
                    queue_number=next_queue_number(db, day),
                    status=QueueStatus.WAITING,
                    notes=notes,
                    booked_by_id=booked_by_id,
                )
                db.add(entry)
                db.flush()
                db.commit()
                return entry, patient, config
        except IntegrityError:
            if attempts > cfg.allocation_retries:
                logger.warning("Queue number allocation for %s failed after %d attempts", day, attempts)
                raise Contention(appointment_date=day.isoformat())
            logger.warning("Queue number collision on %s, retrying (attempt %d)", day, attempts)


def _emit_created(
    sink: EventSink,
    entry: QueueEntry,
    patient: User,
    config: PracticeConfiguration,
    acting_admin_id: int | None,
) -> None:
    metadata = {
        "queue_number": entry.queue_number,
        "appointment_date": entry.appointment_date,
        "patient_name": patient.full_name,
        "previous_status": None,
        "new_status": QueueStatus.WAITING,
    }
    if acting_admin_id is not None:
        title = "Queue entry booked by admin"
        description = f"Admin booked queue number {entry.queue_number} for {patient.full_name}"
        metadata.update(created_by_admin=True, admin_user_id=acting_admin_id)
    else:
        title = "New queue entry"
        description = f"{patient.full_name} booked queue number {entry.queue_number}"

    sink.record_activity(
        ActivityType.QUEUE_CREATED,
        title,
        description,
        patient_id=entry.patient_id,
        entry_id=entry.id,
        metadata=metadata,
    )
    sink.broadcast(
        "queue_created",
        {
            "entry_id": entry.id,
            "queue_number": entry.queue_number,
            "appointment_date": entry.appointment_date,
            "patient_name": patient.full_name,
        },
    )
    if patient.phone_number:
        hours = config.operating_hours
        sink.send_sms(
            patient.phone_number,
            format_booking_confirmation(entry.queue_number, entry.appointment_date, hours.start, hours.end),
        )


def book_slot(
    db: OrmSession,
    day: date,
    patient_id: int,
    notes: str | None = None,
    sink: EventSink | None = None,
    now: datetime | None = None,
) -> QueueEntry:
    """Book the next queue number on ``day`` for a patient acting for themselves."""
    sink = sink or NullEventSink()
    if day < clinic_today(now):
        raise DateInPast(appointment_date=day.isoformat())

    entry, patient, config = _allocate(db, day, patient_id, notes, booked_by_id=None)
    logger.info("Booked queue #%s on %s for patient %s", entry.queue_number, day, patient_id)
    _emit_created(sink, entry, patient, config, acting_admin_id=None)
    return entry


def book_slot_for_patient(
    db: OrmSession,
    day: date,
    patient_id: int,
    notes: str | None,
    acting_admin_id: int,
    sink: EventSink | None = None,
) -> QueueEntry:
    """Admin booking on behalf of a patient; same rules as ``book_slot`` minus the past-date check."""
    sink = sink or NullEventSink()
    entry, patient, config = _allocate(db, day, patient_id, notes, booked_by_id=acting_admin_id, default_notes=True)
    logger.info(
        "Admin %s booked queue #%s on %s for patient %s", acting_admin_id, entry.queue_number, day, patient_id
    )
    _emit_created(sink, entry, patient, config, acting_admin_id=acting_admin_id)
    return entry
