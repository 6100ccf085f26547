from __future__ import annotations

from datetime import date

import pytest

from clinic_queue.allocator import AvailabilityStatus, book_slot, book_slot_for_patient, check_availability
from clinic_queue.closures import create_closure
from clinic_queue.errors import (
    CapacityExceeded,
    ClosureClosed,
    ConfigurationMissing,
    DateInPast,
    DuplicateBooking,
    NonOperatingDay,
    PatientNotFound,
)
from clinic_queue.lifecycle import Actor, cancel
from clinic_queue.models import QueueStatus, UserRole

from conftest import MONDAY, NOW, SATURDAY, SUNDAY, TUESDAY


def test_availability_open_day(db, settings, make_user):
    a = check_availability(db, MONDAY)
    assert a.status == AvailabilityStatus.OPEN
    assert a.max_slots == 30
    assert a.total_booked == 0
    assert a.available_slots == 30
    assert a.operating_hours.as_dict() == {"start": "08:00", "end": "17:00"}
    assert a.day_name == "Monday"

    book_slot(db, MONDAY, make_user().id, now=NOW)
    book_slot(db, MONDAY, make_user().id, now=NOW)

    a = check_availability(db, MONDAY)
    assert a.total_booked == 2
    assert a.available_slots == 28


def test_availability_non_operating_day(db, settings):
    a = check_availability(db, SATURDAY)
    assert a.status == AvailabilityStatus.NON_OPERATING_DAY
    assert not a.is_operating_day
    assert a.available_slots == 0
    assert a.operating_day_names == ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
    assert "Saturday" in a.message


def test_closure_takes_precedence_over_non_operating_day(db, settings, admin):
    create_closure(db, SUNDAY, "flood", admin.id)
    db.commit()

    a = check_availability(db, SUNDAY)
    assert a.status == AvailabilityStatus.CLOSED_EMERGENCY
    assert a.is_emergency_closure
    assert a.available_slots == 0
    assert a.closure is not None
    assert a.closure.reason == "flood"
    assert a.closure.created_by == "Dr. Admin"
    assert a.closure.affected_count == 0


def test_availability_without_configuration(db):
    with pytest.raises(ConfigurationMissing):
        check_availability(db, MONDAY)


def test_closed_date_reported_without_configuration(db, admin):
    create_closure(db, MONDAY, "flood", admin.id)
    db.commit()

    a = check_availability(db, MONDAY)
    assert a.status == AvailabilityStatus.CLOSED_EMERGENCY
    assert a.operating_hours is None
    assert a.max_slots == 0
    assert a.closure.reason == "flood"

    with pytest.raises(ConfigurationMissing):
        check_availability(db, TUESDAY)


def test_first_booking_gets_number_one(db, settings, patient, sink):
    entry = book_slot(db, MONDAY, patient.id, notes="first visit", sink=sink, now=NOW)

    assert entry.queue_number == 1
    assert entry.status == QueueStatus.WAITING
    assert entry.notes == "first visit"
    assert entry.service_started_at is None
    assert entry.actual_service_minutes is None

    assert sink.activity_types() == ["queue_created"]
    meta = sink.activities[0]["metadata"]
    assert meta["queue_number"] == 1
    assert meta["patient_name"] == "Ayu Lestari"
    assert meta["new_status"] == "waiting"
    assert sink.broadcasts[0][0] == "queue_created"
    assert sink.sms and sink.sms[0][0] == patient.phone_number
    assert "#1" in sink.sms[0][1]


def test_numbers_increase_in_booking_order(db, settings, make_user):
    numbers = [book_slot(db, MONDAY, make_user().id, now=NOW).queue_number for _ in range(4)]
    assert numbers == [1, 2, 3, 4]


def test_dates_are_numbered_independently(db, settings, make_user):
    assert book_slot(db, MONDAY, make_user().id, now=NOW).queue_number == 1
    assert book_slot(db, TUESDAY, make_user().id, now=NOW).queue_number == 1
    assert book_slot(db, MONDAY, make_user().id, now=NOW).queue_number == 2


def test_duplicate_booking_rejected(db, settings, patient):
    book_slot(db, MONDAY, patient.id, now=NOW)
    with pytest.raises(DuplicateBooking) as exc:
        book_slot(db, MONDAY, patient.id, now=NOW)
    assert exc.value.kind == "duplicate_booking"


def test_rebooking_after_cancel_takes_a_fresh_number(db, settings, patient, make_user):
    first = book_slot(db, MONDAY, patient.id, now=NOW)
    book_slot(db, MONDAY, make_user().id, now=NOW)
    cancel(db, first.id, Actor(id=patient.id), now=NOW)

    again = book_slot(db, MONDAY, patient.id, now=NOW)
    assert again.queue_number == 3


def test_capacity_exceeded(db, configure, make_user):
    configure(max_slots_per_day=2)
    book_slot(db, MONDAY, make_user().id, now=NOW)
    book_slot(db, MONDAY, make_user().id, now=NOW)

    with pytest.raises(CapacityExceeded) as exc:
        book_slot(db, MONDAY, make_user().id, now=NOW)
    assert exc.value.status_code == 409
    assert exc.value.details["max_slots"] == 2


def test_cancelled_entry_frees_its_slot(db, configure, make_user):
    configure(max_slots_per_day=2)
    a = make_user()
    first = book_slot(db, MONDAY, a.id, now=NOW)
    book_slot(db, MONDAY, make_user().id, now=NOW)
    cancel(db, first.id, Actor(id=a.id), now=NOW)

    third = book_slot(db, MONDAY, make_user().id, now=NOW)
    assert third.queue_number == 3
    assert check_availability(db, MONDAY).available_slots == 0


def test_duplicate_checked_before_capacity(db, configure, make_user):
    configure(max_slots_per_day=1)
    p = make_user()
    book_slot(db, MONDAY, p.id, now=NOW)
    with pytest.raises(DuplicateBooking):
        book_slot(db, MONDAY, p.id, now=NOW)


def test_booking_refused_on_non_operating_day(db, settings, patient):
    with pytest.raises(NonOperatingDay):
        book_slot(db, SATURDAY, patient.id, now=NOW)


def test_booking_refused_on_closed_day(db, settings, patient, admin):
    create_closure(db, MONDAY, "doctor ill", admin.id)
    db.commit()
    with pytest.raises(ClosureClosed) as exc:
        book_slot(db, MONDAY, patient.id, now=NOW)
    assert exc.value.kind == "closed_emergency"


def test_patient_cannot_book_past_date(db, settings, patient):
    with pytest.raises(DateInPast):
        book_slot(db, date(2024, 6, 7), patient.id, now=NOW)


def test_booking_without_configuration(db, patient):
    with pytest.raises(ConfigurationMissing):
        book_slot(db, MONDAY, patient.id, now=NOW)


def test_admin_booking_defaults_notes(db, settings, patient, admin, sink):
    entry = book_slot_for_patient(db, MONDAY, patient.id, None, admin.id, sink=sink)

    assert entry.queue_number == 1
    assert entry.booked_by_id == admin.id
    assert entry.notes == "Booked by admin for Ayu Lestari"
    meta = sink.activities[0]["metadata"]
    assert meta["created_by_admin"] is True
    assert meta["admin_user_id"] == admin.id


def test_admin_booking_keeps_given_notes_and_rules(db, configure, patient, admin, make_user):
    configure(max_slots_per_day=1)
    entry = book_slot_for_patient(db, MONDAY, patient.id, "walk-in", admin.id)
    assert entry.notes == "walk-in"

    with pytest.raises(DuplicateBooking):
        book_slot_for_patient(db, MONDAY, patient.id, None, admin.id)
    with pytest.raises(CapacityExceeded):
        book_slot_for_patient(db, MONDAY, make_user().id, None, admin.id)


def test_admin_booking_unknown_patient(db, settings, admin):
    with pytest.raises(PatientNotFound):
        book_slot_for_patient(db, MONDAY, 9999, None, admin.id)


def test_admin_accounts_cannot_hold_queue_entries(db, settings, admin, make_user):
    other_admin = make_user("Dr. Second", role=UserRole.ADMIN)
    with pytest.raises(PatientNotFound):
        book_slot_for_patient(db, MONDAY, other_admin.id, None, admin.id)
    with pytest.raises(PatientNotFound):
        book_slot(db, MONDAY, admin.id, now=NOW)


def test_admin_may_book_any_date(db, settings, patient, admin):
    entry = book_slot_for_patient(db, date(2024, 6, 7), patient.id, None, admin.id)
    assert entry.queue_number == 1
