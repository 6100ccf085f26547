from __future__ import annotations

from datetime import date, timedelta

import pytest

from clinic_queue.allocator import book_slot
from clinic_queue.errors import PatientInactive, PatientNotFound
from clinic_queue.events import DatabaseEventSink
from clinic_queue.lifecycle import call_next, complete
from clinic_queue.patients import (
    _first_of_month,
    get_patient_detail,
    list_patients,
    patient_stats,
    set_patient_active,
)

from conftest import MONDAY, NOW, TUESDAY, clinic_time


def test_list_patients_counts_entries_per_patient(db, settings, admin, make_user):
    ayu = make_user("Ayu Lestari", phone="+628111")
    budi = make_user("Budi Santoso", phone="+628222")
    book_slot(db, MONDAY, ayu.id, now=NOW)
    book_slot(db, TUESDAY, ayu.id, now=NOW)
    book_slot(db, MONDAY, budi.id, now=NOW)
    call_next(db, MONDAY, now=NOW)

    page = list_patients(db)
    assert page.total == 2
    by_name = {s.patient.full_name: s for s in page.patients}
    assert set(by_name) == {"Ayu Lestari", "Budi Santoso"}

    ayu_row = by_name["Ayu Lestari"]
    assert ayu_row.queue_stats["total"] == 2
    assert ayu_row.queue_stats["in_service"] == 1
    assert ayu_row.queue_stats["waiting"] == 1
    assert ayu_row.last_entry.appointment_date == TUESDAY
    assert by_name["Budi Santoso"].queue_stats["waiting"] == 1


def test_list_patients_search_and_pages(db, settings, make_user):
    make_user("Ayu Lestari", phone="+628111")
    make_user("Budi Santoso", phone="+628222")
    make_user("Citra Dewi", phone="+628333")

    assert [s.patient.full_name for s in list_patients(db, search="budi").patients] == ["Budi Santoso"]
    assert list_patients(db, search="8333").patients[0].patient.full_name == "Citra Dewi"
    assert list_patients(db, search="nobody").total == 0

    first = list_patients(db, page=1, limit=2)
    assert first.total_pages == 2
    assert first.has_next and not first.has_prev
    last = list_patients(db, page=2, limit=2)
    assert len(last.patients) == 1
    assert last.has_prev and not last.has_next
    assert last.patients[0].queue_stats["total"] == 0
    assert last.patients[0].last_entry is None


def test_patient_detail(db, settings, patient, session_factory):
    sink = DatabaseEventSink(session_factory, sms_enabled=False)
    entry = book_slot(db, MONDAY, patient.id, sink=sink, now=NOW)
    start = clinic_time(MONDAY, 9, 0)
    call_next(db, MONDAY, sink=sink, now=start)
    complete(db, entry.id, sink=sink, now=start + timedelta(minutes=15))

    d = get_patient_detail(db, patient.id, now=NOW)
    assert d.patient.id == patient.id
    assert [e.id for e in d.entries] == [entry.id]
    assert d.stats["completed"] == 1
    assert d.stats["total"] == 1
    assert "queue_created" in {a.type for a in d.activities}
    assert d.visit_frequency == [("2024-06", 1)]


def test_detail_refuses_admin_and_unknown_ids(db, admin):
    with pytest.raises(PatientNotFound):
        get_patient_detail(db, admin.id)
    with pytest.raises(PatientNotFound):
        get_patient_detail(db, 4242)


def test_deactivated_patient_cannot_book(db, settings, patient):
    out = set_patient_active(db, patient.id, False)
    assert out.is_active is False
    with pytest.raises(PatientInactive):
        book_slot(db, MONDAY, patient.id, now=NOW)

    set_patient_active(db, patient.id, True)
    assert book_slot(db, MONDAY, patient.id, now=NOW).queue_number == 1


def test_set_status_refuses_admin(db, admin):
    with pytest.raises(PatientNotFound):
        set_patient_active(db, admin.id, False)


def test_patient_stats(db, settings, patient, admin, make_user):
    dormant = make_user("Dormant Patient")
    set_patient_active(db, dormant.id, False)
    book_slot(db, MONDAY, patient.id, now=NOW)

    stats = patient_stats(db)
    assert stats.total == 2
    assert stats.active == 1
    assert stats.inactive == 1
    assert stats.new_this_month == 2
    assert stats.with_active_entries == 1


def test_first_of_month_crosses_years():
    assert _first_of_month(date(2024, 6, 10)) == date(2024, 6, 1)
    assert _first_of_month(date(2024, 3, 31), 5) == date(2023, 10, 1)
