from __future__ import annotations

import os
import tempfile
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

# Pin the environment before any clinic_queue module reads its configuration.
os.environ["DATABASE_URL"] = ""
os.environ["SQLITE_PATH"] = str(Path(tempfile.mkdtemp(prefix="clinic_queue_")) / "app.sqlite3")
os.environ["CLINIC_TIMEZONE"] = "Asia/Makassar"
os.environ["LOCK_TIMEOUT_SECONDS"] = "30"
os.environ["BROADCAST_URL"] = ""
os.environ.pop("SMSMODE_API_KEY", None)

import pytest

from clinic_queue.db import make_engine, make_session_local
from clinic_queue.events import EventSink
from clinic_queue.models import Base, User, UserRole
from clinic_queue.practice import ensure_default_settings, update_settings

# 2024-06-10 is a Monday. The clinic runs on Asia/Makassar time (UTC+8).
MONDAY = date(2024, 6, 10)
TUESDAY = date(2024, 6, 11)
SATURDAY = date(2024, 6, 15)
SUNDAY = date(2024, 6, 16)

# Sunday 2024-06-09 10:00 clinic time.
NOW = datetime(2024, 6, 9, 2, 0, tzinfo=timezone.utc)


CLINIC_OFFSET = timedelta(hours=8)


def clinic_time(day: date, hour: int, minute: int = 0) -> datetime:
    """UTC instant for ``hour:minute`` clinic time on ``day``."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc) - CLINIC_OFFSET


class RecordingSink(EventSink):
    def __init__(self) -> None:
        self.activities: list[dict] = []
        self.notifications: list[dict] = []
        self.broadcasts: list[tuple[str, dict]] = []
        self.sms: list[tuple[str, str]] = []

    def _write_activity(self, type, title, description, patient_id, entry_id, metadata) -> None:
        self.activities.append(
            {
                "type": type,
                "title": title,
                "description": description,
                "patient_id": patient_id,
                "entry_id": entry_id,
                "metadata": metadata,
            }
        )

    def _write_notification(self, patient_id, type, title, message, action_data, related_id, expires_at) -> None:
        self.notifications.append(
            {
                "patient_id": patient_id,
                "type": type,
                "title": title,
                "message": message,
                "action_data": action_data,
                "related_id": related_id,
                "expires_at": expires_at,
            }
        )

    def _write_broadcast(self, event_name, payload) -> None:
        self.broadcasts.append((event_name, payload))

    def _write_sms(self, phone, text) -> None:
        self.sms.append((phone, text))

    def activity_types(self) -> list[str]:
        return [a["type"] for a in self.activities]


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(sqlite_path=str(tmp_path / "queue.sqlite3"))
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_local(engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def settings(db):
    """Default practice: Monday to Friday, 08:00-17:00, 30 slots."""
    return ensure_default_settings(db)


@pytest.fixture
def configure(db, settings):
    def _configure(**changes):
        return update_settings(db, changes)

    return _configure


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(name: str | None = None, phone: str | None = None, role: UserRole = UserRole.PATIENT) -> User:
        counter["n"] += 1
        u = User(
            full_name=name or f"Patient {counter['n']}",
            phone_number=phone if phone is not None else f"+6281200000{counter['n']:03d}",
            role=role,
        )
        db.add(u)
        db.commit()
        return u

    return _make


@pytest.fixture
def patient(make_user):
    return make_user("Ayu Lestari")


@pytest.fixture
def admin(make_user):
    return make_user("Dr. Admin", phone="", role=UserRole.ADMIN)
