from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session as OrmSession

from .clock import parse_hhmm
from .errors import ConfigurationMissing, InvalidSettings
from .models import PracticeSettings

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


@dataclass(frozen=True)
class OperatingHours:
    start: str
    end: str

    @property
    def start_time(self) -> time:
        return parse_hhmm(self.start)

    @property
    def end_time(self) -> time:
        return parse_hhmm(self.end)

    def as_dict(self) -> dict[str, str]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class PracticeConfiguration:
    operating_days: frozenset[int]
    operating_hours: OperatingHours
    max_slots_per_day: int
    cancellation_deadline_minutes: int
    practice_name: str = ""
    doctor_name: str = ""

    @property
    def operating_day_names(self) -> list[str]:
        return [DAY_NAMES[d] for d in sorted(self.operating_days)]

    @classmethod
    def from_row(cls, row: PracticeSettings) -> PracticeConfiguration:
        return cls(
            operating_days=frozenset(int(d) for d in (row.operating_days or [])),
            operating_hours=OperatingHours(start=row.start_time_local, end=row.end_time_local),
            max_slots_per_day=row.max_slots_per_day,
            cancellation_deadline_minutes=row.cancellation_deadline_minutes,
            practice_name=row.practice_name,
            doctor_name=row.doctor_name,
        )


def get_active_settings_row(db: OrmSession) -> PracticeSettings | None:
    q = select(PracticeSettings).where(PracticeSettings.is_active.is_(True)).order_by(PracticeSettings.id.desc())
    return db.execute(q).scalars().first()


def find_active_configuration(db: OrmSession) -> PracticeConfiguration | None:
    row = get_active_settings_row(db)
    return PracticeConfiguration.from_row(row) if row else None


def get_active_configuration(db: OrmSession) -> PracticeConfiguration:
    """Return the active practice configuration or raise ``ConfigurationMissing``."""
    config = find_active_configuration(db)
    if config is None:
        logger.error("No active practice settings row; bookings cannot be evaluated")
        raise ConfigurationMissing()
    return config


def update_settings(db: OrmSession, changes: dict[str, Any]) -> PracticeSettings:
    """Apply ``changes`` to the active settings row, creating it when absent."""
    row = get_active_settings_row(db)
    if row is None:
        row = PracticeSettings(is_active=True)
        db.add(row)

    for key, value in changes.items():
        if value is None or not hasattr(PracticeSettings, key):
            continue
        if key == "operating_days":
            value = sorted({int(d) for d in value})
        setattr(row, key, value)

    start = row.start_time_local or "08:00"
    end = row.end_time_local or "17:00"
    if parse_hhmm(start) >= parse_hhmm(end):
        db.rollback()
        raise InvalidSettings(start_time_local=start, end_time_local=end)

    db.commit()
    logger.info("Practice settings updated: %s", sorted(k for k, v in changes.items() if v is not None))
    return row


def ensure_default_settings(db: OrmSession) -> PracticeSettings:
    row = get_active_settings_row(db)
    if row is not None:
        return row

    row = PracticeSettings(
        doctor_name="Dr. On Duty",
        practice_name="Clinic Queue",
        operating_days=[1, 2, 3, 4, 5],
        start_time_local="08:00",
        end_time_local="17:00",
        max_slots_per_day=30,
        cancellation_deadline_minutes=120,
        is_active=True,
    )
    db.add(row)
    db.commit()
    logger.info("Seeded default practice settings")
    return row
