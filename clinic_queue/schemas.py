from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from .clock import parse_hhmm


Role = Literal["patient", "admin"]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


def _enum_value(v: Any) -> Any:
    return v.value if isinstance(v, enum.Enum) else v


EnumStr = Annotated[str, BeforeValidator(_enum_value)]


class UserCreate(BaseModel):
    full_name: str = Field(min_length=1, max_length=128)
    phone_number: str = Field(default="", max_length=32)
    role: Role = "patient"


class UserOut(ORMModel):
    id: int
    full_name: str
    phone_number: str
    role: EnumStr
    is_active: bool


class QueueEntryOut(ORMModel):
    id: int
    patient_id: int
    patient_name: str = ""
    appointment_date: date
    queue_number: int
    status: EnumStr
    service_started_at: datetime | None = None
    service_completed_at: datetime | None = None
    actual_service_minutes: int | None = None
    notes: str | None = None
    booked_by_id: int | None = None
    created_at: datetime
    last_state_change_at: datetime


class BookRequest(BaseModel):
    appointment_date: date
    notes: str | None = Field(default=None, max_length=500)


class AdminBookRequest(BookRequest):
    patient_id: int


class OperatingHoursOut(BaseModel):
    start: str
    end: str


class ClosureInfoOut(ORMModel):
    id: int
    reason: str
    created_by: str
    created_at: datetime
    affected_count: int


class AvailabilityOut(ORMModel):
    date: date
    status: EnumStr
    is_operating_day: bool
    is_emergency_closure: bool
    max_slots: int
    total_booked: int
    available_slots: int
    operating_hours: OperatingHoursOut | None = None
    operating_days: list[int]
    operating_day_names: list[str]
    day_name: str
    closure: ClosureInfoOut | None = None
    message: str = ""

    @field_validator("operating_hours", mode="before")
    @classmethod
    def _hours(cls, v: Any) -> Any:
        return v.as_dict() if hasattr(v, "as_dict") else v


class CurrentStateOut(ORMModel):
    date: date
    serving: QueueEntryOut | None
    waiting: list[QueueEntryOut]
    total_waiting: int


class EntriesByDateOut(ORMModel):
    date: date
    entries: list[QueueEntryOut]
    stats: dict[str, int]


class SetStatusRequest(BaseModel):
    status: str
    notes: str | None = Field(default=None, max_length=500)


class NotesRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=500)


class EmergencyRequest(BaseModel):
    date: date
    reason: str = Field(default="", max_length=1000)


class ClosureOut(ORMModel):
    id: int
    closure_date: date
    reason: str
    affected_count: int
    notification_sent: bool
    is_active: bool
    created_by: int
    creator_name: str = ""
    created_at: datetime
    deactivated_at: datetime | None = None


class EmergencyOut(BaseModel):
    closure: ClosureOut
    affected_count: int
    affected_entries: list[QueueEntryOut]


class ClosureListOut(BaseModel):
    closures: list[ClosureOut]
    total: int
    page: int
    limit: int
    total_pages: int


class ClosureCheckOut(BaseModel):
    date: date
    is_closed: bool
    closure: ClosureOut | None = None


class DailyCountsOut(BaseModel):
    date: date
    counts: dict[str, int]


class ReportOut(BaseModel):
    start_date: date
    end_date: date
    daily: list[DailyCountsOut]
    totals: dict[str, int]


class SettingsOut(ORMModel):
    id: int
    doctor_name: str
    practice_name: str
    practice_address: str
    practice_phone: str
    operating_days: list[int]
    start_time_local: str
    end_time_local: str
    max_slots_per_day: int
    allow_walk_in: bool
    cancellation_deadline_minutes: int
    is_active: bool
    updated_at: datetime


class SettingsUpdate(BaseModel):
    doctor_name: str | None = Field(default=None, max_length=128)
    practice_name: str | None = Field(default=None, max_length=128)
    practice_address: str | None = None
    practice_phone: str | None = Field(default=None, max_length=32)
    operating_days: list[int] | None = None
    start_time_local: str | None = None
    end_time_local: str | None = None
    max_slots_per_day: int | None = Field(default=None, ge=1, le=500)
    allow_walk_in: bool | None = None
    cancellation_deadline_minutes: int | None = Field(default=None, ge=0)

    @field_validator("operating_days")
    @classmethod
    def _days(cls, v: list[int] | None) -> list[int] | None:
        if v is None:
            return v
        if not v:
            raise ValueError("at least one operating day is required")
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("operating days are 0 (Sunday) to 6 (Saturday)")
        return sorted(set(v))

    @field_validator("start_time_local", "end_time_local")
    @classmethod
    def _hhmm(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            t = parse_hhmm(v)
        except ValueError:
            raise ValueError("time must be HH:MM") from None
        return t.strftime("%H:%M")

    @model_validator(mode="after")
    def _order(self) -> SettingsUpdate:
        if self.start_time_local and self.end_time_local and self.start_time_local >= self.end_time_local:
            raise ValueError("start_time_local must be before end_time_local")
        return self


class NotificationOut(ORMModel):
    id: int
    patient_id: int
    type: str
    title: str
    message: str
    is_read: bool
    action_data: dict[str, Any] | None = None
    related_id: int | None = None
    expires_at: datetime | None = None
    created_at: datetime


class NotificationListOut(BaseModel):
    notifications: list[NotificationOut]
    unread_count: int
    total: int
    page: int
    limit: int
    total_pages: int


class ActivityOut(BaseModel):
    id: int
    type: str
    title: str
    description: str
    patient_id: int | None
    entry_id: int | None
    metadata: dict[str, Any]
    created_at: datetime


class ActivityListOut(BaseModel):
    activities: list[ActivityOut]


class ActivityStatsOut(BaseModel):
    date: date
    total: int
    by_type: dict[str, int]


class PatientOut(ORMModel):
    id: int
    full_name: str
    phone_number: str
    is_active: bool
    created_at: datetime


class PatientSummaryOut(BaseModel):
    patient: PatientOut
    queue_stats: dict[str, int]
    last_entry: QueueEntryOut | None = None


class PatientListOut(BaseModel):
    patients: list[PatientSummaryOut]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool


class VisitMonthOut(BaseModel):
    month: str
    visits: int


class PatientDetailOut(BaseModel):
    patient: PatientOut
    entries: list[QueueEntryOut]
    activities: list[ActivityOut]
    stats: dict[str, int]
    visit_frequency: list[VisitMonthOut]


class PatientStatusRequest(BaseModel):
    is_active: bool


class PatientStatsOut(ORMModel):
    total: int
    active: int
    inactive: int
    new_this_month: int
    with_active_entries: int
