from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class QueueStatus(str, enum.Enum):
    WAITING = "waiting"
    IN_SERVICE = "in_service"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    EMERGENCY_CANCELLED = "emergency_cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        QueueStatus.COMPLETED,
        QueueStatus.CANCELLED,
        QueueStatus.NO_SHOW,
        QueueStatus.EMERGENCY_CANCELLED,
    }
)

ACTIVE_STATUSES = (QueueStatus.WAITING, QueueStatus.IN_SERVICE)


class UserRole(str, enum.Enum):
    PATIENT = "patient"
    ADMIN = "admin"


class ActivityType(str, enum.Enum):
    QUEUE_CREATED = "queue_created"
    QUEUE_CALLED = "queue_called"
    QUEUE_COMPLETED = "queue_completed"
    QUEUE_CANCELLED = "queue_cancelled"
    QUEUE_NO_SHOW = "queue_no_show"
    QUEUE_EMERGENCY_CANCELLED = "queue_emergency_cancelled"
    EMERGENCY_CLOSURE = "emergency_closure"
    SETTINGS_UPDATED = "settings_updated"


class NotificationType(str, enum.Enum):
    EMERGENCY_CLOSURE = "emergency_closure"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(128), default="")
    phone_number: Mapped[str] = mapped_column(String(32), default="", index=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", native_enum=False, values_callable=lambda e: [x.value for x in e]),
        default=UserRole.PATIENT,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    entries: Mapped[list[QueueEntry]] = relationship("QueueEntry", back_populates="patient")


class PracticeSettings(Base):
    __tablename__ = "practice_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_name: Mapped[str] = mapped_column(String(128), default="")
    practice_name: Mapped[str] = mapped_column(String(128), default="")
    practice_address: Mapped[str] = mapped_column(Text, default="")
    practice_phone: Mapped[str] = mapped_column(String(32), default="")

    # 0 = Sunday ... 6 = Saturday
    operating_days: Mapped[list[int]] = mapped_column(JSON, default=lambda: [1, 2, 3, 4, 5])
    start_time_local: Mapped[str] = mapped_column(String(8), default="08:00")
    end_time_local: Mapped[str] = mapped_column(String(8), default="17:00")

    max_slots_per_day: Mapped[int] = mapped_column(Integer, default=30)
    allow_walk_in: Mapped[bool] = mapped_column(Boolean, default=True)
    cancellation_deadline_minutes: Mapped[int] = mapped_column(Integer, default=120)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class QueueEntry(Base):
    __tablename__ = "queue_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    appointment_date: Mapped[date] = mapped_column(Date)
    queue_number: Mapped[int] = mapped_column(Integer)

    status: Mapped[QueueStatus] = mapped_column(
        Enum(
            QueueStatus,
            name="queue_status",
            native_enum=False,
            length=32,
            values_callable=lambda e: [x.value for x in e],
        ),
        default=QueueStatus.WAITING,
    )

    service_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    service_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_service_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    booked_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_state_change_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    patient: Mapped[User] = relationship("User", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("appointment_date", "queue_number", name="uq_queue_date_number"),
        Index("ix_queue_date_status", "appointment_date", "status"),
    )

    @property
    def patient_name(self) -> str:
        return self.patient.full_name if self.patient else ""


class EmergencyClosure(Base):
    __tablename__ = "emergency_closures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    closure_date: Mapped[date] = mapped_column(Date, index=True)
    reason: Mapped[str] = mapped_column(Text)
    affected_count: Mapped[int] = mapped_column(Integer, default=0)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    creator: Mapped[User] = relationship("User")

    @property
    def creator_name(self) -> str:
        return self.creator.full_name if self.creator else ""


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), index=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    patient_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    entry_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(Integer, index=True)
    type: Mapped[str] = mapped_column(String(32), index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    action_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    related_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
