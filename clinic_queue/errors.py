from __future__ import annotations

from typing import Any


class QueueError(Exception):
    kind = "queue_error"
    status_code = 400
    retryable = False
    default_message = "The queue operation could not be completed."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class DuplicateBooking(QueueError):
    kind = "duplicate_booking"
    status_code = 409
    default_message = "The patient already has a queue entry on that date."


class ConfigurationMissing(QueueError):
    kind = "configuration_missing"
    status_code = 500
    default_message = "Practice settings have not been configured."


class CapacityExceeded(QueueError):
    kind = "capacity_exceeded"
    status_code = 409
    default_message = "All queue slots for that date are taken."


class ClosureClosed(QueueError):
    kind = "closed_emergency"
    status_code = 409
    default_message = "The practice is closed on that date due to an emergency."


class NonOperatingDay(QueueError):
    kind = "non_operating_day"
    status_code = 409
    default_message = "The practice does not operate on that day."


class InvalidTransition(QueueError):
    kind = "invalid_transition"
    status_code = 409
    default_message = "The queue entry cannot move to that status from its current status."


class InvalidStatus(QueueError):
    kind = "invalid_status"
    status_code = 400
    default_message = "Unrecognised queue status."


class AlreadyInService(QueueError):
    kind = "already_in_service"
    status_code = 409
    default_message = "A patient is still being served."


class NoWaitingEntries(QueueError):
    kind = "no_waiting_entries"
    status_code = 404
    default_message = "No patients are waiting."


class PastCancellationDeadline(QueueError):
    kind = "past_cancellation_deadline"
    status_code = 400
    default_message = "Same-day entries cannot be cancelled after practice hours have started."


class ClosureAlreadyActive(QueueError):
    kind = "closure_already_active"
    status_code = 409
    default_message = "An emergency closure is already active for that date."


class EmptyReason(QueueError):
    kind = "empty_reason"
    status_code = 400
    default_message = "A closure reason is required."


class InvalidRange(QueueError):
    kind = "invalid_range"
    status_code = 400
    default_message = "The start date must not be after the end date."


class RangeTooLarge(QueueError):
    kind = "range_too_large"
    status_code = 400
    default_message = "Reports cover at most 31 days."


class EntryNotFound(QueueError):
    kind = "entry_not_found"
    status_code = 404
    default_message = "Queue entry not found."


class PatientNotFound(QueueError):
    kind = "patient_not_found"
    status_code = 404
    default_message = "Patient not found."


class ClosureNotFound(QueueError):
    kind = "closure_not_found"
    status_code = 404
    default_message = "Emergency closure not found."


class NotificationNotFound(QueueError):
    kind = "notification_not_found"
    status_code = 404
    default_message = "Notification not found."


class Contention(QueueError):
    kind = "contention"
    status_code = 503
    retryable = True
    default_message = "The queue is busy. Please try again."


class DateInPast(QueueError):
    kind = "date_in_past"
    status_code = 400
    default_message = "Appointments cannot be booked for a past date."


class InvalidSettings(QueueError):
    kind = "invalid_settings"
    status_code = 400
    default_message = "Operating hours must start before they end."


class PatientInactive(QueueError):
    kind = "patient_inactive"
    status_code = 403
    default_message = "This patient account has been deactivated."
