from __future__ import annotations

import enum
import json
import logging
import time
from datetime import date, datetime
from typing import Any, Callable

import httpx
from sqlalchemy.orm import Session as OrmSession

from .messaging import OutboundMessage, send_message
from .models import ActivityLog, Notification

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


class EventSink:
    """Base sink; subclasses override the ``_write_*`` hooks."""

    def record_activity(
        self,
        type: str,
        title: str,
        description: str,
        patient_id: int | None = None,
        entry_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            self._write_activity(
                str(_jsonable(type)), title, description, patient_id, entry_id, _jsonable(metadata or {})
            )
        except Exception:
            logger.exception("Failed to record activity %s for entry %s", type, entry_id)

    def enqueue_notification(
        self,
        patient_id: int,
        type: str,
        title: str,
        message: str,
        action_data: dict[str, Any] | None = None,
        related_id: int | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        try:
            self._write_notification(
                patient_id,
                str(_jsonable(type)),
                title,
                message,
                _jsonable(action_data) if action_data is not None else None,
                related_id,
                expires_at,
            )
        except Exception:
            logger.exception("Failed to enqueue %s notification for patient %s", type, patient_id)

    def broadcast(self, event_name: str, payload: dict[str, Any]) -> None:
        try:
            self._write_broadcast(event_name, _jsonable(payload))
        except Exception:
            logger.exception("Failed to broadcast %s", event_name)

    def send_sms(self, phone: str, text: str) -> None:
        try:
            self._write_sms(phone, text)
        except Exception:
            logger.exception("Failed to send SMS to %s", phone)

    def _write_activity(self, type, title, description, patient_id, entry_id, metadata) -> None:
        pass

    def _write_notification(self, patient_id, type, title, message, action_data, related_id, expires_at) -> None:
        pass

    def _write_broadcast(self, event_name, payload) -> None:
        pass

    def _write_sms(self, phone, text) -> None:
        pass


class NullEventSink(EventSink):
    pass


class DatabaseEventSink(EventSink):
    """Persists activity and notifications in their own sessions.

    ``broadcast_url`` receives broadcast events as JSON POSTs when set.
    """

    def __init__(
        self,
        session_factory: Callable[[], OrmSession],
        broadcast_url: str = "",
        sms_enabled: bool = True,
    ) -> None:
        self.session_factory = session_factory
        self.broadcast_url = broadcast_url
        self.sms_enabled = sms_enabled

    def _write_activity(self, type, title, description, patient_id, entry_id, metadata) -> None:
        db = self.session_factory()
        try:
            db.add(
                ActivityLog(
                    type=type,
                    title=title,
                    description=description,
                    patient_id=patient_id,
                    entry_id=entry_id,
                    metadata_json=metadata,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _write_notification(self, patient_id, type, title, message, action_data, related_id, expires_at) -> None:
        db = self.session_factory()
        try:
            db.add(
                Notification(
                    patient_id=patient_id,
                    type=type,
                    title=title,
                    message=message,
                    action_data=action_data,
                    related_id=related_id,
                    expires_at=expires_at,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _write_broadcast(self, event_name, payload) -> None:
        if not self.broadcast_url:
            logger.debug("Broadcast %s (no transport configured)", event_name)
            return

        body = {"event": event_name, "payload": payload, "ts": int(time.time())}
        with httpx.Client(timeout=5.0) as client:
            resp = client.post(self.broadcast_url, content=json.dumps(body), headers={"Content-Type": "application/json"})
            resp.raise_for_status()
        logger.info("Broadcast emitted: %s", event_name)

    def _write_sms(self, phone, text) -> None:
        if self.sms_enabled:
            send_message(OutboundMessage(phone=phone, text=text))
