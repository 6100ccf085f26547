from __future__ import annotations

from datetime import date, datetime

import httpx
from sqlalchemy import select

from clinic_queue.allocator import book_slot
from clinic_queue.events import DatabaseEventSink, EventSink, NullEventSink
from clinic_queue.ledger import get_entry
from clinic_queue.lifecycle import call_next, emergency_cancel_all
from clinic_queue.messaging import OutboundMessage, send_message
from clinic_queue.models import ActivityLog, Notification, QueueStatus

from conftest import MONDAY, NOW, TUESDAY


class ExplodingSink(EventSink):
    def _write_activity(self, *args) -> None:
        raise RuntimeError("activity store down")

    def _write_notification(self, *args) -> None:
        raise RuntimeError("notification store down")

    def _write_broadcast(self, *args) -> None:
        raise RuntimeError("socket down")

    def _write_sms(self, *args) -> None:
        raise RuntimeError("sms down")


def test_sink_failures_do_not_undo_transitions(db, settings, patient, admin, caplog):
    sink = ExplodingSink()

    entry = book_slot(db, MONDAY, patient.id, sink=sink, now=NOW)
    called = call_next(db, MONDAY, sink=sink, now=NOW)
    res = emergency_cancel_all(db, TUESDAY, "doctor ill", admin.id, sink=sink, now=NOW)

    assert entry.queue_number == 1
    assert get_entry(db, called.id, refresh=True).status == QueueStatus.IN_SERVICE
    assert res.closure.id is not None
    assert "Failed to record activity" in caplog.text


def test_null_sink_accepts_everything():
    sink = NullEventSink()
    sink.record_activity("queue_created", "t", "d", metadata={"when": date(2024, 6, 10)})
    sink.enqueue_notification(1, "emergency_closure", "t", "m")
    sink.broadcast("queue_created", {"status": QueueStatus.WAITING})
    sink.send_sms("+62", "hi")


def test_database_sink_persists_activity_and_notifications(db, settings, patient, admin, session_factory):
    sink = DatabaseEventSink(session_factory, sms_enabled=False)

    book_slot(db, TUESDAY, patient.id, sink=sink, now=NOW)
    emergency_cancel_all(db, TUESDAY, "doctor ill", admin.id, sink=sink, now=NOW)

    s = session_factory()
    try:
        types = s.execute(select(ActivityLog.type).order_by(ActivityLog.id)).scalars().all()
        assert types == ["queue_created", "queue_emergency_cancelled", "emergency_closure"]

        created = s.execute(select(ActivityLog).order_by(ActivityLog.id)).scalars().first()
        assert created.metadata_json["appointment_date"] == "2024-06-11"
        assert created.metadata_json["new_status"] == "waiting"

        notes = s.execute(select(Notification)).scalars().all()
        assert len(notes) == 1
        assert notes[0].patient_id == patient.id
        assert notes[0].type == "emergency_closure"
        assert notes[0].is_read is False
        assert notes[0].action_data["original_date"] == "2024-06-11"
        assert notes[0].expires_at > datetime(2024, 6, 15)
    finally:
        s.close()


def test_broadcast_posts_json(monkeypatch, session_factory):
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(200)

    real_client = httpx.Client
    monkeypatch.setattr(
        "clinic_queue.events.httpx.Client",
        lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw),
    )

    sink = DatabaseEventSink(session_factory, broadcast_url="http://realtime.local/emit")
    sink.broadcast("queue_called", {"queue_number": 3, "appointment_date": MONDAY})

    assert len(sent) == 1
    body = sent[0].read().decode()
    assert '"event": "queue_called"' in body
    assert '"appointment_date": "2024-06-10"' in body


def test_broadcast_failure_is_swallowed(monkeypatch, session_factory, caplog):
    real_client = httpx.Client
    monkeypatch.setattr(
        "clinic_queue.events.httpx.Client",
        lambda **kw: real_client(transport=httpx.MockTransport(lambda r: httpx.Response(500)), **kw),
    )

    sink = DatabaseEventSink(session_factory, broadcast_url="http://realtime.local/emit")
    sink.broadcast("queue_called", {"queue_number": 3})

    assert "Failed to broadcast queue_called" in caplog.text


def test_send_message_without_api_key(monkeypatch):
    monkeypatch.delenv("SMSMODE_API_KEY", raising=False)
    assert send_message(OutboundMessage(phone="+628123", text="hello")) is False


def test_send_message_posts_to_smsmode(monkeypatch):
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(201, json={"messageId": "abc"})

    real_client = httpx.Client
    monkeypatch.setenv("SMSMODE_API_KEY", "key-123")
    monkeypatch.setenv("SMSMODE_BASE_URL", "https://sms.example")
    monkeypatch.setattr(
        "clinic_queue.messaging.httpx.Client",
        lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw),
    )

    assert send_message(OutboundMessage(phone="+628123", text="Queue #4")) is True
    assert str(sent[0].url) == "https://sms.example/sms/v1/messages"
    assert sent[0].headers["X-Api-Key"] == "key-123"
