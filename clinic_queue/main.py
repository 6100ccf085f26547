from __future__ import annotations

import logging
from datetime import date, datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session as OrmSession

from .activity import activity_stats, recent_activities
from .allocator import book_slot, book_slot_for_patient, check_availability
from .closures import deactivate_closure, get_active_closure, list_closures
from .clock import clinic_today
from .config import get_config
from .db import make_engine, make_session_local
from .errors import ConfigurationMissing, QueueError
from .events import DatabaseEventSink, EventSink
from .lifecycle import (
    Actor,
    call_next,
    cancel,
    complete,
    current_state,
    emergency_cancel_all,
    entries_by_date,
    my_entries,
    set_status,
    update_notes,
)
from .models import ActivityLog, ActivityType, Base, EmergencyClosure, User, UserRole
from .notifications import list_notifications, mark_all_read, mark_read
from .patients import PatientSummary, get_patient_detail, list_patients, patient_stats, set_patient_active
from .practice import ensure_default_settings, get_active_settings_row, update_settings
from .reports import build_report
from .schemas import (
    ActivityListOut,
    ActivityOut,
    ActivityStatsOut,
    AdminBookRequest,
    AvailabilityOut,
    BookRequest,
    ClosureCheckOut,
    ClosureListOut,
    ClosureOut,
    CurrentStateOut,
    DailyCountsOut,
    EmergencyOut,
    EmergencyRequest,
    EntriesByDateOut,
    NotesRequest,
    NotificationListOut,
    NotificationOut,
    PatientDetailOut,
    PatientListOut,
    PatientOut,
    PatientStatsOut,
    PatientStatusRequest,
    PatientSummaryOut,
    QueueEntryOut,
    ReportOut,
    Role,
    SetStatusRequest,
    SettingsOut,
    SettingsUpdate,
    UserCreate,
    UserOut,
    VisitMonthOut,
)


CONFIG = get_config()

logging.basicConfig(level=CONFIG.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Queue Booking Engine", version="0.1")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


ENGINE = make_engine(CONFIG)
SessionLocal = make_session_local(ENGINE)
Base.metadata.create_all(bind=ENGINE)

with SessionLocal() as _seed_db:
    ensure_default_settings(_seed_db)


GENERIC_FAULT_MESSAGE = "The service is temporarily unavailable. Please contact the clinic."


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError):
    body = exc.to_dict()
    if isinstance(exc, ConfigurationMissing):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        body["message"] = GENERIC_FAULT_MESSAGE
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "kind": "internal_error", "message": GENERIC_FAULT_MESSAGE, "retryable": False},
    )


def db_dep():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def sink_dep() -> EventSink:
    return DatabaseEventSink(SessionLocal, broadcast_url=CONFIG.broadcast_url)


def now_dep() -> datetime | None:
    # None lets the engine read the wall clock.
    return None


def actor_dep(
    x_actor_id: int | None = Header(default=None),
    x_actor_role: Role = Header(default="patient"),
) -> Actor:
    if x_actor_id is None:
        raise HTTPException(status_code=401, detail="X-Actor-Id header is required")
    return Actor(id=x_actor_id, role=UserRole(x_actor_role))


def admin_dep(actor: Actor = Depends(actor_dep)) -> Actor:
    if actor.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


def _same_patient(actor: Actor, patient_id: int) -> None:
    if actor.is_patient and actor.id != patient_id:
        raise HTTPException(status_code=403, detail="Patients may only access their own records")


def _day_or_today(day: date | None, now: datetime | None) -> date:
    return day or clinic_today(now)


def _entry_out(entry) -> QueueEntryOut:
    return QueueEntryOut.model_validate(entry)


def _closure_out(closure: EmergencyClosure) -> ClosureOut:
    return ClosureOut.model_validate(closure)


def _activity_out(a: ActivityLog) -> ActivityOut:
    return ActivityOut(
        id=a.id,
        type=a.type,
        title=a.title,
        description=a.description or "",
        patient_id=a.patient_id,
        entry_id=a.entry_id,
        metadata=a.metadata_json or {},
        created_at=a.created_at,
    )


@app.get("/api/health")
def health():
    return {"ok": True}


@app.post("/api/users", response_model=UserOut)
def create_user(body: UserCreate, db: OrmSession = Depends(db_dep)):
    u = User(full_name=body.full_name.strip(), phone_number=body.phone_number.strip(), role=UserRole(body.role))
    db.add(u)
    db.commit()
    db.refresh(u)
    return UserOut.model_validate(u)


@app.get("/api/users/{user_id}", response_model=UserOut)
def get_user(user_id: int, db: OrmSession = Depends(db_dep)):
    u = db.get(User, user_id)
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    return UserOut.model_validate(u)


@app.get("/api/queue/availability", response_model=AvailabilityOut)
def availability(day: date = Query(alias="date"), db: OrmSession = Depends(db_dep)):
    return AvailabilityOut.model_validate(check_availability(db, day))


@app.post("/api/queue/book", response_model=QueueEntryOut)
def book(
    body: BookRequest,
    actor: Actor = Depends(actor_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
    now: datetime | None = Depends(now_dep),
):
    if not actor.is_patient:
        raise HTTPException(status_code=403, detail="Admins book through /api/admin/queue/book")
    entry = book_slot(db, body.appointment_date, actor.id, notes=body.notes, sink=sink, now=now)
    return _entry_out(entry)


@app.post("/api/admin/queue/book", response_model=QueueEntryOut)
def book_for_patient(
    body: AdminBookRequest,
    admin: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
):
    entry = book_slot_for_patient(db, body.appointment_date, body.patient_id, body.notes, admin.id, sink=sink)
    return _entry_out(entry)


@app.get("/api/queue/mine", response_model=list[QueueEntryOut])
def mine(limit: int = Query(default=20, ge=1, le=100), actor: Actor = Depends(actor_dep), db: OrmSession = Depends(db_dep)):
    return [_entry_out(e) for e in my_entries(db, actor.id, limit=limit)]


@app.get("/api/queue/current", response_model=CurrentStateOut)
def queue_current(
    day: date | None = Query(default=None, alias="date"),
    db: OrmSession = Depends(db_dep),
    now: datetime | None = Depends(now_dep),
):
    return CurrentStateOut.model_validate(current_state(db, _day_or_today(day, now)))


@app.post("/api/queue/call-next", response_model=QueueEntryOut)
def queue_call_next(
    day: date | None = Query(default=None, alias="date"),
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
    now: datetime | None = Depends(now_dep),
):
    return _entry_out(call_next(db, _day_or_today(day, now), sink=sink, now=now))


@app.post("/api/queue/{entry_id}/complete", response_model=QueueEntryOut)
def queue_complete(
    entry_id: int,
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
    now: datetime | None = Depends(now_dep),
):
    return _entry_out(complete(db, entry_id, sink=sink, now=now))


@app.patch("/api/queue/{entry_id}/cancel", response_model=QueueEntryOut)
def queue_cancel(
    entry_id: int,
    actor: Actor = Depends(actor_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
    now: datetime | None = Depends(now_dep),
):
    return _entry_out(cancel(db, entry_id, actor, sink=sink, now=now))


@app.patch("/api/queue/{entry_id}/status", response_model=QueueEntryOut)
def queue_set_status(
    entry_id: int,
    body: SetStatusRequest,
    admin: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
    now: datetime | None = Depends(now_dep),
):
    entry = set_status(db, entry_id, body.status, notes=body.notes, actor_admin_id=admin.id, sink=sink, now=now)
    return _entry_out(entry)


@app.patch("/api/queue/{entry_id}/notes", response_model=QueueEntryOut)
def queue_notes(entry_id: int, body: NotesRequest, _: Actor = Depends(admin_dep), db: OrmSession = Depends(db_dep)):
    return _entry_out(update_notes(db, entry_id, body.notes))


@app.get("/api/queue/by-date", response_model=EntriesByDateOut)
def queue_by_date(
    day: date | None = Query(default=None, alias="date"),
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    now: datetime | None = Depends(now_dep),
):
    return EntriesByDateOut.model_validate(entries_by_date(db, _day_or_today(day, now)))


@app.post("/api/emergency/cancel-all", response_model=EmergencyOut)
def emergency(
    body: EmergencyRequest,
    admin: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
    now: datetime | None = Depends(now_dep),
):
    res = emergency_cancel_all(db, body.date, body.reason, admin.id, sink=sink, now=now)
    return EmergencyOut(
        closure=_closure_out(res.closure),
        affected_count=res.affected_count,
        affected_entries=[_entry_out(e) for e in res.affected],
    )


@app.get("/api/emergency/closures", response_model=ClosureListOut)
def emergency_closures(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    is_active: bool | None = None,
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
):
    p = list_closures(db, page=page, limit=limit, is_active=is_active)
    return ClosureListOut(
        closures=[_closure_out(c) for c in p.closures],
        total=p.total,
        page=p.page,
        limit=p.limit,
        total_pages=p.total_pages,
    )


@app.get("/api/emergency/check", response_model=ClosureCheckOut)
def emergency_check(day: date = Query(alias="date"), db: OrmSession = Depends(db_dep)):
    closure = get_active_closure(db, day)
    return ClosureCheckOut(date=day, is_closed=closure is not None, closure=_closure_out(closure) if closure else None)


@app.patch("/api/emergency/closures/{closure_id}/deactivate", response_model=ClosureOut)
def emergency_deactivate(
    closure_id: int,
    admin: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
):
    return _closure_out(deactivate_closure(db, closure_id, actor_id=admin.id, sink=sink))


@app.get("/api/reports/range", response_model=ReportOut)
def report_range(
    start_date: date,
    end_date: date,
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
):
    r = build_report(db, start_date, end_date)
    return ReportOut(
        start_date=r.start_date,
        end_date=r.end_date,
        daily=[DailyCountsOut(date=d, counts=c) for d, c in sorted(r.daily.items())],
        totals=r.totals,
    )


@app.get("/api/settings", response_model=SettingsOut)
def settings_get(db: OrmSession = Depends(db_dep)):
    row = get_active_settings_row(db)
    if row is None:
        raise ConfigurationMissing()
    return SettingsOut.model_validate(row)


@app.put("/api/settings", response_model=SettingsOut)
def settings_put(
    body: SettingsUpdate,
    admin: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    sink: EventSink = Depends(sink_dep),
):
    changes = body.model_dump(exclude_none=True)
    row = update_settings(db, changes)
    sink.record_activity(
        ActivityType.SETTINGS_UPDATED,
        "Practice settings updated",
        f"Updated: {', '.join(sorted(changes)) or 'nothing'}",
        patient_id=admin.id,
        metadata={"changes": changes, "updated_by": admin.id},
    )
    return SettingsOut.model_validate(row)


@app.get("/api/notifications/{patient_id}", response_model=NotificationListOut)
def notifications_list(
    patient_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    unread_only: bool = False,
    actor: Actor = Depends(actor_dep),
    db: OrmSession = Depends(db_dep),
):
    _same_patient(actor, patient_id)
    p = list_notifications(db, patient_id, page=page, limit=limit, unread_only=unread_only)
    return NotificationListOut(
        notifications=[NotificationOut.model_validate(n) for n in p.notifications],
        unread_count=p.unread_count,
        total=p.total,
        page=p.page,
        limit=p.limit,
        total_pages=p.total_pages,
    )


@app.patch("/api/notifications/{notification_id}/read", response_model=NotificationOut)
def notifications_mark_read(notification_id: int, actor: Actor = Depends(actor_dep), db: OrmSession = Depends(db_dep)):
    owner = actor.id if actor.is_patient else None
    return NotificationOut.model_validate(mark_read(db, notification_id, patient_id=owner))


@app.patch("/api/notifications/{patient_id}/read-all")
def notifications_mark_all_read(patient_id: int, actor: Actor = Depends(actor_dep), db: OrmSession = Depends(db_dep)):
    _same_patient(actor, patient_id)
    return {"ok": True, "updated": mark_all_read(db, patient_id)}


@app.get("/api/activities", response_model=ActivityListOut)
def activities(
    limit: int = Query(default=20, ge=1, le=200),
    type: str | None = None,
    day: date | None = Query(default=None, alias="date"),
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
):
    return ActivityListOut(activities=[_activity_out(a) for a in recent_activities(db, limit=limit, type=type, day=day)])


@app.get("/api/activities/stats", response_model=ActivityStatsOut)
def activities_stats(
    day: date | None = Query(default=None, alias="date"),
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    now: datetime | None = Depends(now_dep),
):
    target = _day_or_today(day, now)
    counts = activity_stats(db, target)
    return ActivityStatsOut(date=target, total=sum(counts.values()), by_type=counts)


def _patient_summary_out(s: PatientSummary) -> PatientSummaryOut:
    return PatientSummaryOut(
        patient=PatientOut.model_validate(s.patient),
        queue_stats=s.queue_stats,
        last_entry=_entry_out(s.last_entry) if s.last_entry else None,
    )


@app.get("/api/admin/patients", response_model=PatientListOut)
def patients_list(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: str = "",
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
):
    p = list_patients(db, page=page, limit=limit, search=search)
    return PatientListOut(
        patients=[_patient_summary_out(s) for s in p.patients],
        total=p.total,
        page=p.page,
        limit=p.limit,
        total_pages=p.total_pages,
        has_next=p.has_next,
        has_prev=p.has_prev,
    )


@app.get("/api/admin/patients/stats", response_model=PatientStatsOut)
def patients_stats(
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    now: datetime | None = Depends(now_dep),
):
    return PatientStatsOut.model_validate(patient_stats(db, now=now))


@app.get("/api/admin/patients/{patient_id}", response_model=PatientDetailOut)
def patients_detail(
    patient_id: int,
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
    now: datetime | None = Depends(now_dep),
):
    d = get_patient_detail(db, patient_id, now=now)
    return PatientDetailOut(
        patient=PatientOut.model_validate(d.patient),
        entries=[_entry_out(e) for e in d.entries],
        activities=[_activity_out(a) for a in d.activities],
        stats=d.stats,
        visit_frequency=[VisitMonthOut(month=m, visits=n) for m, n in d.visit_frequency],
    )


@app.put("/api/admin/patients/{patient_id}/status", response_model=PatientOut)
def patients_set_status(
    patient_id: int,
    body: PatientStatusRequest,
    _: Actor = Depends(admin_dep),
    db: OrmSession = Depends(db_dep),
):
    return PatientOut.model_validate(set_patient_active(db, patient_id, body.is_active))
