from __future__ import annotations

from decimal import Decimal

from flask import Blueprint, abort, current_app, g, request
from sqlalchemy.orm import Session

from app.procuretrain.audit import record_event
from app.procuretrain.db import db_session
from app.procuretrain.models import User
from app.procuretrain.modules.events.models import Event
from app.procuretrain.modules.events.service import (
    active_registration_counts,
    availability,
    parse_datetime,
    parse_event_payload,
    past_events,
    registration_stats,
    revenue_by_event,
    search_events,
    upcoming_events,
)
from app.procuretrain.modules.registrations.models import EventRegistration
from app.procuretrain.rbac import require_permission, user_has_permission
from app.procuretrain.utils import json_body

bp = Blueprint("events", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_event_or_404(s: Session, event_id: str) -> Event:
    e = s.get(Event, event_id)
    if not e:
        abort(404, description="Event not found")
    return e


# ---------------------------------------------------------------------------
# Public listings
# ---------------------------------------------------------------------------


@bp.get("/events")
def list_events():
    s = db_session()
    events = s.query(Event).order_by(Event.start_date.asc()).all()
    return {"events": [e.to_dict() for e in events]}


@bp.get("/events/upcoming")
def list_upcoming():
    s = db_session()
    events = upcoming_events(s)
    counts = active_registration_counts(s, [e.id for e in events])
    out = []
    for e in events:
        active = counts.get(e.id, 0)
        out.append({**e.to_dict(), "currentRegistrations": active, **availability(e, active)})
    return {"events": out}


@bp.get("/events/past")
def list_past():
    s = db_session()
    return {"events": [e.to_dict() for e in past_events(s)]}


@bp.get("/events/search")
def search():
    q = (request.args.get("q") or "").strip()
    location = (request.args.get("location") or "").strip()
    raw_from = (request.args.get("date_from") or "").strip()
    raw_to = (request.args.get("date_to") or "").strip()
    try:
        date_from = parse_datetime(raw_from)
        date_to = parse_datetime(raw_to)
    except ValueError:
        return {"message": "date_from/date_to must be ISO dates."}, 400

    s = db_session()
    results = search_events(s.query(Event).all(), q=q, location=location, date_from=date_from, date_to=date_to)
    return {
        "query": {"search": q or None, "location": location or None, "date_from": raw_from or None, "date_to": raw_to or None},
        "results": [e.to_dict() for e in results],
        "count": len(results),
    }


@bp.get("/events/<event_id>")
def event_detail(event_id: str):
    s = db_session()
    e = _get_event_or_404(s, event_id)
    return {**e.to_dict(), "registrationStats": registration_stats(s, e)}


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@bp.get("/admin/events")
@require_permission("admin.dashboard")
def admin_list_events():
    s = db_session()
    events = s.query(Event).order_by(Event.start_date.asc()).all()
    regs = s.query(EventRegistration).filter(EventRegistration.deleted_at.is_(None)).all()
    revenue = revenue_by_event(s)

    by_event: dict[str, list[EventRegistration]] = {}
    for r in regs:
        by_event.setdefault(r.event_id, []).append(r)

    out = []
    for e in events:
        rows = by_event.get(e.id, [])
        active = [r for r in rows if r.payment_status != "cancelled"]
        out.append(
            {
                **e.to_dict(),
                "totalRegistrations": len(rows),
                "activeRegistrations": len(active),
                "paidRegistrations": sum(1 for r in active if r.has_paid),
                "pendingPayments": sum(1 for r in active if not r.has_paid),
                "revenue": str(revenue.get(e.id, Decimal("0"))),
            }
        )
    return {"events": out}


@bp.post("/admin/events")
@require_permission("events.create")
def admin_create_event():
    s = db_session()
    u = _current_user()
    payload = json_body()
    try:
        fields = parse_event_payload(payload)
    except ValueError as e:
        return {"message": str(e)}, 400
    if fields.get("featured") and not user_has_permission(u, "events.feature"):
        g.missing_permission = "events.feature"
        abort(403)

    e = Event(**fields)
    s.add(e)
    s.flush()
    record_event(s, actor=u, action="event.create", entity_type="Event", entity_id=e.id, metadata={"title": e.title})
    s.commit()
    current_app.logger.info("Event created id=%s by %s", e.id, u.email)
    return e.to_dict(), 201


@bp.patch("/admin/events/<event_id>")
@require_permission("events.update")
def admin_update_event(event_id: str):
    s = db_session()
    u = _current_user()
    e = _get_event_or_404(s, event_id)
    payload = json_body()
    try:
        fields = parse_event_payload(payload, partial=True)
    except ValueError as err:
        return {"message": str(err)}, 400
    if "featured" in fields and not user_has_permission(u, "events.feature"):
        g.missing_permission = "events.feature"
        abort(403)

    start = fields.get("start_date", e.start_date)
    end = fields.get("end_date", e.end_date)
    if start and end and end < start:
        return {"message": "endDate must not be before startDate."}, 400

    for k, v in fields.items():
        setattr(e, k, v)
    record_event(s, actor=u, action="event.update", entity_type="Event", entity_id=e.id, metadata={"fields": sorted(fields)})
    s.commit()
    return e.to_dict()


@bp.delete("/admin/events/<event_id>")
@require_permission("events.delete")
def admin_delete_event(event_id: str):
    s = db_session()
    u = _current_user()
    e = _get_event_or_404(s, event_id)

    active = active_registration_counts(s, [e.id]).get(e.id, 0)
    if active > 0:
        return {"message": "Cannot delete event with active registrations", "activeRegistrations": active}, 400

    # Cancelled rows keep a FK to the event; remove them with it.
    s.query(EventRegistration).filter(EventRegistration.event_id == e.id).delete(synchronize_session=False)
    record_event(s, actor=u, action="event.delete", entity_type="Event", entity_id=e.id, metadata={"title": e.title})
    s.delete(e)
    s.commit()
    current_app.logger.info("Event deleted id=%s by %s", event_id, u.email)
    return {"message": "Event deleted successfully"}
