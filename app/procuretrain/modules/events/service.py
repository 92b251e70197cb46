from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.procuretrain.constants import MAX_AMOUNT
from app.procuretrain.modules.events.models import Event
from app.procuretrain.modules.registrations.models import EventRegistration


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip()
    if not s:
        return None
    # Browsers send "2025-03-01T09:00:00.000Z"; store naive UTC.
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _parse_price(value: Any) -> Decimal:
    try:
        price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError("price must be a number.") from None
    if not price.is_finite():
        raise ValueError("price must be a number.")
    if price < 0:
        raise ValueError("price must not be negative.")
    if price >= MAX_AMOUNT:
        raise ValueError("price is too large.")
    return price.quantize(Decimal("0.01"))


def _parse_capacity(value: Any) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValueError("maxAttendees must be an integer.") from None
    if n < 0:
        raise ValueError("maxAttendees must not be negative.")
    return n


def parse_event_payload(payload: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    """
    Map a camelCase JSON payload onto Event column values.

    With partial=True only keys present in the payload are returned (PATCH).
    Raises ValueError with a user-facing message.
    """
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object.")
    out: dict[str, Any] = {}

    def present(key: str) -> bool:
        return key in payload

    for key, col in (("title", "title"), ("description", "description")):
        if present(key) or not partial:
            v = str(payload.get(key) or "").strip()
            if not v:
                raise ValueError(f"{key} is required.")
            out[col] = v

    for key, col in (("startDate", "start_date"), ("endDate", "end_date")):
        if present(key) or not partial:
            try:
                dt = parse_datetime(payload.get(key))
            except ValueError:
                raise ValueError(f"{key} must be an ISO date/time.") from None
            if dt is None:
                raise ValueError(f"{key} is required.")
            out[col] = dt

    if present("price") or not partial:
        if payload.get("price") is None:
            raise ValueError("price is required.")
        out["price"] = _parse_price(payload.get("price"))

    if present("location"):
        out["location"] = str(payload.get("location") or "").strip() or None
    if present("maxAttendees"):
        out["max_attendees"] = _parse_capacity(payload.get("maxAttendees"))
    if present("imageUrl"):
        out["image_url"] = str(payload.get("imageUrl") or "").strip() or None
    if present("tags"):
        tags = payload.get("tags") or []
        if not isinstance(tags, list):
            raise ValueError("tags must be a list.")
        out["tags"] = [str(t).strip() for t in tags if str(t).strip()]
    if present("featured"):
        out["featured"] = bool(payload.get("featured"))

    start, end = out.get("start_date"), out.get("end_date")
    if start and end and end < start:
        raise ValueError("endDate must not be before startDate.")
    return out


def active_registration_counts(s: Session, event_ids: list[str] | None = None) -> dict[str, int]:
    q = (
        s.query(EventRegistration.event_id, func.count(EventRegistration.id))
        .filter(EventRegistration.payment_status != "cancelled")
        .filter(EventRegistration.deleted_at.is_(None))
    )
    if event_ids is not None:
        if not event_ids:
            return {}
        q = q.filter(EventRegistration.event_id.in_(event_ids))
    return {event_id: int(n) for event_id, n in q.group_by(EventRegistration.event_id).all()}


def refresh_attendance(s: Session, event: Event) -> int:
    """Recompute current_attendees from active registrations. Caller owns the commit."""
    s.flush()
    event.current_attendees = active_registration_counts(s, [event.id]).get(event.id, 0)
    return event.current_attendees


def availability(event: Event, active_count: int) -> dict[str, Any]:
    if event.max_attendees:
        return {
            "availableSpots": max(0, event.max_attendees - active_count),
            "isFull": active_count >= event.max_attendees,
        }
    return {"availableSpots": None, "isFull": False}


def is_full(event: Event) -> bool:
    return bool(event.max_attendees and (event.current_attendees or 0) >= event.max_attendees)


def registration_stats(s: Session, event: Event) -> dict[str, Any]:
    total = (
        s.query(func.count(EventRegistration.id))
        .filter(EventRegistration.event_id == event.id, EventRegistration.deleted_at.is_(None))
        .scalar()
    ) or 0
    active = active_registration_counts(s, [event.id]).get(event.id, 0)
    return {"totalRegistrations": int(total), "activeRegistrations": active, **availability(event, active)}


def upcoming_events(s: Session, *, now: datetime | None = None) -> list[Event]:
    now = now or datetime.utcnow()
    return s.query(Event).filter(Event.start_date > now).order_by(Event.start_date.asc()).all()


def past_events(s: Session, *, now: datetime | None = None) -> list[Event]:
    now = now or datetime.utcnow()
    return s.query(Event).filter(Event.start_date <= now).order_by(Event.start_date.desc()).all()


def search_events(
    events: list[Event],
    *,
    q: str | None = None,
    location: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    now: datetime | None = None,
) -> list[Event]:
    """Filter in memory; upcoming events sort ahead of past ones, then by start date."""
    now = now or datetime.utcnow()
    out = list(events)
    if q:
        term = q.lower()
        out = [
            e
            for e in out
            if term in (e.title or "").lower() or term in (e.description or "").lower() or term in (e.location or "").lower()
        ]
    if location:
        loc = location.lower()
        out = [e for e in out if loc in (e.location or "").lower()]
    if date_from:
        out = [e for e in out if e.start_date >= date_from]
    if date_to:
        out = [e for e in out if e.start_date <= date_to]
    out.sort(key=lambda e: (e.start_date <= now, e.start_date))
    return out


def revenue_by_event(s: Session) -> dict[str, Decimal]:
    rows = (
        s.query(EventRegistration.event_id, func.coalesce(func.sum(EventRegistration.price_paid), 0))
        .filter(EventRegistration.has_paid.is_(True))
        .filter(EventRegistration.payment_status != "cancelled")
        .filter(EventRegistration.deleted_at.is_(None))
        .group_by(EventRegistration.event_id)
        .all()
    )
    return {event_id: Decimal(str(total)) for event_id, total in rows}
