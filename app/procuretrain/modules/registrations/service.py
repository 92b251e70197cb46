from __future__ import annotations

import csv
import io
from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Query, Session
from werkzeug.datastructures import FileStorage

from app.procuretrain.constants import (
    DELEGATE_TYPES,
    EVIDENCE_ALLOWED_CONTENT_TYPES,
    EVIDENCE_MAX_BYTES,
    GROUP_PAYMENT_CURRENCIES,
    MAX_AMOUNT,
    PAYMENT_METHODS,
    PAYMENT_STATUSES,
)
from app.procuretrain.modules.registrations.models import EventRegistration, EvidenceHistory


class RegistrationError(ValueError):
    """User-facing validation failure; `status` is the HTTP code to answer with."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


_ADDON_FLAGS = (
    ("dinnerGalaAttendance", "dinner_gala_attendance"),
    ("accommodationPackage", "accommodation_package"),
    ("victoriaFallsPackage", "victoria_falls_package"),
    ("boatCruisePackage", "boat_cruise_package"),
)


def _text(payload: dict[str, Any], key: str) -> str | None:
    v = payload.get(key)
    if v is None:
        return None
    v = str(v).strip()
    return v or None


def _money(value: Any, field: str) -> Decimal | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise RegistrationError(f"{field} must be a number.") from None
    if not d.is_finite():
        raise RegistrationError(f"{field} must be a number.")
    if d < 0:
        raise RegistrationError(f"{field} must not be negative.")
    if d >= MAX_AMOUNT:
        raise RegistrationError(f"{field} is too large.")
    return d.quantize(Decimal("0.01"))


def _choice(value: str | None, allowed: Iterable[str], field: str) -> str | None:
    if value is None:
        return None
    if value not in allowed:
        raise RegistrationError(f"Invalid {field}: {value!r}")
    return value


def parse_registration_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Validate a registration create payload (camelCase JSON) and return
    EventRegistration column values. Status fields are left to the caller.
    """
    if not isinstance(payload, dict):
        raise RegistrationError("Request body must be a JSON object.")
    event_id = _text(payload, "eventId")
    user_id = _text(payload, "userId")
    if not event_id or not user_id:
        raise RegistrationError("eventId and userId are required.")

    out: dict[str, Any] = {"event_id": event_id, "user_id": user_id}
    for key, col in (("country", "country"), ("organization", "organization"), ("position", "position")):
        v = _text(payload, key)
        if not v:
            raise RegistrationError(f"{key} is required.")
        out[col] = v

    out["notes"] = _text(payload, "notes")
    out["payment_method"] = _choice(_text(payload, "paymentMethod"), PAYMENT_METHODS, "paymentMethod")
    out["currency"] = _text(payload, "currency")
    out["price_paid"] = _money(payload.get("pricePaid"), "pricePaid")
    out["payment_evidence"] = _text(payload, "paymentEvidence")
    out["delegate_type"] = _choice(_text(payload, "delegateType"), DELEGATE_TYPES, "delegateType")
    for key, col in _ADDON_FLAGS:
        out[col] = bool(payload.get(key) or False)

    group_size = payload.get("groupSize")
    if group_size is None or group_size == "":
        out["group_size"] = 1
    else:
        try:
            out["group_size"] = int(group_size)
        except (TypeError, ValueError):
            raise RegistrationError("groupSize must be an integer.") from None
        if out["group_size"] < 1:
            raise RegistrationError("groupSize must be at least 1.")
    out["group_payment_amount"] = _money(payload.get("groupPaymentAmount"), "groupPaymentAmount")
    out["group_payment_currency"] = _choice(
        _text(payload, "groupPaymentCurrency"), GROUP_PAYMENT_CURRENCIES, "groupPaymentCurrency"
    )
    out["organization_reference"] = _text(payload, "organizationReference")
    return out


def parse_payment_status(value: Any) -> str:
    status = (str(value or "")).strip().lower()
    if status not in PAYMENT_STATUSES:
        raise RegistrationError(f"Invalid paymentStatus: {value!r}")
    return status


def parse_finance_update(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Finance PATCH accepts payment fields only; anything else is rejected so a
    finance user cannot rewrite registrant details.
    """
    if not isinstance(payload, dict):
        raise RegistrationError("Request body must be a JSON object.")
    allowed = {"paymentStatus", "hasPaid", "paymentMethod", "currency", "pricePaid", "notes"}
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise RegistrationError(f"Unsupported field(s): {', '.join(unknown)}")

    out: dict[str, Any] = {}
    if "paymentStatus" in payload:
        out["payment_status"] = parse_payment_status(payload.get("paymentStatus"))
    if "hasPaid" in payload:
        if not isinstance(payload.get("hasPaid"), bool):
            raise RegistrationError("hasPaid must be true or false.")
        out["has_paid"] = payload["hasPaid"]
    if "paymentMethod" in payload:
        out["payment_method"] = _choice(_text(payload, "paymentMethod"), PAYMENT_METHODS, "paymentMethod")
    if "currency" in payload:
        out["currency"] = _text(payload, "currency")
    if "pricePaid" in payload:
        out["price_paid"] = _money(payload.get("pricePaid"), "pricePaid")
    if "notes" in payload:
        out["notes"] = _text(payload, "notes")
    if not out:
        raise RegistrationError("No updates provided.")
    return out


def next_registration_number(s: Session) -> str:
    """Next zero-padded sequence number ("0001", "0002", ...)."""
    highest = 0
    for (num,) in s.query(EventRegistration.registration_number).all():
        if num and num.isdigit():
            highest = max(highest, int(num))
    return str(highest + 1).zfill(4)


def has_active_registration(s: Session, *, user_id: str, event_id: str) -> bool:
    return (
        s.query(EventRegistration.id)
        .filter(
            EventRegistration.user_id == user_id,
            EventRegistration.event_id == event_id,
            EventRegistration.payment_status != "cancelled",
            EventRegistration.deleted_at.is_(None),
        )
        .first()
        is not None
    )


def record_evidence(s: Session, registration: EventRegistration, file_path: str, *, uploaded_by: str | None) -> EvidenceHistory:
    """Point the registration at a new evidence key and log it. Caller owns the commit."""
    registration.payment_evidence = file_path
    h = EvidenceHistory(registration_id=registration.id, file_path=file_path, uploaded_by_user_id=uploaded_by)
    s.add(h)
    return h


def read_evidence_upload(f: FileStorage | None) -> tuple[bytes, str]:
    """Validate an uploaded evidence file; returns (bytes, content_type)."""
    if f is None or not f.filename:
        raise RegistrationError("Evidence file is required")
    content_type = (f.mimetype or "").strip().lower()
    if content_type not in EVIDENCE_ALLOWED_CONTENT_TYPES:
        raise RegistrationError("Invalid file type. Only JPEG, PNG, and PDF files are allowed.")
    data = f.read(EVIDENCE_MAX_BYTES + 1)
    if len(data) > EVIDENCE_MAX_BYTES:
        raise RegistrationError("File too large. Maximum size is 10MB.")
    if not data:
        raise RegistrationError("Evidence file is empty")
    return data, content_type


def registration_stats(q: Query) -> dict[str, Any]:
    """Status counts and paid revenue over a filtered registration query, computed in SQL."""
    base = q.order_by(None)
    counts = dict(
        base.with_entities(EventRegistration.payment_status, func.count(EventRegistration.id))
        .group_by(EventRegistration.payment_status)
        .all()
    )
    revenue = (
        base.with_entities(func.coalesce(func.sum(EventRegistration.price_paid), 0))
        .filter(EventRegistration.has_paid.is_(True))
        .filter(EventRegistration.payment_status != "cancelled")
        .scalar()
    )
    return {
        "total": sum(counts.values()),
        "pending": counts.get("pending", 0),
        "paid": counts.get("paid", 0),
        "confirmed": counts.get("confirmed", 0),
        "cancelled": counts.get("cancelled", 0),
        "totalRevenue": str(Decimal(str(revenue or 0)).quantize(Decimal("0.01"))),
    }


def finance_summary(rows: list[EventRegistration]) -> dict[str, Any]:
    """Revenue and outstanding counts, bucketed by currency and payment method."""
    by_currency: dict[str, Decimal] = {}
    by_method: dict[str, int] = {}
    outstanding = 0
    for r in rows:
        if r.is_cancelled:
            continue
        if r.has_paid:
            cur = r.currency or "UNSPECIFIED"
            by_currency[cur] = by_currency.get(cur, Decimal("0")) + (r.price_paid or Decimal("0"))
        else:
            outstanding += 1
        method = r.payment_method or "unspecified"
        by_method[method] = by_method.get(method, 0) + 1
    return {
        "revenueByCurrency": {k: str(v) for k, v in sorted(by_currency.items())},
        "paymentMethods": dict(sorted(by_method.items())),
        "outstandingPayments": outstanding,
        "paidRegistrations": sum(1 for r in rows if r.has_paid and not r.is_cancelled),
        "withEvidence": sum(1 for r in rows if r.payment_evidence and not r.is_cancelled),
    }


_EXPORT_COLUMNS = [
    "Registration #",
    "Registered At",
    "First Name",
    "Last Name",
    "Email",
    "Phone",
    "Event",
    "Country",
    "Organization",
    "Position",
    "Delegate Type",
    "Payment Status",
    "Has Paid",
    "Payment Method",
    "Currency",
    "Price Paid",
    "Group Size",
]


def registrations_csv(rows: list[EventRegistration]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(_EXPORT_COLUMNS)
    for r in rows:
        u = r.user
        e = r.event
        w.writerow(
            [
                r.registration_number,
                r.registered_at.isoformat() if r.registered_at else "",
                u.first_name if u else "",
                u.last_name if u else "",
                u.email if u else "",
                u.phone_number if u else "",
                e.title if e else r.event_id,
                r.country or "",
                r.organization or "",
                r.position or "",
                r.delegate_type or "",
                r.payment_status,
                "yes" if r.has_paid else "no",
                r.payment_method or "",
                r.currency or "",
                str(r.price_paid) if r.price_paid is not None else "",
                r.group_size,
            ]
        )
    return out.getvalue().encode("utf-8")
