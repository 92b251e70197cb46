from __future__ import annotations

import io
from datetime import date, datetime

from flask import Blueprint, abort, current_app, g, request, send_file
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.procuretrain.audit import record_event
from app.procuretrain.db import db_session
from app.procuretrain.evidence import EvidenceResolver, build_evidence_key, guess_content_type
from app.procuretrain.models import User
from app.procuretrain.modules.events.models import Event
from app.procuretrain.modules.events.service import is_full, refresh_attendance
from app.procuretrain.modules.registrations.models import EventRegistration, EvidenceHistory
from app.procuretrain.modules.registrations.service import (
    RegistrationError,
    finance_summary,
    has_active_registration,
    next_registration_number,
    parse_finance_update,
    parse_payment_status,
    parse_registration_payload,
    read_evidence_upload,
    record_evidence,
    registration_stats,
    registrations_csv,
)
from app.procuretrain.rbac import require_all_permissions, require_any_permission, require_permission, user_has_permission
from app.procuretrain.storage import StorageError, storage_from_config
from app.procuretrain.utils import json_body

bp = Blueprint("registrations", __name__)

EVIDENCE_NOT_FOUND = {"message": "Evidence file not found"}
_DEFAULT_PAGE_SIZE = 50
_MAX_PAGE_SIZE = 200


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _require_login() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        abort(401)
    return u


def _get_registration_or_404(s: Session, registration_id: str) -> EventRegistration:
    r = s.get(EventRegistration, registration_id)
    if not r or r.deleted_at is not None:
        abort(404, description="Registration not found")
    return r


def _error(e: RegistrationError):
    return {"message": e.message}, e.status


def _create_registration(s: Session, fields: dict, *, payment_status: str, has_paid: bool) -> EventRegistration:
    r = EventRegistration(
        registration_number=next_registration_number(s),
        payment_status=payment_status,
        has_paid=has_paid,
        **fields,
    )
    s.add(r)
    s.flush()
    return r


def _evidence_response(data: bytes, resolved_path: str):
    filename = resolved_path.rsplit("/", 1)[-1] or "evidence"
    resp = send_file(
        io.BytesIO(data),
        mimetype=guess_content_type(resolved_path),
        as_attachment=False,
        download_name=filename,
        etag=False,
        max_age=3600,
    )
    resp.headers["Cache-Control"] = "private, max-age=3600"
    return resp


def _caller_evidence_refs(s: Session, user_id: str) -> set[str]:
    refs = {
        p
        for (p,) in s.query(EventRegistration.payment_evidence)
        .filter(EventRegistration.user_id == user_id, EventRegistration.payment_evidence.isnot(None))
        .all()
    }
    refs.update(
        p
        for (p,) in s.query(EvidenceHistory.file_path)
        .join(EventRegistration, EvidenceHistory.registration_id == EventRegistration.id)
        .filter(EventRegistration.user_id == user_id)
        .all()
    )
    return refs


# ---------------------------------------------------------------------------
# User-facing
# ---------------------------------------------------------------------------


@bp.post("/events/register")
@require_permission("registrations.create")
def register_for_event():
    s = db_session()
    u = _current_user()
    payload = json_body()
    try:
        fields = parse_registration_payload(payload)
    except RegistrationError as e:
        return _error(e)

    if fields["user_id"] != u.id:
        return {"message": "Can only register for yourself"}, 403
    evidence = fields.get("payment_evidence")
    if evidence and u.id not in evidence:
        return {"message": "Evidence must be uploaded under your own account"}, 400
    if has_active_registration(s, user_id=u.id, event_id=fields["event_id"]):
        return {"message": "Already registered for this event"}, 400

    event = s.get(Event, fields["event_id"])
    if not event:
        return {"message": "Event not found"}, 404
    refresh_attendance(s, event)
    if is_full(event):
        return {"message": "Event is full"}, 400

    try:
        r = _create_registration(s, fields, payment_status="pending", has_paid=False)
    except IntegrityError:
        s.rollback()
        current_app.logger.warning("Registration number collision for user=%s event=%s", u.id, event.id)
        return {"message": "Registration could not be created, please retry"}, 409
    if evidence:
        record_evidence(s, r, evidence, uploaded_by=u.id)
    refresh_attendance(s, event)
    record_event(
        s,
        actor=u,
        action="registration.create",
        entity_type="EventRegistration",
        entity_id=r.id,
        metadata={"event_id": event.id, "registration_number": r.registration_number},
    )
    # Confirmation emails are out of scope; the audit row marks the notification point.
    record_event(
        s,
        actor=u,
        action="notification.registration_confirmation",
        entity_type="EventRegistration",
        entity_id=r.id,
        metadata={"email": u.email, "event_title": event.title, "status": "not_sent"},
    )
    s.commit()
    current_app.logger.info("User %s registered for event %s (%s)", u.id, event.id, r.registration_number)
    return r.to_dict(), 201


@bp.get("/users/<user_id>/registrations")
@require_any_permission(["registrations.read_own", "registrations.read_all"])
def list_user_registrations(user_id: str):
    s = db_session()
    u = _current_user()
    if u.id != user_id and not user_has_permission(u, "registrations.read_all"):
        return {"message": "Access denied"}, 403

    rows = (
        s.query(EventRegistration)
        .filter(EventRegistration.user_id == user_id, EventRegistration.deleted_at.is_(None))
        .order_by(EventRegistration.registered_at.desc())
        .all()
    )
    out = []
    for r in rows:
        d = r.to_dict()
        d["event"] = r.event.to_dict() if r.event else None
        out.append(d)
    return {"registrations": out}


@bp.patch("/users/<user_id>/registrations/<registration_id>/cancel")
def cancel_registration(user_id: str, registration_id: str):
    u = _require_login()
    if u.id != user_id and not user_has_permission(u, "registrations.cancel"):
        return {"message": "Access denied"}, 403

    s = db_session()
    r = _get_registration_or_404(s, registration_id)
    if r.user_id != user_id:
        return {"message": "Access denied"}, 403
    if r.is_cancelled:
        return {"message": "Registration already cancelled"}, 400

    r.payment_status = "cancelled"
    r.has_paid = False
    refresh_attendance(s, r.event)
    record_event(s, actor=u, action="registration.cancel", entity_type="EventRegistration", entity_id=r.id)
    s.commit()
    return {"message": "Registration cancelled successfully", "registration": r.to_dict()}


@bp.delete("/users/<user_id>/registrations/<registration_id>")
@require_permission("registrations.delete")
def delete_registration(user_id: str, registration_id: str):
    s = db_session()
    u = _current_user()
    r = _get_registration_or_404(s, registration_id)
    if r.user_id != user_id:
        return {"message": "Access denied"}, 403

    r.deleted_at = datetime.utcnow()
    refresh_attendance(s, r.event)
    record_event(
        s,
        actor=u,
        action="registration.delete",
        entity_type="EventRegistration",
        entity_id=r.id,
        metadata={"user_id": user_id, "registration_number": r.registration_number},
    )
    s.commit()
    return {"message": "Registration deleted successfully"}


@bp.post("/registrations/<registration_id>/evidence")
def upload_initial_evidence(registration_id: str):
    u = _require_login()
    s = db_session()
    r = _get_registration_or_404(s, registration_id)
    if r.user_id != u.id:
        return {"message": "Access denied"}, 403
    if r.is_cancelled:
        return {"message": "Cannot upload evidence for cancelled registration"}, 400
    if r.payment_evidence:
        return {"message": "Evidence already uploaded. Contact finance to replace it."}, 409

    try:
        data, content_type = read_evidence_upload(request.files.get("evidenceFile"))
    except RegistrationError as e:
        return _error(e)

    key = build_evidence_key(r.user_id, r.event_id, request.files["evidenceFile"].filename or "")
    storage = storage_from_config(current_app.config)
    try:
        storage.put_bytes(key, data, content_type=content_type)
    except StorageError as e:
        current_app.logger.error("Evidence upload failed (registration=%s key=%s): %s", r.id, key, e)
        return {"message": "Failed to upload evidence file"}, 500

    record_evidence(s, r, key, uploaded_by=u.id)
    record_event(
        s,
        actor=u,
        action="evidence.upload",
        entity_type="EventRegistration",
        entity_id=r.id,
        metadata={"path": key, "size_bytes": len(data)},
    )
    s.commit()
    return {"message": "Payment evidence uploaded successfully", "evidencePath": key}, 201


@bp.get("/users/payment-evidence/<path:evidence_path>")
def user_view_evidence(evidence_path: str):
    u = _require_login()
    if not evidence_path:
        return {"message": "Evidence path is required"}, 400
    if u.id not in evidence_path:
        current_app.logger.warning("User %s denied evidence outside their namespace", u.id)
        return {"message": "Access denied to this evidence"}, 403

    s = db_session()
    if evidence_path not in _caller_evidence_refs(s, u.id):
        return EVIDENCE_NOT_FOUND, 404

    resolver = EvidenceResolver(storage_from_config(current_app.config), user_id=u.id)
    result = resolver.resolve_and_download(evidence_path)
    if not result.ok:
        return EVIDENCE_NOT_FOUND, 404
    return _evidence_response(result.data, result.resolved_path)


@bp.put("/users/payment-evidence/<registration_id>")
def user_update_evidence(registration_id: str):
    _require_login()
    return {"message": "Evidence updates are restricted to finance"}, 403


# ---------------------------------------------------------------------------
# Admin / finance
# ---------------------------------------------------------------------------


def _filtered_registrations(s: Session):
    q = s.query(EventRegistration).filter(EventRegistration.deleted_at.is_(None))
    status = (request.args.get("status") or "").strip()
    event_id = (request.args.get("eventId") or "").strip()
    user_id = (request.args.get("userId") or "").strip()
    if status:
        q = q.filter(EventRegistration.payment_status == status)
    if event_id:
        q = q.filter(EventRegistration.event_id == event_id)
    if user_id:
        q = q.filter(EventRegistration.user_id == user_id)
    return q.order_by(EventRegistration.registered_at.desc())


def _page_args() -> tuple[int, int]:
    try:
        page = max(1, int(request.args.get("page") or 1))
        limit = int(request.args.get("limit") or _DEFAULT_PAGE_SIZE)
    except ValueError:
        raise RegistrationError("page and limit must be integers.") from None
    return page, min(max(1, limit), _MAX_PAGE_SIZE)


@bp.get("/admin/registrations")
@require_permission("registrations.read_all")
def admin_list_registrations():
    s = db_session()
    try:
        page, limit = _page_args()
    except RegistrationError as e:
        return _error(e)

    q = _filtered_registrations(s)
    total = q.order_by(None).count()
    page_rows = q.offset((page - 1) * limit).limit(limit).all()
    out = []
    for r in page_rows:
        d = r.to_dict()
        d["user"] = r.user.to_dict() if r.user else None
        d["event"] = {"id": r.event.id, "title": r.event.title} if r.event else None
        out.append(d)
    return {
        "registrations": out,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
        "stats": registration_stats(q),
    }


@bp.get("/admin/registrations/export")
@require_permission("registrations.export")
def admin_export_registrations():
    s = db_session()
    u = _current_user()
    rows = _filtered_registrations(s).all()
    data = registrations_csv(rows)
    record_event(
        s,
        actor=u,
        action="registration.export",
        entity_type="EventRegistration",
        entity_id="export",
        metadata={"filters": dict(request.args), "row_count": len(rows)},
    )
    s.commit()
    filename = f"registrations_export_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(io.BytesIO(data), mimetype="text/csv", as_attachment=True, download_name=filename, max_age=0)


@bp.post("/admin/events/register")
@require_all_permissions(["registrations.create", "registrations.read_all"])
def admin_register_user():
    s = db_session()
    u = _current_user()
    payload = json_body()
    try:
        fields = parse_registration_payload(payload)
        status = parse_payment_status(payload.get("paymentStatus") or "pending")
    except RegistrationError as e:
        return _error(e)

    target = s.get(User, fields["user_id"])
    if not target or target.deleted_at is not None:
        return {"message": "User not found"}, 404
    if has_active_registration(s, user_id=target.id, event_id=fields["event_id"]):
        return {"message": "User already registered for this event"}, 400
    event = s.get(Event, fields["event_id"])
    if not event:
        return {"message": "Event not found"}, 404

    # Admins may register past capacity.
    try:
        r = _create_registration(s, fields, payment_status=status, has_paid=bool(payload.get("hasPaid") or False))
    except IntegrityError:
        s.rollback()
        return {"message": "Registration could not be created, please retry"}, 409
    if fields.get("payment_evidence"):
        record_evidence(s, r, fields["payment_evidence"], uploaded_by=u.id)
    refresh_attendance(s, event)
    record_event(
        s,
        actor=u,
        action="registration.admin_create",
        entity_type="EventRegistration",
        entity_id=r.id,
        metadata={"user_id": target.id, "event_id": event.id, "over_capacity": is_full(event)},
    )
    s.commit()
    current_app.logger.info("Admin %s registered user %s for event %s", u.id, target.id, event.id)
    return r.to_dict(), 201


@bp.patch("/admin/registrations/<registration_id>")
@require_all_permissions(["registrations.update", "finance.update"])
def admin_update_registration(registration_id: str):
    s = db_session()
    u = _current_user()
    r = _get_registration_or_404(s, registration_id)
    payload = json_body()
    try:
        fields = parse_finance_update(payload)
    except RegistrationError as e:
        return _error(e)

    before = {k: getattr(r, k) for k in fields}
    for k, v in fields.items():
        setattr(r, k, v)
    if fields.get("payment_status") == "cancelled":
        r.has_paid = False
    if "payment_status" in fields or "has_paid" in fields:
        refresh_attendance(s, r.event)
    record_event(
        s,
        actor=u,
        action="registration.finance_update",
        entity_type="EventRegistration",
        entity_id=r.id,
        metadata={"before": before, "after": fields},
    )
    s.commit()
    return r.to_dict()


@bp.get("/admin/finance/summary")
@require_permission("finance.reports")
def admin_finance_summary():
    s = db_session()
    rows = s.query(EventRegistration).filter(EventRegistration.deleted_at.is_(None)).all()
    return finance_summary(rows)


@bp.get("/admin/registrations/<registration_id>/evidence-history")
@require_permission("finance.read")
def admin_evidence_history(registration_id: str):
    s = db_session()
    r = _get_registration_or_404(s, registration_id)
    return {"registrationId": r.id, "current": r.payment_evidence, "history": [h.to_dict() for h in r.evidence_history]}


@bp.get("/admin/payment-evidence")
@bp.get("/admin/payment-evidence/<path:evidence_path>")
@require_permission("finance.read")
def admin_view_evidence(evidence_path: str = ""):
    evidence_path = evidence_path or (request.args.get("path") or "").strip()
    if not evidence_path:
        return {"message": "Evidence path is required"}, 400

    s = db_session()
    u = _current_user()
    resolver = EvidenceResolver(storage_from_config(current_app.config))
    result = resolver.resolve_and_download(evidence_path)
    record_event(
        s,
        actor=u,
        action="evidence.view",
        entity_type="Evidence",
        entity_id=(result.resolved_path or evidence_path)[:128],
        metadata={
            "requested": evidence_path,
            "resolved": result.resolved_path,
            "candidates": len(result.attempted_paths),
            "denied": list(result.denied_paths),
        },
    )
    s.commit()
    if not result.ok:
        return EVIDENCE_NOT_FOUND, 404
    return _evidence_response(result.data, result.resolved_path)


@bp.put("/admin/payment-evidence/<registration_id>")
@require_permission("finance.update")
def admin_replace_evidence(registration_id: str):
    s = db_session()
    u = _current_user()
    r = _get_registration_or_404(s, registration_id)
    if r.is_cancelled:
        return {"message": "Cannot update evidence for cancelled registration"}, 400

    f = request.files.get("evidenceFile")
    try:
        data, content_type = read_evidence_upload(f)
    except RegistrationError as e:
        return _error(e)

    storage = storage_from_config(current_app.config)
    key = build_evidence_key(r.user_id, r.event_id, f.filename or "")
    try:
        storage.put_bytes(key, data, content_type=content_type)
    except StorageError as e:
        current_app.logger.error("Evidence upload failed (registration=%s key=%s): %s", r.id, key, e)
        return {"message": "Failed to upload new evidence file"}, 500

    old = r.payment_evidence
    # Resolve before the row changes; legacy references point at a different key.
    # Scoped to the registrant so a bare-filename hit never deletes a foreign blob.
    old_key = EvidenceResolver(storage, user_id=r.user_id).resolve_and_download(old).resolved_path if old else None

    record_evidence(s, r, key, uploaded_by=u.id)
    record_event(
        s,
        actor=u,
        action="evidence.replace",
        entity_type="EventRegistration",
        entity_id=r.id,
        metadata={"old_path": old, "resolved_old_path": old_key, "new_path": key, "size_bytes": len(data)},
    )
    s.commit()
    current_app.logger.info("Evidence replaced for registration %s: %s", r.id, key)

    if old_key and old_key != key:
        try:
            storage.delete(old_key)
        except (StorageError, OSError) as e:
            current_app.logger.warning("Failed to delete old evidence %s: %s", old_key, e)
    return {"message": "Evidence updated successfully", "registration": r.to_dict(), "newEvidencePath": key}
