from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, current_app, g, request
from sqlalchemy import func

from app.procuretrain.audit import record_event
from app.procuretrain.auth import create_user
from app.procuretrain.constants import ORDINARY_USER, ROLES, SUPER_ADMIN
from app.procuretrain.db import db_session
from app.procuretrain.models import AuditEvent, User
from app.procuretrain.modules.events.models import Event
from app.procuretrain.modules.newsletter.models import NewsletterSubscription
from app.procuretrain.modules.registrations.models import EventRegistration
from app.procuretrain.rbac import can_assign_role, get_available_roles, get_role_display_name, require_permission
from app.procuretrain.utils import json_body, text_field

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_user_or_404(s, user_id: str) -> User:
    u = s.get(User, user_id)
    if not u or u.deleted_at is not None:
        abort(404, description="User not found")
    return u


@bp.get("/dashboard")
@require_permission("admin.dashboard")
def dashboard():
    s = db_session()
    now = datetime.utcnow()
    regs = s.query(EventRegistration.payment_status, func.count(EventRegistration.id)).filter(
        EventRegistration.deleted_at.is_(None)
    ).group_by(EventRegistration.payment_status).all()
    by_status = {status: int(n) for status, n in regs}
    return {
        "users": s.query(User).filter(User.deleted_at.is_(None)).count(),
        "events": {
            "total": s.query(Event).count(),
            "upcoming": s.query(Event).filter(Event.start_date > now).count(),
        },
        "registrations": {"total": sum(by_status.values()), "byStatus": by_status},
        "newsletterSubscriptions": s.query(NewsletterSubscription).count(),
    }


@bp.get("/roles")
@require_permission("users.read")
def roles():
    return {"roles": get_available_roles()}


@bp.get("/users")
@require_permission("users.read")
def list_users():
    s = db_session()
    users = s.query(User).filter(User.deleted_at.is_(None)).order_by(User.created_at.desc()).all()

    counts: dict[str, dict[str, int]] = {}
    for user_id, status, has_paid in s.query(
        EventRegistration.user_id, EventRegistration.payment_status, EventRegistration.has_paid
    ).filter(EventRegistration.deleted_at.is_(None)):
        c = counts.setdefault(user_id, {"totalRegistrations": 0, "activeRegistrations": 0, "paidRegistrations": 0})
        c["totalRegistrations"] += 1
        if status != "cancelled":
            c["activeRegistrations"] += 1
        if has_paid:
            c["paidRegistrations"] += 1

    role_distribution: dict[str, int] = {}
    out = []
    for u in users:
        role_distribution[u.role] = role_distribution.get(u.role, 0) + 1
        out.append(
            {
                **u.to_dict(),
                "roleDisplayName": get_role_display_name(u.role),
                **counts.get(u.id, {"totalRegistrations": 0, "activeRegistrations": 0, "paidRegistrations": 0}),
            }
        )
    return {"users": out, "stats": {"totalUsers": len(out), "roleDistribution": role_distribution}}


@bp.post("/users/register")
@require_permission("users.create")
def register_user():
    s = db_session()
    actor = _current_user()
    payload = json_body()
    role = text_field(payload, "role")
    if role not in ROLES:
        return {"message": "Invalid role specified"}, 400
    # Creating a privileged account is a role assignment.
    if role != ORDINARY_USER and not can_assign_role(actor.role, role):
        g.missing_permission = "users.assign_roles"
        abort(403)

    try:
        user = create_user(
            s,
            email=text_field(payload, "email"),
            password=str(payload.get("password") or ""),
            first_name=text_field(payload, "firstName"),
            last_name=text_field(payload, "lastName"),
            phone_number=text_field(payload, "phoneNumber"),
            gender=text_field(payload, "gender") or None,
            role=role,
        )
    except ValueError as e:
        s.rollback()
        return {"message": str(e)}, 400

    record_event(s, actor=actor, action="user.create", entity_type="User", entity_id=user.id, metadata={"email": user.email, "role": role})
    s.commit()
    current_app.logger.info("Admin %s created user %s with role %s", actor.id, user.id, role)
    return {"message": "User created successfully", "user": user.to_dict()}, 201


@bp.patch("/users/<user_id>/role")
@require_permission("users.assign_roles")
def update_role(user_id: str):
    s = db_session()
    actor = _current_user()
    payload = json_body()
    role = text_field(payload, "role")
    reason = text_field(payload, "reason") or None

    if role not in ROLES:
        return {"message": "Invalid role specified"}, 400
    if actor.id == user_id and role != SUPER_ADMIN:
        return {"message": "Cannot change your own super admin role"}, 400
    if not can_assign_role(actor.role, role):
        g.missing_permission = "users.assign_roles"
        abort(403)

    user = _get_user_or_404(s, user_id)
    before = user.role
    user.role = role
    record_event(
        s,
        actor=actor,
        action="user.role_change",
        entity_type="User",
        entity_id=user.id,
        reason=reason,
        metadata={"before": before, "after": role},
    )
    s.commit()
    current_app.logger.info("Role updated: user=%s %s -> %s by %s", user.id, before, role, actor.id)
    return {"message": "User role updated successfully", "user": user.to_dict()}


@bp.delete("/users/<user_id>")
@require_permission("users.delete")
def delete_user(user_id: str):
    s = db_session()
    actor = _current_user()
    if actor.id == user_id:
        return {"message": "Cannot delete your own account"}, 400
    user = _get_user_or_404(s, user_id)
    user.deleted_at = datetime.utcnow()
    user.is_active = False
    record_event(s, actor=actor, action="user.delete", entity_type="User", entity_id=user.id, metadata={"email": user.email})
    s.commit()
    return {"message": "User deleted successfully"}


@bp.get("/audit")
@require_permission("admin.reports")
def audit_list():
    s = db_session()
    q = s.query(AuditEvent)

    action = (request.args.get("action") or "").strip()
    actor = (request.args.get("actor") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if action:
        q = q.filter(AuditEvent.action.like(f"{action}%"))
    if actor:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    try:
        limit = min(max(1, int(request.args.get("limit") or 200)), 1000)
    except ValueError:
        return {"message": "limit must be an integer."}, 400
    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
    return {"events": [e.to_dict() for e in events]}
