from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, request, session
from sqlalchemy import or_
from werkzeug.security import check_password_hash, generate_password_hash

from app.procuretrain.audit import record_event
from app.procuretrain.constants import ORDINARY_USER
from app.procuretrain.db import db_session
from app.procuretrain.models import User
from app.procuretrain.rbac import get_role_display_name, get_role_permissions
from app.procuretrain.security import ensure_csrf_token
from app.procuretrain.utils import json_body, text_field

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
_MIN_PASSWORD_LENGTH = 8


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def reset_login_attempts() -> None:
    _login_attempts.clear()


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, str(user_id))
        if not user or not user.is_active or user.deleted_at is not None:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def user_payload(user: User) -> dict:
    data = user.to_dict()
    data["roleDisplayName"] = get_role_display_name(user.role)
    data["permissions"] = sorted(get_role_permissions(user.role))
    return data


def create_user(
    s,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    phone_number: str,
    gender: str | None = None,
    role: str = ORDINARY_USER,
) -> User:
    """
    Validate and add a new user to the session. Raises ValueError with a
    user-facing message; the caller owns the commit.
    """
    email = (email or "").strip().lower()
    first_name = (first_name or "").strip()
    last_name = (last_name or "").strip()
    phone_number = (phone_number or "").strip()
    if not email or "@" not in email:
        raise ValueError("A valid email is required.")
    if not first_name or not last_name:
        raise ValueError("First and last name are required.")
    if not phone_number:
        raise ValueError("Phone number is required.")
    if len(password or "") < _MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
    if s.query(User).filter(User.phone_number == phone_number).one_or_none():
        raise ValueError("Phone number is already registered.")

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        first_name=first_name,
        last_name=last_name,
        phone_number=phone_number,
        gender=(gender or "").strip() or None,
        role=role,
        is_active=True,
    )
    s.add(user)
    s.flush()
    return user


@bp.get("/csrf")
def csrf():
    return {"csrfToken": ensure_csrf_token()}


@bp.post("/register")
def register():
    payload = json_body()
    s = db_session()
    try:
        # Self-service sign-up never chooses its own role.
        user = create_user(
            s,
            email=text_field(payload, "email"),
            password=str(payload.get("password") or ""),
            first_name=text_field(payload, "firstName"),
            last_name=text_field(payload, "lastName"),
            phone_number=text_field(payload, "phoneNumber"),
            gender=text_field(payload, "gender") or None,
        )
    except ValueError as e:
        s.rollback()
        return {"message": str(e)}, 400

    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=user.id)
    s.commit()
    session["user_id"] = user.id
    current_app.logger.info("New user registered id=%s", user.id)
    return {"user": user_payload(user)}, 201


@bp.post("/login")
def login():
    payload = json_body()
    identifier = text_field(payload, "identifier") or text_field(payload, "email") or text_field(payload, "phoneNumber")
    password = str(payload.get("password") or "")
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return {"message": "Too many login attempts. Please wait 5 minutes."}, 429

    _record_attempt(ip)

    try:
        s = db_session()
        # Emails may be shared by several accounts; phone numbers are unique.
        candidates = (
            s.query(User)
            .filter(or_(User.email == identifier.lower(), User.phone_number == identifier))
            .filter(User.deleted_at.is_(None))
            .all()
        )
        user = next(
            (u for u in candidates if u.is_active and check_password_hash(u.password_hash, password)),
            None,
        )
        if not user:
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=identifier,
                reason="Invalid credentials",
                metadata={"identifier": identifier},
            )
            s.commit()
            return {"message": "Invalid credentials."}, 401

        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=user.id)
        s.commit()
        return {"user": user_payload(user)}
    except Exception:
        current_app.logger.exception("Login crashed (identifier=%s request_id=%s)", identifier, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=user.id)
        s.commit()
    session.pop("user_id", None)
    return {"ok": True}


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if not user:
        return {"message": "Authentication required"}, 401
    return {"user": user_payload(user)}
