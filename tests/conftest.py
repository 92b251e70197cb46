import itertools
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.procuretrain import create_app
from app.procuretrain.auth import reset_login_attempts
from app.procuretrain.constants import ORDINARY_USER
from app.procuretrain.db import session_scope
from app.procuretrain.models import Base, User
from app.procuretrain.modules.events.models import Event
from app.procuretrain.modules.registrations.models import EventRegistration
from app.procuretrain.rbac import reset_role_permissions

PASSWORD = "correct-horse-1"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("EVIDENCE_BUCKET", "registrations")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "RBAC_TABLE_PATH"):
        monkeypatch.delenv(k, raising=False)
    reset_login_attempts()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    yield app
    reset_role_permissions()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(app):
    seq = itertools.count(1)

    def _make(role: str = ORDINARY_USER, *, email: str | None = None, is_active: bool = True) -> str:
        n = next(seq)
        with session_scope(app) as s:
            u = User(
                email=email or f"user{n}@example.com",
                password_hash=generate_password_hash(PASSWORD),
                first_name="Test",
                last_name=f"User{n}",
                phone_number=f"+26097000{n:04d}",
                role=role,
                is_active=is_active,
            )
            s.add(u)
            s.flush()
            return u.id

    return _make


@pytest.fixture()
def login(client, app):
    """Log in by user id; returns a CSRF header dict for mutating requests."""

    def _login(user_id: str) -> dict[str, str]:
        with session_scope(app) as s:
            phone = s.get(User, user_id).phone_number
        r = client.post("/auth/login", json={"identifier": phone, "password": PASSWORD})
        assert r.status_code == 200, r.json
        token = client.get("/auth/csrf").json["csrfToken"]
        return {"X-CSRF-Token": token}

    return _login


@pytest.fixture()
def make_event(app):
    def _make(*, title: str = "Procurement Summit", days_from_now: int = 30, max_attendees: int | None = None) -> str:
        start = datetime.utcnow() + timedelta(days=days_from_now)
        with session_scope(app) as s:
            e = Event(
                title=title,
                description=f"{title} description",
                start_date=start,
                end_date=start + timedelta(days=2),
                location="Lusaka",
                price=Decimal("150.00"),
                max_attendees=max_attendees,
            )
            s.add(e)
            s.flush()
            return e.id

    return _make


@pytest.fixture()
def make_registration(app):
    seq = itertools.count(1)

    def _make(user_id: str, event_id: str, **fields) -> str:
        with session_scope(app) as s:
            r = EventRegistration(
                registration_number=str(next(seq)).zfill(4),
                user_id=user_id,
                event_id=event_id,
                country="Zambia",
                organization="ZPPA",
                position="Officer",
                **fields,
            )
            s.add(r)
            s.flush()
            return r.id

    return _make
