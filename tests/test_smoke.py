from app.procuretrain.constants import FINANCE_PERSON, ORDINARY_USER

from conftest import PASSWORD


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json == {"ok": True}
    assert client.get("/healthz").data == b"ok"


def test_register_sets_session_and_ordinary_role(client):
    r = client.post(
        "/auth/register",
        json={
            "email": "New@Example.com",
            "password": "long-enough-pw",
            "firstName": "Mwila",
            "lastName": "Banda",
            "phoneNumber": "+260971234567",
            "role": "super_admin",
        },
    )
    assert r.status_code == 201
    user = r.json["user"]
    assert user["email"] == "new@example.com"
    assert user["role"] == ORDINARY_USER
    assert "registrations.create" in user["permissions"]

    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.json["user"]["id"] == user["id"]


def test_register_rejects_short_password_and_duplicate_phone(client, make_user):
    r = client.post(
        "/auth/register",
        json={"email": "a@b.com", "password": "short", "firstName": "A", "lastName": "B", "phoneNumber": "+1"},
    )
    assert r.status_code == 400

    make_user()
    r = client.post(
        "/auth/register",
        json={"email": "c@d.com", "password": "long-enough-pw", "firstName": "C", "lastName": "D", "phoneNumber": "+260970000001"},
    )
    assert r.status_code == 400
    assert r.json["message"] == "Phone number is already registered."


def test_login_by_email_or_phone(client, make_user):
    make_user(FINANCE_PERSON, email="fin@example.com")
    r = client.post("/auth/login", json={"email": "FIN@example.com", "password": PASSWORD})
    assert r.status_code == 200
    assert r.json["user"]["roleDisplayName"] == "Finance Manager"

    client.post("/auth/logout")
    assert client.get("/auth/me").status_code == 401

    r = client.post("/auth/login", json={"identifier": "+260970000001", "password": PASSWORD})
    assert r.status_code == 200


def test_login_failures(client, make_user):
    make_user()
    r = client.post("/auth/login", json={"identifier": "+260970000001", "password": "wrong"})
    assert r.status_code == 401
    assert r.json["message"] == "Invalid credentials."


def test_inactive_user_cannot_login(client, make_user):
    make_user(is_active=False)
    r = client.post("/auth/login", json={"identifier": "+260970000001", "password": PASSWORD})
    assert r.status_code == 401


def test_login_rate_limit(client, make_user):
    make_user()
    for _ in range(5):
        client.post("/auth/login", json={"identifier": "+260970000001", "password": "wrong"})
    r = client.post("/auth/login", json={"identifier": "+260970000001", "password": PASSWORD})
    assert r.status_code == 429


def test_mutations_require_csrf(client, make_user, login):
    headers = login(make_user())
    r = client.post("/api/newsletter/subscribe", json={"email": "x@example.com"})
    assert r.status_code == 400
    assert r.json["message"] == "CSRF token missing or invalid."

    r = client.post("/api/newsletter/subscribe", json={"email": "x@example.com"}, headers=headers)
    assert r.status_code == 201


def test_unauthenticated_admin_request_is_401(client):
    r = client.get("/api/admin/registrations")
    assert r.status_code == 401
    assert r.json == {"message": "Authentication required"}


def test_forbidden_reports_missing_permission(client, make_user, login):
    login(make_user())
    r = client.get("/api/admin/registrations")
    assert r.status_code == 403
    assert r.json == {"message": "Insufficient permissions", "missingPermission": "registrations.read_all"}


def test_deleted_user_session_is_dropped(client, app, make_user, login):
    from datetime import datetime

    from app.procuretrain.db import session_scope
    from app.procuretrain.models import User

    uid = make_user()
    login(uid)
    with session_scope(app) as s:
        s.get(User, uid).deleted_at = datetime.utcnow()
    assert client.get("/auth/me").status_code == 401


def test_auth_endpoints_reject_non_object_bodies(client, make_user):
    r = client.post("/auth/login", json=["user1@example.com", PASSWORD])
    assert r.status_code == 401
    r = client.post("/auth/register", json=["new@example.com"])
    assert r.status_code == 400
    assert r.json["message"] == "A valid email is required."

    make_user()
    r = client.post("/auth/login", json={"email": 12345, "password": 67890})
    assert r.status_code == 401
