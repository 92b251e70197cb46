from app.procuretrain.constants import EVENT_MANAGER, FINANCE_PERSON, ORDINARY_USER, SUPER_ADMIN
from app.procuretrain.db import session_scope
from app.procuretrain.models import AuditEvent, User
from app.procuretrain.modules.events.models import Event
from app.procuretrain.modules.registrations.models import EventRegistration

_EVENT = {
    "title": "Public Procurement Forum",
    "description": "Annual forum",
    "startDate": "2030-05-01T09:00:00.000Z",
    "endDate": "2030-05-03T17:00:00.000Z",
    "price": "250",
    "location": "Livingstone",
    "maxAttendees": 100,
}


class TestUserAdministration:
    def test_role_change_is_audited(self, client, app, make_user, login):
        admin, target = make_user(SUPER_ADMIN), make_user()
        headers = login(admin)
        r = client.patch(f"/api/admin/users/{target}/role", json={"role": FINANCE_PERSON, "reason": "new hire"}, headers=headers)
        assert r.status_code == 200
        assert r.json["user"]["role"] == FINANCE_PERSON
        with session_scope(app) as s:
            ev = s.query(AuditEvent).filter(AuditEvent.action == "user.role_change").one()
            assert ev.entity_id == target
            assert ev.reason == "new hire"

    def test_invalid_role(self, client, make_user, login):
        headers = login(make_user(SUPER_ADMIN))
        r = client.patch(f"/api/admin/users/{make_user()}/role", json={"role": "janitor"}, headers=headers)
        assert r.status_code == 400
        assert r.json["message"] == "Invalid role specified"

    def test_cannot_demote_self(self, client, make_user, login):
        admin = make_user(SUPER_ADMIN)
        headers = login(admin)
        r = client.patch(f"/api/admin/users/{admin}/role", json={"role": ORDINARY_USER}, headers=headers)
        assert r.status_code == 400
        assert r.json["message"] == "Cannot change your own super admin role"

    def test_non_admins_cannot_assign_roles(self, client, make_user, login):
        headers = login(make_user(FINANCE_PERSON))
        r = client.patch(f"/api/admin/users/{make_user()}/role", json={"role": SUPER_ADMIN}, headers=headers)
        assert r.status_code == 403
        assert r.json["missingPermission"] == "users.assign_roles"

    def test_list_users_with_role_distribution(self, client, make_user, login):
        login(make_user(SUPER_ADMIN))
        make_user()
        make_user(EVENT_MANAGER)
        r = client.get("/api/admin/users")
        assert r.status_code == 200
        assert r.json["stats"]["totalUsers"] == 3
        assert r.json["stats"]["roleDistribution"] == {SUPER_ADMIN: 1, ORDINARY_USER: 1, EVENT_MANAGER: 1}

    def test_roles_listing(self, client, make_user, login):
        login(make_user(SUPER_ADMIN))
        r = client.get("/api/admin/roles")
        assert [x["value"] for x in r.json["roles"]] == [SUPER_ADMIN, EVENT_MANAGER, FINANCE_PERSON, ORDINARY_USER]

    def test_create_user_with_role(self, client, make_user, login):
        headers = login(make_user(SUPER_ADMIN))
        r = client.post(
            "/api/admin/users/register",
            json={
                "email": "events@example.com",
                "password": "long-enough-pw",
                "firstName": "Chanda",
                "lastName": "Phiri",
                "phoneNumber": "+260955555555",
                "role": EVENT_MANAGER,
            },
            headers=headers,
        )
        assert r.status_code == 201
        assert r.json["user"]["role"] == EVENT_MANAGER

    def test_soft_delete_user(self, client, app, make_user, login):
        admin, target = make_user(SUPER_ADMIN), make_user()
        headers = login(admin)
        assert client.delete(f"/api/admin/users/{admin}", headers=headers).status_code == 400
        r = client.delete(f"/api/admin/users/{target}", headers=headers)
        assert r.status_code == 200
        with session_scope(app) as s:
            u = s.get(User, target)
            assert u.deleted_at is not None
            assert u.is_active is False

    def test_audit_listing_filters(self, client, make_user, login):
        admin = make_user(SUPER_ADMIN)
        headers = login(admin)
        client.patch(f"/api/admin/users/{make_user()}/role", json={"role": EVENT_MANAGER}, headers=headers)
        r = client.get("/api/admin/audit", query_string={"action": "user."})
        assert r.status_code == 200
        assert [e["action"] for e in r.json["events"]] == ["user.role_change"]

    def test_dashboard(self, client, make_user, make_event, make_registration, login):
        uid = make_user()
        make_registration(uid, make_event())
        login(make_user(EVENT_MANAGER))
        r = client.get("/api/admin/dashboard")
        assert r.status_code == 200
        assert r.json["registrations"] == {"total": 1, "byStatus": {"pending": 1}}
        assert r.json["events"]["upcoming"] == 1


class TestEvents:
    def test_public_listings(self, client, make_event):
        make_event(title="Future Summit", days_from_now=10)
        make_event(title="Past Summit", days_from_now=-10)
        assert [e["title"] for e in client.get("/api/events/upcoming").json["events"]] == ["Future Summit"]
        assert [e["title"] for e in client.get("/api/events/past").json["events"]] == ["Past Summit"]
        r = client.get("/api/events/search", query_string={"q": "summit"})
        assert r.json["count"] == 2
        assert r.json["results"][0]["title"] == "Future Summit"

    def test_event_detail(self, client, make_event):
        eid = make_event(max_attendees=5)
        r = client.get(f"/api/events/{eid}")
        assert r.status_code == 200
        assert r.json["registrationStats"]["availableSpots"] == 5
        assert client.get("/api/events/nope").status_code == 404

    def test_event_manager_crud(self, client, app, make_user, login):
        headers = login(make_user(EVENT_MANAGER))
        r = client.post("/api/admin/events", json={**_EVENT, "featured": True}, headers=headers)
        assert r.status_code == 201
        eid = r.json["id"]
        assert r.json["price"] == "250.00"
        assert r.json["featured"] is True

        r = client.patch(f"/api/admin/events/{eid}", json={"location": "Lusaka"}, headers=headers)
        assert r.status_code == 200
        assert r.json["location"] == "Lusaka"

        r = client.patch(f"/api/admin/events/{eid}", json={"endDate": "2030-04-01T00:00:00"}, headers=headers)
        assert r.status_code == 400

        assert client.delete(f"/api/admin/events/{eid}", headers=headers).status_code == 200
        with session_scope(app) as s:
            assert s.get(Event, eid) is None

    def test_create_validation(self, client, make_user, login):
        headers = login(make_user(EVENT_MANAGER))
        r = client.post("/api/admin/events", json={**_EVENT, "price": "free"}, headers=headers)
        assert r.status_code == 400
        r = client.post("/api/admin/events", json={k: v for k, v in _EVENT.items() if k != "title"}, headers=headers)
        assert r.status_code == 400

    def test_create_rejects_non_finite_price(self, client, make_user, login):
        headers = login(make_user(EVENT_MANAGER))
        for value in ("Infinity", "NaN", "-Infinity"):
            r = client.post("/api/admin/events", json={**_EVENT, "price": value}, headers=headers)
            assert r.status_code == 400
            assert r.json["message"] == "price must be a number."
        r = client.post("/api/admin/events", json={**_EVENT, "price": "1e30"}, headers=headers)
        assert r.status_code == 400
        assert r.json["message"] == "price is too large."

    def test_create_rejects_non_object_body(self, client, make_user, login):
        headers = login(make_user(EVENT_MANAGER))
        r = client.post("/api/admin/events", json=[_EVENT], headers=headers)
        assert r.status_code == 400

    def test_non_string_text_fields_are_coerced(self, client, make_user, login):
        headers = login(make_user(EVENT_MANAGER))
        r = client.post("/api/admin/events", json={**_EVENT, "title": 2030, "location": 7}, headers=headers)
        assert r.status_code == 201
        assert r.json["title"] == "2030"
        assert r.json["location"] == "7"

    def test_offset_datetimes_are_stored_as_utc(self, client, make_user, login):
        headers = login(make_user(EVENT_MANAGER))
        r = client.post(
            "/api/admin/events",
            json={**_EVENT, "startDate": "2030-05-01T09:00:00+02:00", "endDate": "2030-05-01T17:00:00Z"},
            headers=headers,
        )
        assert r.status_code == 201
        assert r.json["startDate"] == "2030-05-01T07:00:00"
        assert r.json["endDate"] == "2030-05-01T17:00:00"

    def test_finance_cannot_create_events(self, client, make_user, login):
        headers = login(make_user(FINANCE_PERSON))
        r = client.post("/api/admin/events", json=_EVENT, headers=headers)
        assert r.status_code == 403
        assert r.json["missingPermission"] == "events.create"

    def test_delete_blocked_by_active_registrations(self, client, app, make_user, make_event, make_registration, login):
        eid = make_event()
        make_registration(make_user(), eid)
        cancelled = make_registration(make_user(), eid, payment_status="cancelled")
        headers = login(make_user(SUPER_ADMIN))

        r = client.delete(f"/api/admin/events/{eid}", headers=headers)
        assert r.status_code == 400
        assert r.json["message"] == "Cannot delete event with active registrations"

        with session_scope(app) as s:
            s.query(EventRegistration).filter(EventRegistration.id != cancelled).update({"payment_status": "cancelled"})
        assert client.delete(f"/api/admin/events/{eid}", headers=headers).status_code == 200
        with session_scope(app) as s:
            assert s.query(EventRegistration).count() == 0


class TestNewsletter:
    def test_subscribe_is_idempotent(self, client):
        headers = {"X-CSRF-Token": client.get("/auth/csrf").json["csrfToken"]}
        r = client.post("/api/newsletter/subscribe", json={"email": "Reader@Example.com", "name": "Reader"}, headers=headers)
        assert r.status_code == 201
        r = client.post("/api/newsletter/subscribe", json={"email": "reader@example.com"}, headers=headers)
        assert r.status_code == 200
        assert r.json["message"] == "Email is already subscribed to newsletter"
        r = client.post("/api/newsletter/subscribe", json={"email": "not-an-email"}, headers=headers)
        assert r.status_code == 400

    def test_admin_listing_and_export(self, client, make_user, login):
        headers = login(make_user(SUPER_ADMIN))
        client.post("/api/newsletter/subscribe", json={"email": "a@example.com"}, headers=headers)
        r = client.get("/api/admin/newsletter-subscriptions")
        assert r.json["stats"] == {"total": 1, "recentSubscriptions": 1}
        r = client.get("/api/admin/newsletter-subscriptions/export")
        assert r.mimetype == "text/csv"
        assert b"a@example.com" in r.data

    def test_event_manager_reads_but_cannot_export(self, client, make_user, login):
        login(make_user(EVENT_MANAGER))
        assert client.get("/api/admin/newsletter-subscriptions").status_code == 200
        r = client.get("/api/admin/newsletter-subscriptions/export")
        assert r.status_code == 403
        assert r.json["missingPermission"] == "newsletter.export"

    def test_email_blast_is_recorded_not_sent(self, client, make_user, login):
        headers = login(make_user(SUPER_ADMIN))
        r = client.post("/api/admin/email-blast", json={"subject": "Hi", "content": "Body", "recipients": ["a@b.com"]}, headers=headers)
        assert r.status_code == 200
        assert r.json["details"] == {"subject": "Hi", "recipientCount": 1, "status": "not_sent"}
        assert client.post("/api/admin/email-blast", json={"subject": "Hi"}, headers=headers).status_code == 400
