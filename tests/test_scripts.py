import json
import os

import pytest

from app.procuretrain.constants import SUPER_ADMIN
from app.procuretrain.db import session_scope
from app.procuretrain.models import AuditEvent, User
from app.procuretrain.modules.registrations.models import EventRegistration, EvidenceHistory
from scripts.fix_evidence_paths import fix_evidence_paths
from scripts.init_db import seed_only
from scripts.release import ReleaseError, check_environment, check_role_table, count_legacy_evidence
from scripts.start import gunicorn_argv, parse_port, worker_timeout


class TestFixEvidencePaths:
    def test_rewrites_legacy_references(self, app, make_user, make_event, make_registration):
        uid, eid = make_user(), make_event()
        legacy = make_registration(uid, eid, payment_evidence=f"payment-evidence/{uid}/{eid}/a.pdf")
        current = make_registration(make_user(), eid, payment_evidence="evidence/x/y/b.pdf")

        with session_scope(app) as s:
            changed = fix_evidence_paths(s)
        assert changed == [(legacy, f"payment-evidence/{uid}/{eid}/a.pdf", f"evidence/{uid}/{eid}/a.pdf")]

        with session_scope(app) as s:
            assert s.get(EventRegistration, legacy).payment_evidence == f"evidence/{uid}/{eid}/a.pdf"
            assert s.get(EventRegistration, current).payment_evidence == "evidence/x/y/b.pdf"
            assert [h.file_path for h in s.query(EvidenceHistory).all()] == [f"evidence/{uid}/{eid}/a.pdf"]
            assert s.query(AuditEvent).filter(AuditEvent.action == "evidence.path_fix").count() == 1

    def test_dry_run_writes_nothing(self, app, make_user, make_event, make_registration):
        uid, eid = make_user(), make_event()
        rid = make_registration(uid, eid, payment_evidence=f"payment-evidence/{uid}/{eid}/a.pdf")

        with session_scope(app) as s:
            assert len(fix_evidence_paths(s, dry_run=True)) == 1

        with session_scope(app) as s:
            assert s.get(EventRegistration, rid).payment_evidence.startswith("payment-evidence/")
            assert s.query(EvidenceHistory).count() == 0


class TestSeed:
    def test_seed_is_idempotent(self, app, monkeypatch):
        monkeypatch.setenv("ADMIN_EMAIL", "Root@Example.com")
        monkeypatch.setenv("ADMIN_PASSWORD", "seed-password")
        monkeypatch.setenv("ADMIN_PHONE", "+260960000000")

        seed_only()
        seed_only()

        with session_scope(app) as s:
            admins = s.query(User).filter(User.role == SUPER_ADMIN).all()
            assert [a.email for a in admins] == ["root@example.com"]


class TestRelease:
    def test_requires_database_url(self):
        with pytest.raises(ReleaseError, match="DATABASE_URL"):
            check_environment({})

    def test_refuses_sqlite_in_production(self):
        with pytest.raises(ReleaseError, match="sqlite"):
            check_environment({"DATABASE_URL": "sqlite:///x.db", "ENV": "production"})
        assert check_environment({"DATABASE_URL": "sqlite:///x.db", "ENV": "development"}) == "sqlite:///x.db"

    def test_s3_backend_needs_credentials(self):
        env = {"DATABASE_URL": "postgresql://db/pt", "STORAGE_BACKEND": "s3", "S3_ENDPOINT": "https://s3.example.com"}
        with pytest.raises(ReleaseError, match="S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY"):
            check_environment(env)
        env.update(S3_ACCESS_KEY_ID="key", S3_SECRET_ACCESS_KEY="secret")
        assert check_environment(env) == "postgresql://db/pt"

    def test_unknown_storage_backend(self):
        with pytest.raises(ReleaseError, match="STORAGE_BACKEND"):
            check_environment({"DATABASE_URL": "postgresql://db/pt", "STORAGE_BACKEND": "ftp"})

    def test_role_table_validation(self, tmp_path):
        assert check_role_table({}) is None

        good = tmp_path / "roles.json"
        good.write_text(json.dumps({"super_admin": ["admin.system_settings"], "ordinary_user": ["events.read"]}))
        assert check_role_table({"RBAC_TABLE_PATH": str(good)}) == 2

        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"super_admin": ["events.teleport"]}))
        with pytest.raises(ReleaseError, match="events.teleport"):
            check_role_table({"RBAC_TABLE_PATH": str(bad)})
        with pytest.raises(ReleaseError):
            check_role_table({"RBAC_TABLE_PATH": str(tmp_path / "missing.json")})

    def test_counts_legacy_evidence_without_writing(self, app, make_user, make_event, make_registration):
        uid, eid = make_user(), make_event()
        rid = make_registration(uid, eid, payment_evidence=f"payment-evidence/{uid}/{eid}/a.pdf")
        make_registration(make_user(), eid, payment_evidence="evidence/x/y/b.pdf")

        assert count_legacy_evidence(os.environ["DATABASE_URL"]) == 1
        with session_scope(app) as s:
            assert s.get(EventRegistration, rid).payment_evidence.startswith("payment-evidence/")


class TestStart:
    def test_port_parsing(self):
        assert parse_port(None) == 8080
        assert parse_port(" 5000 ") == 5000
        for bad in ("0", "70000", "http"):
            with pytest.raises(ValueError):
                parse_port(bad)

    def test_worker_timeout_covers_slow_storage_lookups(self):
        assert worker_timeout({}) == 70
        assert worker_timeout({"EVIDENCE_PROBE_TIMEOUT_SECONDS": "10"}) == 130
        assert worker_timeout({"EVIDENCE_PROBE_TIMEOUT_SECONDS": "0.5"}) == 30

    def test_gunicorn_argv(self):
        argv = gunicorn_argv({"PORT": "9000", "WEB_CONCURRENCY": "4"})
        assert argv[:2] == ["gunicorn", "app.wsgi:app"]
        assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
        assert argv[argv.index("--workers") + 1] == "4"
        assert argv[argv.index("--timeout") + 1] == "70"
