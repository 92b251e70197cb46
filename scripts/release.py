"""
Deploy-time release phase for the registration backend.

Runs before the web process starts and refuses to continue on a
configuration that would boot but misbehave:
- DATABASE_URL must be set, and must not be SQLite in production.
- STORAGE_BACKEND=s3 needs an endpoint and credentials, otherwise every
  evidence download fails as access-denied.
- RBAC_TABLE_PATH, when set, must parse to a valid role table.

Then it migrates, seeds the first super admin, and reports how many
registrations still carry payment-evidence/ references (see
scripts/fix_evidence_paths.py). Those still resolve through the fallback
candidates, but each costs extra storage round trips.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_S3_REQUIRED = ("S3_ENDPOINT", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


class ReleaseError(RuntimeError):
    pass


def check_environment(environ: Mapping[str, str]) -> str:
    """Validate deploy settings; returns the database URL."""
    db_url = (environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise ReleaseError("DATABASE_URL is not set.")
    env = (environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise ReleaseError("Refusing a production release on a sqlite DATABASE_URL.")

    backend = (environ.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend not in ("local", "s3"):
        raise ReleaseError(f"Unknown STORAGE_BACKEND {backend!r}; expected 'local' or 's3'.")
    if backend == "s3":
        missing = [k for k in _S3_REQUIRED if not (environ.get(k) or "").strip()]
        if missing:
            raise ReleaseError(f"STORAGE_BACKEND=s3 but {', '.join(missing)} not set.")
    return db_url


def check_role_table(environ: Mapping[str, str]) -> int | None:
    """Parse RBAC_TABLE_PATH if configured; returns the number of roles it defines."""
    path = (environ.get("RBAC_TABLE_PATH") or "").strip()
    if not path:
        return None
    from app.procuretrain.rbac import read_role_table

    try:
        table = read_role_table(path)
    except (OSError, ValueError) as e:
        raise ReleaseError(f"RBAC_TABLE_PATH {path}: {e}") from e
    return len(table)


def count_legacy_evidence(db_url: str) -> int:
    from scripts._db_utils import script_session
    from scripts.fix_evidence_paths import fix_evidence_paths

    with script_session(db_url) as s:
        pending = fix_evidence_paths(s, dry_run=True)
        s.rollback()
    return len(pending)


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def run_release(environ: Mapping[str, str] | None = None) -> int:
    """Returns the number of registrations still on legacy evidence references."""
    environ = os.environ if environ is None else environ
    db_url = check_environment(environ)
    roles = check_role_table(environ)
    print(f"Role table: {'built-in' if roles is None else f'{roles} roles from RBAC_TABLE_PATH'}", flush=True)

    print("Running Alembic migrations...", flush=True)
    migrate(db_url)

    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("Super admin seed checked.", flush=True)

    legacy = count_legacy_evidence(db_url)
    if legacy:
        print(
            f"WARNING: {legacy} registration(s) still reference payment-evidence/; "
            "run scripts/fix_evidence_paths.py to rewrite them.",
            flush=True,
        )
    return legacy


def main() -> None:
    try:
        run_release()
    except ReleaseError as e:
        print(f"Release aborted: {e}", flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
