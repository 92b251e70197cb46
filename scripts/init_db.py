import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.procuretrain.constants import SUPER_ADMIN
from app.procuretrain.models import User
from scripts._db_utils import script_db_url, script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the first super admin in an idempotent way.
    Does NOT overwrite an existing admin user's password; only restores the role.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@procuretrain.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    admin_phone = (os.environ.get("ADMIN_PHONE") or "+000000000").strip()

    db_url = script_db_url(database_url)

    with script_session(db_url) as s:
        user = (
            s.query(User)
            .filter(User.email == admin_email, User.role == SUPER_ADMIN, User.deleted_at.is_(None))
            .first()
        )
        if not user:
            user = s.query(User).filter(User.phone_number == admin_phone).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                first_name="System",
                last_name="Administrator",
                phone_number=admin_phone,
                role=SUPER_ADMIN,
                is_active=True,
            )
            s.add(user)
        user.role = SUPER_ADMIN
        user.is_active = True
        user.deleted_at = None

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
