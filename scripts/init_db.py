import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm.models import User
from app.crm.rbac import Role
from scripts._db_utils import script_database_url, script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the SuperAdmin account in an idempotent way.
    An existing user with the same name is promoted and re-activated, never duplicated.
    """
    admin_name = (os.environ.get("ADMIN_NAME") or "admin").strip()
    db_url = script_database_url(database_url)

    # Direct engine/session so release can run without importing app.crm.wsgi.
    with script_session(db_url) as s:
        user = s.query(User).filter(User.name == admin_name).one_or_none()
        if not user:
            user = User(name=admin_name, role=Role.SUPER_ADMIN, is_active=True)
            s.add(user)
        else:
            user.role = Role.SUPER_ADMIN
            user.is_active = True
            user.related_sales_id = None

    print("Initialized database (seed_only).")
    print(f"SuperAdmin: {admin_name}")


def main() -> None:
    seed_only()


if __name__ == "__main__":
    main()
