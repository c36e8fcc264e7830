import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.saudemax.models import Permission, Role, User


PERMISSIONS = {
    "admin.view": "Admin: view back office",
    "users.manage": "Users: assign roles and impersonate",
    "audit.view": "Audit: view and export",
    # Affiliate program
    "affiliates.view": "Affiliates: view",
    "affiliates.manage": "Affiliates: approve, create and process referrals",
    "withdrawals.process": "Withdrawals: process payouts",
    "commission_rules.manage": "Commission Rules: manage",
    # Members
    "members.view": "Members: view",
    "members.manage": "Members: change status and billing",
    "share_requests.review": "Share Requests: review",
    "support.manage": "Support: handle tickets",
    "documents.manage": "Documents: upload and download",
}

# admin also passes every check implicitly (rbac.user_has_permission)
ROLE_PERMISSIONS = {
    "member": [],
    "affiliate": [],
    "advisor": [
        "admin.view",
        "members.view",
        "share_requests.review",
        "support.manage",
        "documents.manage",
    ],
    "admin": list(PERMISSIONS),
}

ROLE_NAMES = {
    "member": "Member",
    "affiliate": "Affiliate",
    "advisor": "Advisor",
    "admin": "Administrator",
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def seed_roles(s: Session) -> dict[str, Role]:
    """Permissions and roles (idempotent). Existing grants are kept."""
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, perm_keys in ROLE_PERMISSIONS.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=ROLE_NAMES[key])
            s.add(role)
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
        roles[key] = role
    s.flush()
    return roles


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@saudemax.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///saudemax.db").strip()

    # Direct engine/session so release can run this without importing app.wsgi.
    with _session_scope(db_url) as s:
        roles = seed_roles(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                full_name="SaudeMAX Admin",
                is_active=True,
            )
            s.add(user)
            print(f"Created admin user {admin_email}", flush=True)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])


def main() -> None:
    seed_only(database_url=None)
    print("Initialized database (seed_only).")


if __name__ == "__main__":
    main()
