from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING

from werkzeug.security import generate_password_hash

from app.saudemax.audit import record_event
from app.saudemax.models import Role, User
from app.saudemax.rbac import ROLE_KEYS

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_signup_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    email = normalize_email(payload.get("email"))
    if not email or not _EMAIL_RE.match(email):
        errors.append("A valid email address is required.")
    password = payload.get("password") or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if payload.get("password_confirm") is not None and payload.get("password_confirm") != password:
        errors.append("Passwords do not match.")
    lang = (payload.get("preferred_language") or "en").strip()
    if lang not in ("en", "pt"):
        errors.append("Preferred language must be 'en' or 'pt'.")
    return errors


def get_role(s: "Session", key: str) -> Role:
    """Fetch a role by key, creating it when the seed has not run yet."""
    role = s.query(Role).filter(Role.key == key).one_or_none()
    if role is None:
        role = Role(key=key, name=key.replace("_", " ").title())
        s.add(role)
        s.flush()
    return role


def create_user(
    s: "Session",
    *,
    email: str,
    password: str,
    full_name: str | None = None,
    preferred_language: str = "en",
    role_key: str = "member",
) -> User:
    email = normalize_email(email)
    if s.query(User).filter(User.email == email).one_or_none() is not None:
        raise ValueError("An account with this email already exists.")
    now = datetime.utcnow()
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        full_name=(full_name or "").strip() or None,
        preferred_language=preferred_language or "en",
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    user.roles.append(get_role(s, role_key))
    s.add(user)
    s.flush()
    return user


def ensure_role(s: "Session", user: User, role_key: str) -> None:
    role = get_role(s, role_key)
    if role not in user.roles:
        user.roles.append(role)


def assign_role(s: "Session", target: User, role_key: str, actor: User) -> User:
    """Replace the user's roles with exactly ``role_key``."""
    if role_key not in ROLE_KEYS:
        raise ValueError(f"Invalid role. Must be one of: {', '.join(ROLE_KEYS)}")
    if target.id == actor.id and role_key != "admin":
        raise ValueError("You cannot remove your own admin role.")
    old_keys = sorted(r.key for r in target.roles)
    target.roles = [get_role(s, role_key)]
    target.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="user.assign_role",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"email": target.email, "old_roles": old_keys, "new_role": role_key},
    )
    return target


def update_profile(s: "Session", user: User, payload: dict) -> dict:
    changes: dict[str, dict] = {}
    full_name = (payload.get("full_name") or "").strip() or None
    if full_name != user.full_name:
        changes["full_name"] = {"old": user.full_name, "new": full_name}
        user.full_name = full_name
    lang = (payload.get("preferred_language") or user.preferred_language).strip()
    if lang in ("en", "pt") and lang != user.preferred_language:
        changes["preferred_language"] = {"old": user.preferred_language, "new": lang}
        user.preferred_language = lang
    if changes:
        user.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="user.update_profile",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"changes": changes},
        )
    return changes
