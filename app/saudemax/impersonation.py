from __future__ import annotations

import secrets
from datetime import datetime
from typing import TYPE_CHECKING

from flask import g, session

from app.saudemax.audit import record_event
from app.saudemax.models import ImpersonationSession, User
from app.saudemax.rbac import user_has_role

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

SESSION_TARGET_KEY = "impersonate_user_id"
SESSION_ROW_KEY = "impersonation_key"


class ImpersonationError(ValueError):
    pass


def is_impersonating() -> bool:
    return getattr(g, "impersonator", None) is not None


def active_session(s: "Session") -> ImpersonationSession | None:
    key = session.get(SESSION_ROW_KEY)
    if not key:
        return None
    return s.query(ImpersonationSession).filter(ImpersonationSession.session_key == key).one_or_none()


def resolve_impersonation(s: "Session", admin: User) -> User | None:
    """
    Called by the user loader once the real (session) user is known. Returns the
    impersonated user, or None when no impersonation is active or it is no longer valid.
    """
    target_id = session.get(SESSION_TARGET_KEY)
    if not target_id:
        return None
    target = s.get(User, int(target_id))
    if target is None or not target.is_active or not user_has_role(admin, "admin"):
        session.pop(SESSION_TARGET_KEY, None)
        session.pop(SESSION_ROW_KEY, None)
        return None
    return target


def start_impersonation(s: "Session", admin: User, target: User) -> ImpersonationSession:
    if not user_has_role(admin, "admin"):
        raise ImpersonationError("Only admins can impersonate users.")
    if session.get(SESSION_TARGET_KEY):
        raise ImpersonationError("End the current impersonation session first.")
    if target.id == admin.id:
        raise ImpersonationError("You cannot impersonate yourself.")
    if user_has_role(target, "admin"):
        raise ImpersonationError("You cannot impersonate another admin.")
    if not target.is_active:
        raise ImpersonationError("This account is disabled.")

    row = ImpersonationSession(
        session_key=secrets.token_hex(16),
        admin_user_id=admin.id,
        target_user_id=target.id,
        started_at=datetime.utcnow(),
    )
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=admin,
        action="impersonation_started",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"target_email": target.email, "target_role": target.role_key, "session_id": row.id},
    )
    session[SESSION_TARGET_KEY] = target.id
    session[SESSION_ROW_KEY] = row.session_key
    return row


def end_impersonation(s: "Session", admin: User) -> ImpersonationSession | None:
    row = active_session(s)
    session.pop(SESSION_TARGET_KEY, None)
    session.pop(SESSION_ROW_KEY, None)
    g.impersonator = None
    if row is None:
        return None
    row.ended_at = datetime.utcnow()
    duration = int((row.ended_at - row.started_at).total_seconds())
    record_event(
        s,
        actor=admin,
        action="impersonation_ended",
        entity_type="User",
        entity_id=str(row.target_user_id),
        metadata={
            "target_email": row.target.email if row.target else None,
            "session_id": row.id,
            "duration_seconds": duration,
        },
    )
    return row


def recent_sessions(s: "Session", limit: int = 20) -> list[ImpersonationSession]:
    return (
        s.query(ImpersonationSession)
        .order_by(ImpersonationSession.started_at.desc(), ImpersonationSession.id.desc())
        .limit(limit)
        .all()
    )
