from __future__ import annotations

import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.saudemax.models import AuditEvent, User


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.

    While an admin is impersonating someone, the admin is recorded as the actor and
    the impersonated user id goes into metadata.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    impersonator: User | None = getattr(g, "impersonator", None) if in_request else None

    meta = dict(metadata or {})
    real_actor = actor
    if impersonator is not None and actor is not None and actor.id != impersonator.id:
        meta.setdefault("impersonated_user_id", actor.id)
        real_actor = impersonator

    ev = AuditEvent(
        request_id=rid,
        actor_user_id=real_actor.id if real_actor else None,
        actor_user_email=real_actor.email if real_actor else None,
        actor_role=real_actor.role_key if real_actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(meta, sort_keys=True, default=str) if meta else None,
        client_ip=(request.remote_addr or "unknown") if in_request else None,
    )
    s.add(ev)
    return ev


def event_metadata(ev: AuditEvent) -> dict[str, Any]:
    if not ev.metadata_json:
        return {}
    try:
        value = json.loads(ev.metadata_json)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}
