from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.saudemax.models import User

ROLE_KEYS = ("member", "affiliate", "advisor", "admin")


def user_has_role(user: User | None, role_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return any(r.key == role_key for r in user.roles or [])


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    # Admins hold every permission.
    if user_has_role(user, "admin"):
        return True
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> login
            if not user or not user.is_active:
                nxt = request.full_path or request.path
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            nxt = request.full_path or request.path
            if nxt.endswith("?"):
                nxt = nxt[:-1]
            return redirect(url_for("auth.login_get", next=nxt))
        return fn(*args, **kwargs)

    return wrapped


def home_endpoint(user: User | None) -> str:
    """Where a user lands after login, by primary role."""
    if user is None:
        return "routes.index"
    key = user.role_key
    if key in ("admin", "advisor"):
        return "admin.index"
    if key == "affiliate":
        return "affiliates.dashboard"
    return "members.dashboard"
