import hmac
import secrets

from flask import session, Request


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")

    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")

    expected = session.get("csrf_token")
    return bool(token and expected and hmac.compare_digest(str(token), str(expected)))


def validate_bearer_key(req: Request, expected: str) -> bool:
    """Check `Authorization: Bearer <key>` against the configured automation key."""
    if not expected:
        return False
    header = (req.headers.get("Authorization") or "").strip()
    if not header.lower().startswith("bearer "):
        return False
    supplied = header[7:].strip()
    return hmac.compare_digest(supplied, expected)
