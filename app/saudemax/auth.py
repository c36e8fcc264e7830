from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.saudemax.accounts import create_user, normalize_email, validate_signup_payload
from app.saudemax.audit import record_event
from app.saudemax.db import db_session
from app.saudemax.impersonation import end_impersonation, resolve_impersonation
from app.saudemax.models import User
from app.saudemax.modules.affiliates.service import ReferralError, track_referral
from app.saudemax.rbac import home_endpoint
from app.saudemax.routes import captured_ref_code, forget_ref_code

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _safe_next(nxt: str) -> str | None:
    # Only local paths, no open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.

    While an admin impersonates someone, g.current_user is the target and
    g.impersonator is the admin. Also assigns a per-request request_id.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.impersonator = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.clear()
            g.current_user = None
            return
        target = resolve_impersonation(s, user)
        if target is not None:
            g.impersonator = user
            g.current_user = target
        else:
            g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = normalize_email(request.form.get("email"))
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            flash("Invalid email or password.", "danger")
            return redirect(url_for("auth.login_get"))

        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return redirect(_safe_next(nxt) or url_for(home_endpoint(user)))
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.get("/signup")
def signup_get():
    return render_template("auth/signup.html", form={}, ref_code=captured_ref_code())


@bp.post("/signup")
def signup_post():
    s = db_session()
    payload = {
        "email": request.form.get("email"),
        "password": request.form.get("password"),
        "password_confirm": request.form.get("password_confirm") or "",
        "full_name": request.form.get("full_name"),
        "preferred_language": request.form.get("preferred_language") or "en",
    }
    errors = validate_signup_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("auth/signup.html", form=payload, ref_code=captured_ref_code()), 400

    try:
        user = create_user(
            s,
            email=payload["email"],
            password=payload["password"],
            full_name=payload["full_name"],
            preferred_language=payload["preferred_language"],
            role_key="member",
        )
    except ValueError as e:
        flash(str(e), "danger")
        return render_template("auth/signup.html", form=payload, ref_code=captured_ref_code()), 400

    record_event(s, actor=user, action="auth.signup", entity_type="User", entity_id=str(user.id))

    code = captured_ref_code()
    if code:
        try:
            track_referral(s, code, conversion_type="signup", referred_user_id=user.id, actor=user)
        except ReferralError as e:
            # Stale or inactive code: the account is still created.
            current_app.logger.info("Signup referral not attributed (code=%s): %s", code, e)
        forget_ref_code()

    s.commit()
    session["user_id"] = user.id
    flash("Welcome to SaudeMAX! Your account has been created.", "success")
    return redirect(url_for("members.enroll_get"))


@bp.get("/logout")
def logout():
    s = db_session()
    admin = getattr(g, "impersonator", None)
    if admin is not None:
        end_impersonation(s, admin)
    user = admin or getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return redirect(url_for("routes.index"))
