from __future__ import annotations

from flask import Blueprint, current_app, g, render_template, request, session

from app.saudemax.constants import (
    ANNUAL_DISCOUNT,
    PLANS,
    REF_COOKIE_MAX_AGE,
    REF_COOKIE_NAME,
    REF_QUERY_PARAMS,
    REF_SESSION_KEY,
    annual_amount,
)
from app.saudemax.db import db_session
from app.saudemax.modules.affiliates.metrics import leaderboard
from app.saudemax.modules.affiliates.service import track_visit

bp = Blueprint("routes", __name__)


# ---------- Referral capture ----------
def _ref_from_query() -> str | None:
    for param in REF_QUERY_PARAMS:
        value = (request.args.get(param) or "").strip().upper()
        if value:
            return value[:32]
    return None


def captured_ref_code() -> str | None:
    return session.get(REF_SESSION_KEY) or (request.cookies.get(REF_COOKIE_NAME) or "").strip().upper() or None


def forget_ref_code() -> None:
    session.pop(REF_SESSION_KEY, None)
    g.clear_ref_cookie = True


@bp.before_app_request
def capture_ref_code():
    """`?ref=CODE` on a public GET: remember the code and record a visit."""
    if request.method != "GET" or request.path.startswith(("/static/", "/health", "/healthz", "/admin", "/api/")):
        return None
    code = _ref_from_query()
    if not code:
        return None
    session[REF_SESSION_KEY] = code
    g.set_ref_cookie = code
    try:
        s = db_session()
        visit = track_visit(
            s,
            code,
            page_url=request.url,
            referrer=request.referrer,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        s.commit()
        if visit is None:
            current_app.logger.info("Ignoring visit for unknown or inactive affiliate code %s", code)
    except Exception:
        current_app.logger.exception("Visit tracking failed (code=%s request_id=%s)", code, getattr(g, "request_id", None))
        db_session().rollback()
    return None


@bp.after_app_request
def persist_ref_cookie(response):
    if getattr(g, "clear_ref_cookie", False):
        response.delete_cookie(REF_COOKIE_NAME)
    elif getattr(g, "set_ref_cookie", None):
        response.set_cookie(REF_COOKIE_NAME, g.set_ref_cookie, max_age=REF_COOKIE_MAX_AGE, httponly=True, samesite="Lax")
    return response


# ---------- Public pages ----------
@bp.get("/")
def index():
    popular = [(code, plan) for code, plan in PLANS.items() if plan["popular"]]
    return render_template("public/index.html", popular_plans=popular)


@bp.get("/plans")
def plans():
    frequency = request.args.get("frequency") or "monthly"
    if frequency not in ("monthly", "annual"):
        frequency = "monthly"
    rows = [
        {"code": code, **plan, "annual": annual_amount(code)}
        for code, plan in PLANS.items()
    ]
    return render_template(
        "public/plans.html",
        plans=rows,
        frequency=frequency,
        annual_discount_pct=int(ANNUAL_DISCOUNT * 100),
    )


@bp.get("/about")
def about():
    return render_template("public/about.html")


@bp.get("/contact")
def contact():
    return render_template("public/contact.html")


@bp.get("/rules")
def rules():
    return render_template("public/rules.html")


@bp.get("/leaderboard")
def public_leaderboard():
    s = db_session()
    rows = leaderboard(s, limit=10)
    return render_template("public/leaderboard.html", rows=rows)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """Fast liveness probe. No DB access."""
    return "ok", 200
