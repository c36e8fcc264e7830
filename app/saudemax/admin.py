from __future__ import annotations

import csv
import io
from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, send_file, url_for
from sqlalchemy import or_

from app.saudemax.accounts import assign_role
from app.saudemax.analytics import (
    FUNNEL_TIMEFRAMES,
    GROWTH_TIMEFRAMES,
    PLAN_ENGAGEMENT_TIMEFRAMES,
    PLAN_TYPE_FILTERS,
    conversion_funnel,
    conversion_funnel_csv,
    growth_metrics,
    monthly_growth,
    monthly_growth_csv,
    plan_engagement,
    plan_engagement_csv,
)
from app.saudemax.audit import event_metadata
from app.saudemax.db import db_session
from app.saudemax.impersonation import ImpersonationError, end_impersonation, recent_sessions, start_impersonation
from app.saudemax.models import AuditEvent, Role, User
from app.saudemax.modules.affiliates.models import Affiliate, AffiliateWithdrawal
from app.saudemax.modules.members.models import ShareRequest, SupportTicket
from app.saudemax.rbac import ROLE_KEYS, home_endpoint, require_login, require_permission

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _csv_download(data: str, prefix: str):
    return send_file(
        io.BytesIO(data.encode("utf-8")),
        mimetype="text/csv",
        as_attachment=True,
        download_name=f"{prefix}_{date.today().strftime('%Y%m%d')}.csv",
        max_age=0,
    )


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    timeframe = request.args.get("timeframe") or "30days"
    if timeframe not in GROWTH_TIMEFRAMES:
        timeframe = "30days"
    funnel_timeframe = request.args.get("funnel") or "30days"
    if funnel_timeframe not in FUNNEL_TIMEFRAMES:
        funnel_timeframe = "30days"

    queues = {
        "pending_affiliates": s.query(Affiliate).filter(Affiliate.status == "pending").count(),
        "open_withdrawals": s.query(AffiliateWithdrawal)
        .filter(AffiliateWithdrawal.status.in_(("pending", "processing")))
        .count(),
        "share_requests_to_review": s.query(ShareRequest)
        .filter(ShareRequest.status.in_(("submitted", "under_review")))
        .count(),
        "open_tickets": s.query(SupportTicket).filter(SupportTicket.status.in_(("open", "in_progress"))).count(),
    }
    return render_template(
        "admin/index.html",
        growth=growth_metrics(s, timeframe),
        monthly=monthly_growth(s, timeframe),
        funnel=conversion_funnel(s, funnel_timeframe),
        timeframe=timeframe,
        funnel_timeframe=funnel_timeframe,
        growth_timeframes=tuple(GROWTH_TIMEFRAMES),
        funnel_timeframes=FUNNEL_TIMEFRAMES,
        queues=queues,
    )


@bp.get("/reports/growth.csv")
@require_permission("admin.view")
def growth_export():
    timeframe = request.args.get("timeframe") or "30days"
    if timeframe not in GROWTH_TIMEFRAMES:
        timeframe = "30days"
    return _csv_download(monthly_growth_csv(monthly_growth(db_session(), timeframe)), f"growth_metrics_{timeframe}")


@bp.get("/reports/funnel.csv")
@require_permission("admin.view")
def funnel_export():
    timeframe = request.args.get("funnel") or "30days"
    if timeframe not in FUNNEL_TIMEFRAMES:
        timeframe = "30days"
    return _csv_download(conversion_funnel_csv(conversion_funnel(db_session(), timeframe)), f"conversion_funnel_{timeframe}")


@bp.get("/reports/plans")
@require_permission("admin.view")
def plan_engagement_report():
    timeframe = request.args.get("timeframe") or "30"
    plan_type = request.args.get("plan_type") or "all"
    engagement = plan_engagement(db_session(), timeframe, plan_type)
    return render_template(
        "admin/reports/plans.html",
        engagement=engagement,
        timeframes=tuple(PLAN_ENGAGEMENT_TIMEFRAMES),
        plan_types=PLAN_TYPE_FILTERS,
    )


@bp.get("/reports/plans.csv")
@require_permission("admin.view")
def plan_engagement_export():
    engagement = plan_engagement(
        db_session(), request.args.get("timeframe") or "30", request.args.get("plan_type") or "all"
    )
    return _csv_download(
        plan_engagement_csv(engagement), f"plan_engagement_{engagement.plan_type}_{engagement.timeframe}days"
    )


# ============================================================================
# USERS
# ============================================================================

@bp.get("/users")
@require_permission("users.manage")
def users_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    role_filter = (request.args.get("role") or "").strip()
    q = s.query(User)
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(User.email.like(like), User.full_name.ilike(like)))
    if role_filter:
        q = q.filter(User.roles.any(Role.key == role_filter))
    users = q.order_by(User.created_at.desc(), User.id.desc()).all()
    return render_template(
        "admin/users/list.html",
        users=users,
        search=search,
        role_filter=role_filter,
        role_keys=ROLE_KEYS,
    )


@bp.post("/users/<int:user_id>/role")
@require_permission("users.manage")
def users_assign_role(user_id: int):
    s = db_session()
    target = s.get(User, user_id)
    if not target:
        abort(404)
    try:
        assign_role(s, target, (request.form.get("role") or "").strip(), _current_user())
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("admin.users_list"))
    s.commit()
    flash(f"{target.email} is now {target.role_key}.", "success")
    return redirect(url_for("admin.users_list"))


@bp.post("/users/<int:user_id>/active")
@require_permission("users.manage")
def users_toggle_active(user_id: int):
    from app.saudemax.audit import record_event

    s = db_session()
    u = _current_user()
    target = s.get(User, user_id)
    if not target:
        abort(404)
    if target.id == u.id:
        flash("You cannot disable your own account.", "danger")
        return redirect(url_for("admin.users_list"))
    target.is_active = not target.is_active
    record_event(
        s,
        actor=u,
        action="user.enable" if target.is_active else "user.disable",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"email": target.email},
    )
    s.commit()
    flash(f"{target.email} {'enabled' if target.is_active else 'disabled'}.", "success")
    return redirect(url_for("admin.users_list"))


# ============================================================================
# IMPERSONATION
# ============================================================================

@bp.get("/impersonation")
@require_permission("users.manage")
def impersonation_list():
    s = db_session()
    return render_template("admin/impersonation.html", sessions=recent_sessions(s))


@bp.post("/users/<int:user_id>/impersonate")
@require_permission("users.manage")
def impersonation_start(user_id: int):
    s = db_session()
    target = s.get(User, user_id)
    if not target:
        abort(404)
    try:
        start_impersonation(s, _current_user(), target)
    except ImpersonationError as e:
        flash(str(e), "danger")
        return redirect(url_for("admin.users_list"))
    s.commit()
    flash(f"You are now viewing the site as {target.email}.", "warning")
    return redirect(url_for(home_endpoint(target)))


@bp.post("/impersonation/end")
@require_login
def impersonation_end():
    s = db_session()
    admin = getattr(g, "impersonator", None)
    if admin is None:
        flash("No impersonation session is active.", "info")
        return redirect(url_for(home_endpoint(_current_user())))
    end_impersonation(s, admin)
    s.commit()
    g.current_user = admin
    flash("Impersonation ended.", "success")
    return redirect(url_for("admin.impersonation_list"))


# ============================================================================
# AUDIT
# ============================================================================

def _filtered_audit_query(s):
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """Last 200 events, filterable by action, actor email and date range (YYYY-MM-DD)."""
    s = db_session()
    if (request.args.get("date_from") or "").strip() and not _parse_date(request.args.get("date_from") or ""):
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not _parse_date(request.args.get("date_to") or ""):
        flash("date_to must be YYYY-MM-DD", "danger")
    events = _filtered_audit_query(s).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=(request.args.get("action") or "").strip(),
        actor_email=(request.args.get("actor_email") or "").strip(),
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


@bp.get("/audit/export.csv")
@require_permission("audit.view")
def audit_export():
    s = db_session()
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Timestamp", "Actor Email", "Actor Role", "Action", "Entity Type", "Entity ID", "Reason", "Client IP", "Metadata"])
    for ev in _filtered_audit_query(s).all():
        meta = event_metadata(ev)
        w.writerow(
            [
                ev.created_at.isoformat(sep=" ", timespec="seconds") if ev.created_at else "",
                ev.actor_user_email or "",
                ev.actor_role or "",
                ev.action,
                ev.entity_type or "",
                ev.entity_id or "",
                ev.reason or "",
                ev.client_ip or "",
                "; ".join(f"{k}={v}" for k, v in sorted(meta.items())),
            ]
        )
    return _csv_download(buf.getvalue(), "audit_log")
