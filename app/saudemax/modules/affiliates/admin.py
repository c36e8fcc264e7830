from __future__ import annotations

import io
import math
from datetime import date

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for
from sqlalchemy import or_

from app.saudemax.db import db_session
from app.saudemax.models import User
from app.saudemax.modules.affiliates.metrics import (
    SORT_KEYS,
    TIMEFRAMES,
    affiliate_metrics,
    leaderboard,
    referral_metrics_by_url,
    referral_report_csv,
    update_leaderboard,
)
from app.saudemax.modules.affiliates.models import Affiliate, AffiliateLink, AffiliateReferral, AffiliateWithdrawal
from app.saudemax.modules.affiliates.service import (
    AFFILIATE_STATUSES,
    AFFILIATE_TRANSITIONS,
    PAYOUT_METHODS,
    AffiliateError,
    ReferralError,
    create_affiliate_user,
    create_link,
    get_affiliate_for_user,
    mark_referrals_paid,
    process_conversion,
    register_affiliate,
    set_affiliate_status,
    update_affiliate,
)
from app.saudemax.modules.affiliates.withdrawals import (
    WITHDRAWAL_STATUSES,
    WITHDRAWAL_TRANSITIONS,
    WithdrawalError,
    available_balance,
    open_withdrawal,
    request_withdrawal,
    transition_withdrawal,
    withdrawal_summary,
    withdrawals_csv,
)
from app.saudemax.rbac import require_login, require_permission

bp = Blueprint("affiliates", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _csv_response(data: str, prefix: str):
    filename = f"{prefix}_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(data.encode("utf-8")),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


def _parse_amount(raw: str | None) -> float | None:
    raw = (raw or "").strip().replace(",", "").lstrip("$")
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _own_affiliate() -> Affiliate | None:
    return get_affiliate_for_user(db_session(), _current_user())


# ============================================================================
# AFFILIATE PORTAL
# ============================================================================

@bp.get("/affiliate/register")
@require_login
def register_get():
    if _own_affiliate() is not None:
        return redirect(url_for("affiliates.dashboard"))
    u = _current_user()
    return render_template(
        "affiliate/register.html",
        form={"email": u.email, "payout_email": u.email, "payout_method": "paypal"},
        payout_methods=PAYOUT_METHODS,
    )


@bp.post("/affiliate/register")
@require_login
def register_post():
    s = db_session()
    u = _current_user()
    payload = {
        "email": request.form.get("email") or u.email,
        "payout_email": request.form.get("payout_email"),
        "payout_method": request.form.get("payout_method"),
    }
    if request.form.get("agree_terms") != "1":
        flash("You must accept the affiliate program terms.", "danger")
        return render_template("affiliate/register.html", form=payload, payout_methods=PAYOUT_METHODS), 400
    try:
        register_affiliate(
            s,
            u,
            payload,
            base_url=current_app.config["APP_BASE_URL"],
            commission_rate=current_app.config["DEFAULT_COMMISSION_RATE"],
        )
    except AffiliateError as e:
        flash(str(e), "danger")
        return render_template("affiliate/register.html", form=payload, payout_methods=PAYOUT_METHODS), 400
    s.commit()
    flash("Application received. Your affiliate account is pending approval.", "success")
    return redirect(url_for("affiliates.dashboard"))


@bp.get("/affiliate")
@require_login
def dashboard():
    s = db_session()
    affiliate = _own_affiliate()
    if affiliate is None:
        return redirect(url_for("affiliates.register_get"))
    metrics = affiliate_metrics(s, affiliate)
    recent = (
        s.query(AffiliateReferral)
        .filter(AffiliateReferral.affiliate_id == affiliate.id)
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .limit(10)
        .all()
    )
    links = (
        s.query(AffiliateLink)
        .filter(AffiliateLink.affiliate_id == affiliate.id)
        .order_by(AffiliateLink.created_at.desc())
        .all()
    )
    return render_template(
        "affiliate/dashboard.html",
        affiliate=affiliate,
        metrics=metrics,
        recent_referrals=recent,
        links=links,
        balance=available_balance(s, affiliate),
    )


def _report_args() -> dict:
    timeframe = request.args.get("timeframe") or "month"
    sort_by = request.args.get("sort") or "earnings"
    return {
        "timeframe": timeframe if timeframe in TIMEFRAMES else "month",
        "search": (request.args.get("q") or "").strip(),
        "sort_by": sort_by if sort_by in SORT_KEYS else "earnings",
        "descending": (request.args.get("dir") or "desc") != "asc",
    }


@bp.get("/affiliate/referrals")
@require_login
def referrals_report():
    s = db_session()
    affiliate = _own_affiliate()
    if affiliate is None:
        return redirect(url_for("affiliates.register_get"))
    args = _report_args()
    report = referral_metrics_by_url(s, affiliate, **args)
    commissions = (
        s.query(AffiliateReferral)
        .filter(AffiliateReferral.affiliate_id == affiliate.id)
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .all()
    )
    return render_template(
        "affiliate/referrals.html",
        affiliate=affiliate,
        report=report,
        commissions=commissions,
        timeframes=TIMEFRAMES,
        sort_keys=SORT_KEYS,
        **args,
    )


@bp.get("/affiliate/referrals/export.csv")
@require_login
def referrals_export():
    s = db_session()
    affiliate = _own_affiliate()
    if affiliate is None:
        abort(404)
    report = referral_metrics_by_url(s, affiliate, **_report_args())
    return _csv_response(referral_report_csv(report), f"referral_urls_{affiliate.affiliate_code}")


@bp.post("/affiliate/links")
@require_login
def links_create():
    s = db_session()
    affiliate = _own_affiliate()
    if affiliate is None:
        abort(404)
    if affiliate.status != "active":
        flash("Campaign links are available once your account is approved.", "danger")
        return redirect(url_for("affiliates.dashboard"))
    try:
        link = create_link(
            s,
            affiliate,
            request.form.get("name") or "",
            request.form.get("source") or "",
            current_app.config["APP_BASE_URL"],
        )
    except AffiliateError as e:
        flash(str(e), "danger")
        return redirect(url_for("affiliates.dashboard"))
    s.commit()
    flash(f"Link created: {link.referral_url}", "success")
    return redirect(url_for("affiliates.dashboard"))


@bp.get("/affiliate/withdrawals")
@require_login
def withdrawals_get():
    s = db_session()
    affiliate = _own_affiliate()
    if affiliate is None:
        return redirect(url_for("affiliates.register_get"))
    history = (
        s.query(AffiliateWithdrawal)
        .filter(AffiliateWithdrawal.affiliate_id == affiliate.id)
        .order_by(AffiliateWithdrawal.requested_at.desc(), AffiliateWithdrawal.id.desc())
        .all()
    )
    return render_template(
        "affiliate/withdrawals.html",
        affiliate=affiliate,
        withdrawals=history,
        balance=available_balance(s, affiliate),
        open_request=open_withdrawal(s, affiliate),
        min_amount=current_app.config["MIN_WITHDRAWAL_AMOUNT"],
        payout_methods=PAYOUT_METHODS,
    )


@bp.post("/affiliate/withdrawals")
@require_login
def withdrawals_post():
    s = db_session()
    u = _current_user()
    affiliate = _own_affiliate()
    if affiliate is None:
        abort(404)
    try:
        request_withdrawal(
            s,
            affiliate,
            amount=_parse_amount(request.form.get("amount")),
            method=(request.form.get("method") or affiliate.payout_method or "").strip(),
            payout_email=request.form.get("payout_email"),
            user=u,
            min_amount=current_app.config["MIN_WITHDRAWAL_AMOUNT"],
        )
    except WithdrawalError as e:
        flash(str(e), "danger")
        return redirect(url_for("affiliates.withdrawals_get"))
    s.commit()
    flash("Withdrawal request submitted.", "success")
    return redirect(url_for("affiliates.withdrawals_get"))


@bp.get("/affiliate/settings")
@require_login
def settings_get():
    affiliate = _own_affiliate()
    if affiliate is None:
        return redirect(url_for("affiliates.register_get"))
    return render_template("affiliate/settings.html", affiliate=affiliate, payout_methods=PAYOUT_METHODS)


@bp.post("/affiliate/settings")
@require_login
def settings_post():
    s = db_session()
    u = _current_user()
    affiliate = _own_affiliate()
    if affiliate is None:
        abort(404)
    try:
        update_affiliate(
            s,
            affiliate,
            {"payout_method": request.form.get("payout_method"), "payout_email": request.form.get("payout_email")},
            u,
        )
    except AffiliateError as e:
        flash(str(e), "danger")
        return redirect(url_for("affiliates.settings_get"))
    s.commit()
    flash("Payout settings saved.", "success")
    return redirect(url_for("affiliates.settings_get"))


# ============================================================================
# ADMIN: AFFILIATES
# ============================================================================

@bp.get("/admin/affiliates")
@require_permission("affiliates.view")
def admin_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()

    q = s.query(Affiliate)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Affiliate.email.ilike(like), Affiliate.affiliate_code.ilike(like)))
    if status_filter:
        q = q.filter(Affiliate.status == status_filter)
    affiliates = q.order_by(Affiliate.created_at.desc(), Affiliate.id.desc()).all()
    return render_template(
        "admin/affiliates/list.html",
        affiliates=affiliates,
        search=search,
        status_filter=status_filter,
        statuses=AFFILIATE_STATUSES,
    )


@bp.get("/admin/affiliates/export.csv")
@require_permission("affiliates.view")
def admin_export():
    from app.saudemax.analytics import affiliates_csv

    s = db_session()
    affiliates = s.query(Affiliate).order_by(Affiliate.created_at.asc(), Affiliate.id.asc()).all()
    return _csv_response(affiliates_csv(affiliates), "affiliates")


@bp.get("/admin/affiliates/new")
@require_permission("affiliates.manage")
def admin_new_get():
    return render_template("admin/affiliates/new.html", payout_methods=PAYOUT_METHODS, form={})


@bp.post("/admin/affiliates/new")
@require_permission("affiliates.manage")
def admin_new_post():
    s = db_session()
    u = _current_user()
    payload = {
        "email": request.form.get("email"),
        "password": request.form.get("password"),
        "full_name": request.form.get("full_name"),
        "payout_email": request.form.get("payout_email"),
        "payout_method": request.form.get("payout_method") or "paypal",
    }
    if len(payload["password"] or "") < 8:
        flash("Password must be at least 8 characters.", "danger")
        return render_template("admin/affiliates/new.html", payout_methods=PAYOUT_METHODS, form=payload), 400
    try:
        affiliate = create_affiliate_user(
            s,
            payload,
            base_url=current_app.config["APP_BASE_URL"],
            commission_rate=current_app.config["DEFAULT_COMMISSION_RATE"],
            actor=u,
        )
    except (ValueError, AffiliateError) as e:
        flash(str(e), "danger")
        return render_template("admin/affiliates/new.html", payout_methods=PAYOUT_METHODS, form=payload), 400
    s.commit()
    flash(f"Affiliate {affiliate.affiliate_code} created for {affiliate.email}.", "success")
    return redirect(url_for("affiliates.admin_detail", affiliate_id=affiliate.id))


@bp.get("/admin/affiliates/<int:affiliate_id>")
@require_permission("affiliates.view")
def admin_detail(affiliate_id: int):
    s = db_session()
    affiliate = s.get(Affiliate, affiliate_id)
    if not affiliate:
        abort(404)
    referrals = (
        s.query(AffiliateReferral)
        .filter(AffiliateReferral.affiliate_id == affiliate.id)
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .all()
    )
    withdrawals = (
        s.query(AffiliateWithdrawal)
        .filter(AffiliateWithdrawal.affiliate_id == affiliate.id)
        .order_by(AffiliateWithdrawal.requested_at.desc())
        .all()
    )
    return render_template(
        "admin/affiliates/detail.html",
        affiliate=affiliate,
        referrals=referrals,
        withdrawals=withdrawals,
        metrics=affiliate_metrics(s, affiliate),
        balance=available_balance(s, affiliate),
        next_statuses=AFFILIATE_TRANSITIONS.get(affiliate.status, ()),
    )


@bp.post("/admin/affiliates/<int:affiliate_id>/status")
@require_permission("affiliates.manage")
def admin_set_status(affiliate_id: int):
    s = db_session()
    u = _current_user()
    affiliate = s.get(Affiliate, affiliate_id)
    if not affiliate:
        abort(404)
    rate = _parse_amount(request.form.get("commission_rate"))
    try:
        set_affiliate_status(
            s,
            affiliate,
            (request.form.get("status") or "").strip(),
            u,
            reason=(request.form.get("reason") or "").strip() or None,
            commission_rate=rate,
        )
    except AffiliateError as e:
        flash(str(e), "danger")
        return redirect(url_for("affiliates.admin_detail", affiliate_id=affiliate.id))
    s.commit()
    flash(f"Affiliate {affiliate.affiliate_code} is now {affiliate.status}.", "success")
    return redirect(url_for("affiliates.admin_detail", affiliate_id=affiliate.id))


@bp.post("/admin/referrals/<int:referral_id>/process")
@require_permission("affiliates.manage")
def admin_process_referral(referral_id: int):
    s = db_session()
    u = _current_user()
    referral = s.get(AffiliateReferral, referral_id)
    if not referral:
        abort(404)
    try:
        process_conversion(
            s,
            referral,
            (request.form.get("status") or "").strip(),
            notes=request.form.get("notes"),
            actor=u,
        )
    except ReferralError as e:
        flash(str(e), "danger")
        return redirect(url_for("affiliates.admin_detail", affiliate_id=referral.affiliate_id))
    s.commit()
    flash(f"Referral {referral.status}.", "success")
    return redirect(url_for("affiliates.admin_detail", affiliate_id=referral.affiliate_id))


@bp.post("/admin/affiliates/<int:affiliate_id>/mark-paid")
@require_permission("withdrawals.process")
def admin_mark_paid(affiliate_id: int):
    s = db_session()
    u = _current_user()
    affiliate = s.get(Affiliate, affiliate_id)
    if not affiliate:
        abort(404)
    ids = [int(x) for x in request.form.getlist("referral_ids") if x.isdigit()]
    referrals = (
        s.query(AffiliateReferral)
        .filter(AffiliateReferral.affiliate_id == affiliate.id, AffiliateReferral.id.in_(ids))
        .all()
        if ids
        else []
    )
    paid = mark_referrals_paid(s, referrals, actor=u)
    s.commit()
    if paid:
        flash(f"Marked {len(paid)} commission(s) as paid.", "success")
    else:
        flash("No approved commissions selected.", "danger")
    return redirect(url_for("affiliates.admin_detail", affiliate_id=affiliate.id))


# ============================================================================
# ADMIN: WITHDRAWALS
# ============================================================================

def _filtered_withdrawals(s) -> tuple[list[AffiliateWithdrawal], str]:
    status_filter = (request.args.get("status") or "").strip()
    q = s.query(AffiliateWithdrawal)
    if status_filter in WITHDRAWAL_STATUSES:
        q = q.filter(AffiliateWithdrawal.status == status_filter)
    else:
        status_filter = ""
    rows = q.order_by(AffiliateWithdrawal.requested_at.desc(), AffiliateWithdrawal.id.desc()).all()
    return rows, status_filter


@bp.get("/admin/withdrawals")
@require_permission("withdrawals.process")
def admin_withdrawals():
    s = db_session()
    rows, status_filter = _filtered_withdrawals(s)
    summary = withdrawal_summary(s.query(AffiliateWithdrawal).all())
    return render_template(
        "admin/withdrawals/list.html",
        withdrawals=rows,
        summary=summary,
        status_filter=status_filter,
        statuses=WITHDRAWAL_STATUSES,
        transitions=WITHDRAWAL_TRANSITIONS,
    )


@bp.get("/admin/withdrawals/export.csv")
@require_permission("withdrawals.process")
def admin_withdrawals_export():
    s = db_session()
    rows, _ = _filtered_withdrawals(s)
    return _csv_response(withdrawals_csv(rows), "withdrawals")


@bp.post("/admin/withdrawals/<int:withdrawal_id>/transition")
@require_permission("withdrawals.process")
def admin_withdrawal_transition(withdrawal_id: int):
    s = db_session()
    u = _current_user()
    w = s.get(AffiliateWithdrawal, withdrawal_id)
    if not w:
        abort(404)
    new_status = (request.form.get("status") or "").strip()
    try:
        transition_withdrawal(
            s,
            w,
            new_status,
            actor=u,
            config=current_app.config,
            transaction_id=request.form.get("transaction_id"),
            notes=request.form.get("notes"),
        )
    except WithdrawalError as e:
        flash(str(e), "danger")
        return redirect(url_for("affiliates.admin_withdrawals"))
    s.commit()
    flash(f"Withdrawal #{w.id} marked {w.status}.", "success")
    return redirect(url_for("affiliates.admin_withdrawals"))


# ============================================================================
# ADMIN: LEADERBOARD
# ============================================================================

@bp.get("/admin/leaderboard")
@require_permission("affiliates.view")
def admin_leaderboard():
    from app.saudemax.models import SystemSetting
    from app.saudemax.modules.affiliates.metrics import LAST_LEADERBOARD_UPDATE

    s = db_session()
    try:
        limit = int(request.args.get("limit") or 25)
    except ValueError:
        limit = 25
    rows = leaderboard(s, limit=limit, show_earnings=True, show_conversion=True)
    setting = s.get(SystemSetting, LAST_LEADERBOARD_UPDATE)
    return render_template(
        "admin/affiliates/leaderboard.html",
        rows=rows,
        limit=limit,
        last_update=setting.value if setting else None,
    )


@bp.post("/admin/leaderboard/update")
@require_permission("affiliates.manage")
def admin_leaderboard_update():
    s = db_session()
    result = update_leaderboard(s, force=request.form.get("force") == "1")
    s.commit()
    flash(result["message"], "success" if result["updated"] else "info")
    return redirect(url_for("affiliates.admin_leaderboard"))
