"""
JSON endpoints for the affiliate program.

``/api/automation/<endpoint>`` is called by external automation with
``Authorization: Bearer <AUTOMATION_API_KEY>`` and is exempt from the CSRF guard.
``/api/leaderboard`` is public.
"""
from __future__ import annotations

import math
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.saudemax.db import db_session
from app.saudemax.models import User
from app.saudemax.modules.affiliates.metrics import leaderboard, update_leaderboard
from app.saudemax.modules.affiliates.models import AffiliateReferral, AffiliateWithdrawal
from app.saudemax.modules.affiliates.service import AffiliateNotFound, ReferralError, process_conversion, track_referral
from app.saudemax.modules.affiliates.withdrawals import WITHDRAWAL_STATUSES, WithdrawalError, transition_withdrawal
from app.saudemax.security import validate_bearer_key

bp = Blueprint("affiliate_api", __name__)


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _referral_dict(r: AffiliateReferral) -> dict[str, Any]:
    return {
        "id": r.id,
        "affiliate_id": r.affiliate_id,
        "affiliate_code": r.affiliate.affiliate_code if r.affiliate else None,
        "referred_user_id": r.referred_user_id,
        "order_id": r.order_id,
        "order_amount": r.order_amount,
        "commission_amount": r.commission_amount,
        "commission_rate": r.commission_rate,
        "conversion_type": r.conversion_type,
        "status": r.status,
        "notes": r.notes,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }


def _withdrawal_dict(w: AffiliateWithdrawal) -> dict[str, Any]:
    return {
        "id": w.id,
        "affiliate_code": w.affiliate.affiliate_code if w.affiliate else None,
        "amount": w.amount,
        "method": w.method,
        "status": w.status,
        "transaction_id": w.transaction_id,
        "notes": w.notes,
        "requested_at": w.requested_at.isoformat() if w.requested_at else None,
        "processed_at": w.processed_at.isoformat() if w.processed_at else None,
    }


def _int_or_none(raw: Any) -> int | None:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _float_or_none(raw: Any) -> float | None:
    if raw is None or raw == "":
        return None
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError("not a finite number")
    return value


def _create_referral(s, payload: dict):
    code = (payload.get("affiliate_code") or "").strip()
    conversion_type = (payload.get("conversion_type") or "").strip()
    if not code or not conversion_type:
        return _error("affiliate_code and conversion_type are required", 400)
    try:
        order_amount = _float_or_none(payload.get("order_amount"))
    except (TypeError, ValueError):
        return _error("order_amount must be a number", 400)
    referred_user_id = payload.get("referred_user_id")
    if referred_user_id is not None:
        if not isinstance(referred_user_id, int) or s.get(User, referred_user_id) is None:
            return _error("referred_user_id does not match a user", 400)
    try:
        referral = track_referral(
            s,
            code,
            conversion_type=conversion_type,
            order_amount=order_amount,
            order_id=payload.get("order_id"),
            referred_user_id=referred_user_id,
        )
    except AffiliateNotFound as e:
        return _error(str(e), 404)
    except ReferralError as e:
        return _error(str(e), 400)
    s.commit()
    return jsonify({"success": True, "message": "Referral created successfully", "data": _referral_dict(referral)})


def _process_conversion(s, payload: dict):
    referral_id = payload.get("referral_id")
    status = (payload.get("status") or "").strip()
    if not referral_id or not status:
        return _error("referral_id and status are required", 400)
    if status not in ("approved", "rejected"):
        return _error("Status must be 'approved' or 'rejected'", 400)
    referral = s.get(AffiliateReferral, _int_or_none(referral_id) or 0)
    if referral is None:
        return _error("Referral not found", 404)
    try:
        process_conversion(s, referral, status, notes=payload.get("notes"))
    except ReferralError as e:
        return _error(str(e), 400)
    s.commit()
    return jsonify({"success": True, "message": f"Referral {status} successfully", "data": _referral_dict(referral)})


def _process_withdrawal(s, payload: dict):
    withdrawal_id = payload.get("withdrawal_id")
    status = (payload.get("status") or "").strip()
    if not withdrawal_id or not status:
        return _error("withdrawal_id and status are required", 400)
    if status not in WITHDRAWAL_STATUSES:
        return _error(f"Status must be one of: {', '.join(WITHDRAWAL_STATUSES)}", 400)
    withdrawal = s.get(AffiliateWithdrawal, _int_or_none(withdrawal_id) or 0)
    if withdrawal is None:
        return _error("Withdrawal not found", 404)
    try:
        transition_withdrawal(
            s,
            withdrawal,
            status,
            actor=None,
            config=current_app.config,
            transaction_id=payload.get("transaction_id"),
            notes=payload.get("notes"),
        )
    except WithdrawalError as e:
        return _error(str(e), 400)
    s.commit()
    return jsonify({"success": True, "message": f"Withdrawal {status} successfully", "data": _withdrawal_dict(withdrawal)})


def _update_leaderboard(s, payload: dict):
    result = update_leaderboard(s, force=bool(payload.get("force_update")))
    s.commit()
    return jsonify({"success": True, **result})


_ENDPOINTS = {
    "create-referral": _create_referral,
    "process-conversion": _process_conversion,
    "process-withdrawal": _process_withdrawal,
    "update-leaderboard": _update_leaderboard,
}


@bp.post("/api/automation/<endpoint>")
def automation(endpoint: str):
    if not validate_bearer_key(request, current_app.config.get("AUTOMATION_API_KEY") or ""):
        return _error("Unauthorized", 401)
    handler = _ENDPOINTS.get(endpoint)
    if handler is None:
        return _error("Unknown endpoint", 404)
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    s = db_session()
    try:
        return handler(s, payload)
    except Exception as e:
        s.rollback()
        current_app.logger.exception(
            "Automation endpoint %s failed (request_id=%s)", endpoint, getattr(g, "request_id", None)
        )
        return _error("Internal server error", 500)


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


@bp.get("/api/leaderboard")
def public_leaderboard():
    s = db_session()
    try:
        limit = int(request.args.get("limit") or 10)
    except ValueError:
        limit = 10
    show_earnings = _flag("show_earnings")
    show_conversion = _flag("show_conversion")
    rows = leaderboard(s, limit=limit, show_earnings=show_earnings, show_conversion=show_conversion)
    return jsonify(
        {
            "success": True,
            "data": rows,
            "metadata": {
                "show_earnings": show_earnings,
                "show_conversion": show_conversion,
                "total_affiliates": len(rows),
            },
        }
    )
