from __future__ import annotations

import math
import secrets
from datetime import datetime
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from sqlalchemy import func

from app.saudemax.accounts import create_user, ensure_role, normalize_email
from app.saudemax.audit import record_event
from app.saudemax.modules.affiliates.models import (
    Affiliate,
    AffiliateLink,
    AffiliateReferral,
    AffiliateVisit,
)
from app.saudemax.modules.commission_rules.service import (
    calculate_commission,
    effective_rate,
    find_applicable_rule,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saudemax.models import User


AFFILIATE_STATUSES = ("pending", "active", "suspended", "rejected")
PAYOUT_METHODS = ("paypal", "bank_transfer", "crypto")
CONVERSION_TYPES = ("signup", "purchase", "subscription")
REFERRAL_STATUSES = ("pending", "approved", "paid", "rejected")

# Admin-driven profile transitions
AFFILIATE_TRANSITIONS = {
    "pending": ("active", "rejected"),
    "active": ("suspended",),
    "suspended": ("active",),
    "rejected": (),
}


class AffiliateError(ValueError):
    pass


class ReferralError(ValueError):
    pass


class AffiliateNotFound(ReferralError):
    pass


# ---------- Profiles ----------
def generate_affiliate_code(s: "Session") -> str:
    while True:
        code = secrets.token_hex(4).upper()
        if not s.query(Affiliate.id).filter(Affiliate.affiliate_code == code).first():
            return code


def build_referral_link(base_url: str, code: str, source: str | None = None) -> str:
    params = {"ref": code}
    if source:
        params["source"] = source
    return f"{base_url.rstrip('/')}/?{urlencode(params)}"


def get_affiliate_for_user(s: "Session", user: "User | None") -> Affiliate | None:
    if user is None:
        return None
    return s.query(Affiliate).filter(Affiliate.user_id == user.id).one_or_none()


def find_active_affiliate(s: "Session", code: str | None) -> Affiliate | None:
    code = (code or "").strip().upper()
    if not code:
        return None
    return (
        s.query(Affiliate)
        .filter(Affiliate.affiliate_code == code)
        .filter(Affiliate.status == "active")
        .one_or_none()
    )


def validate_affiliate_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not normalize_email(payload.get("email")):
        errors.append("Email is required.")
    method = (payload.get("payout_method") or "").strip()
    if method not in PAYOUT_METHODS:
        errors.append(f"Invalid payout method. Must be one of: {', '.join(PAYOUT_METHODS)}")
    if not normalize_email(payload.get("payout_email")):
        errors.append("Payout email is required.")
    return errors


def register_affiliate(
    s: "Session",
    user: "User",
    payload: dict,
    *,
    base_url: str,
    commission_rate: float,
    status: str = "pending",
    actor: "User | None" = None,
) -> Affiliate:
    """Create the affiliate profile for ``user`` and give them the affiliate role."""
    if get_affiliate_for_user(s, user) is not None:
        raise AffiliateError("You already have an affiliate profile.")
    errors = validate_affiliate_payload(payload)
    if errors:
        raise AffiliateError(" ".join(errors))

    now = datetime.utcnow()
    code = generate_affiliate_code(s)
    affiliate = Affiliate(
        user_id=user.id,
        affiliate_code=code,
        referral_link=build_referral_link(base_url, code),
        email=normalize_email(payload.get("email")),
        payout_email=normalize_email(payload.get("payout_email")),
        payout_method=(payload.get("payout_method") or "paypal").strip(),
        status=status,
        commission_rate=commission_rate,
        created_at=now,
        updated_at=now,
    )
    s.add(affiliate)
    ensure_role(s, user, "affiliate")
    s.flush()

    record_event(
        s,
        actor=actor or user,
        action="affiliate.register",
        entity_type="Affiliate",
        entity_id=str(affiliate.id),
        metadata={"affiliate_code": code, "status": status, "user_id": user.id},
    )
    return affiliate


def create_affiliate_user(
    s: "Session",
    payload: dict,
    *,
    base_url: str,
    commission_rate: float,
    actor: "User",
) -> Affiliate:
    """Admin path: create the login and an already-active affiliate profile in one go."""
    user = create_user(
        s,
        email=payload.get("email") or "",
        password=payload.get("password") or "",
        full_name=payload.get("full_name"),
        role_key="affiliate",
    )
    profile_payload = {
        "email": user.email,
        "payout_email": payload.get("payout_email") or user.email,
        "payout_method": payload.get("payout_method") or "paypal",
    }
    return register_affiliate(
        s,
        user,
        profile_payload,
        base_url=base_url,
        commission_rate=commission_rate,
        status="active",
        actor=actor,
    )


def update_affiliate(s: "Session", affiliate: Affiliate, payload: dict, user: "User") -> Affiliate:
    changes = {}
    method = (payload.get("payout_method") or "").strip()
    if method:
        if method not in PAYOUT_METHODS:
            raise AffiliateError(f"Invalid payout method. Must be one of: {', '.join(PAYOUT_METHODS)}")
        if method != affiliate.payout_method:
            changes["payout_method"] = {"old": affiliate.payout_method, "new": method}
            affiliate.payout_method = method
    payout_email = normalize_email(payload.get("payout_email"))
    if payout_email and payout_email != affiliate.payout_email:
        changes["payout_email"] = {"old": affiliate.payout_email, "new": payout_email}
        affiliate.payout_email = payout_email

    if changes:
        affiliate.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="affiliate.edit",
            entity_type="Affiliate",
            entity_id=str(affiliate.id),
            metadata={"changes": changes},
        )
    return affiliate


def set_affiliate_status(
    s: "Session",
    affiliate: Affiliate,
    new_status: str,
    user: "User",
    reason: str | None = None,
    commission_rate: float | None = None,
) -> Affiliate:
    allowed = AFFILIATE_TRANSITIONS.get(affiliate.status, ())
    if new_status not in allowed:
        raise AffiliateError(f"Cannot change affiliate status from {affiliate.status} to {new_status}.")
    old_status = affiliate.status
    affiliate.status = new_status
    if commission_rate is not None:
        if commission_rate < 0 or commission_rate > 100:
            raise AffiliateError("Commission rate must be between 0 and 100.")
        affiliate.commission_rate = commission_rate
    affiliate.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="affiliate.status_change",
        entity_type="Affiliate",
        entity_id=str(affiliate.id),
        reason=reason,
        metadata={"affiliate_code": affiliate.affiliate_code, "old": old_status, "new": new_status},
    )
    return affiliate


def create_link(s: "Session", affiliate: Affiliate, name: str, source: str, base_url: str) -> AffiliateLink:
    name = (name or "").strip()
    source = (source or "").strip().lower()
    if not name:
        raise AffiliateError("Link name is required.")
    if not source or not source.replace("-", "").replace("_", "").isalnum():
        raise AffiliateError("Source must contain only letters, numbers, dashes or underscores.")
    exists = (
        s.query(AffiliateLink.id)
        .filter(AffiliateLink.affiliate_id == affiliate.id, AffiliateLink.source == source)
        .first()
    )
    if exists:
        raise AffiliateError(f"A link with source '{source}' already exists.")
    link = AffiliateLink(
        affiliate_id=affiliate.id,
        name=name,
        source=source,
        referral_url=build_referral_link(base_url, affiliate.affiliate_code, source),
    )
    s.add(link)
    s.flush()
    return link


# ---------- Tracking ----------
def detect_device(user_agent: str | None) -> str:
    ua = user_agent or ""
    for marker in ("Mobile", "Android", "iPhone", "iPad"):
        if marker in ua:
            return "mobile"
    return "desktop"


def detect_browser(user_agent: str | None) -> str:
    # Order matters: Chrome UAs also mention Safari.
    ua = user_agent or ""
    for name in ("Chrome", "Firefox", "Safari", "Edge"):
        if name in ua:
            return name
    return "Other"


def track_visit(
    s: "Session",
    code: str | None,
    *,
    page_url: str | None,
    referrer: str | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> AffiliateVisit | None:
    """Record a click-through. Unknown or inactive codes are ignored."""
    affiliate = find_active_affiliate(s, code)
    if affiliate is None:
        return None
    visit = AffiliateVisit(
        affiliate_id=affiliate.id,
        page_url=(page_url or "")[:1024] or None,
        referrer=(referrer or "")[:1024] or None,
        user_agent=(user_agent or "")[:512] or None,
        ip_address=ip_address,
        device_type=detect_device(user_agent),
        browser=detect_browser(user_agent),
        converted=False,
        created_at=datetime.utcnow(),
    )
    s.add(visit)
    affiliate.total_visits = (affiliate.total_visits or 0) + 1
    s.flush()
    return visit


def _mark_latest_visit_converted(s: "Session", affiliate: Affiliate) -> AffiliateVisit | None:
    visit = (
        s.query(AffiliateVisit)
        .filter(AffiliateVisit.affiliate_id == affiliate.id)
        .filter(AffiliateVisit.converted.is_(False))
        .order_by(AffiliateVisit.created_at.desc(), AffiliateVisit.id.desc())
        .first()
    )
    if visit is not None:
        visit.converted = True
    return visit


def track_referral(
    s: "Session",
    code: str | None,
    *,
    conversion_type: str,
    order_amount: float | None = None,
    order_id: str | None = None,
    referred_user_id: int | None = None,
    actor: "User | None" = None,
) -> AffiliateReferral:
    """
    Attribute a conversion to the affiliate owning ``code``.

    The commission comes from the newest active rule for the conversion context, or
    the affiliate's own percentage when no rule applies.
    """
    if conversion_type not in CONVERSION_TYPES:
        raise ReferralError(f"Invalid conversion type. Must be one of: {', '.join(CONVERSION_TYPES)}")
    if order_amount is not None and not math.isfinite(order_amount):
        raise ReferralError("Order amount must be a number.")
    if order_amount is not None and order_amount < 0:
        raise ReferralError("Order amount cannot be negative.")
    affiliate = find_active_affiliate(s, code)
    if affiliate is None:
        raise AffiliateNotFound("Affiliate not found or inactive")

    referral_number = (
        s.query(func.count(AffiliateReferral.id)).filter(AffiliateReferral.affiliate_id == affiliate.id).scalar() or 0
    ) + 1
    rule = find_applicable_rule(s, conversion_type)
    if rule is not None:
        commission = calculate_commission(rule, order_amount, referral_number)
        rate = effective_rate(rule, referral_number)
    else:
        rate = affiliate.commission_rate or 0.0
        commission = round(max((order_amount or 0.0) * rate / 100, 0.0), 2)

    now = datetime.utcnow()
    referral = AffiliateReferral(
        affiliate_id=affiliate.id,
        referred_user_id=referred_user_id,
        order_id=(order_id or "").strip() or None,
        order_amount=order_amount,
        commission_amount=commission,
        commission_rate=rate,
        commission_rule_id=rule.id if rule is not None else None,
        conversion_type=conversion_type,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    s.add(referral)
    if referred_user_id:
        _mark_latest_visit_converted(s, affiliate)
    s.flush()
    recalculate_stats(s, affiliate)

    record_event(
        s,
        actor=actor,
        action="referral.create",
        entity_type="AffiliateReferral",
        entity_id=str(referral.id),
        metadata={
            "affiliate_code": affiliate.affiliate_code,
            "conversion_type": conversion_type,
            "commission_amount": commission,
            "commission_rule_id": referral.commission_rule_id,
        },
    )
    return referral


def process_conversion(
    s: "Session",
    referral: AffiliateReferral,
    status: str,
    *,
    notes: str | None = None,
    actor: "User | None" = None,
) -> AffiliateReferral:
    """Approve or reject a pending referral."""
    if status not in ("approved", "rejected"):
        raise ReferralError("Status must be 'approved' or 'rejected'")
    if referral.status != "pending":
        raise ReferralError(f"Only pending referrals can be {status} (current status: {referral.status}).")
    referral.status = status
    referral.notes = (notes or "").strip() or None
    referral.updated_at = datetime.utcnow()
    s.flush()
    recalculate_stats(s, referral.affiliate)
    record_event(
        s,
        actor=actor,
        action=f"referral.{status}",
        entity_type="AffiliateReferral",
        entity_id=str(referral.id),
        metadata={"affiliate_code": referral.affiliate.affiliate_code, "commission_amount": referral.commission_amount},
    )
    return referral


def recalculate_stats(s: "Session", affiliate: Affiliate) -> Affiliate:
    affiliate.total_referrals = (
        s.query(func.count(AffiliateReferral.id)).filter(AffiliateReferral.affiliate_id == affiliate.id).scalar() or 0
    )
    affiliate.total_earnings = round(
        s.query(func.coalesce(func.sum(AffiliateReferral.commission_amount), 0.0))
        .filter(AffiliateReferral.affiliate_id == affiliate.id)
        .filter(AffiliateReferral.status.in_(("approved", "paid")))
        .scalar()
        or 0.0,
        2,
    )
    affiliate.total_visits = (
        s.query(func.count(AffiliateVisit.id)).filter(AffiliateVisit.affiliate_id == affiliate.id).scalar() or 0
    )
    affiliate.updated_at = datetime.utcnow()
    return affiliate


def mark_referrals_paid(s: "Session", referrals: list[AffiliateReferral], actor: "User | None" = None) -> list[int]:
    """Approved referrals become paid; anything else is left alone."""
    now = datetime.utcnow()
    paid: list[int] = []
    touched: dict[int, Affiliate] = {}
    for r in referrals:
        if r.status != "approved":
            continue
        r.status = "paid"
        r.updated_at = now
        paid.append(r.id)
        touched[r.affiliate_id] = r.affiliate
    if paid:
        s.flush()
        for affiliate in touched.values():
            recalculate_stats(s, affiliate)
        record_event(
            s,
            actor=actor,
            action="referral.mark_paid",
            entity_type="AffiliateReferral",
            entity_id=str(paid[0]) if len(paid) == 1 else None,
            metadata={"referral_ids": paid},
        )
    return paid
