from __future__ import annotations

import math
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.saudemax.audit import record_event
from app.saudemax.modules.commission_rules.models import CommissionRule

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saudemax.models import User


RULE_TYPES = ("flat", "percent", "tiered")
APPLIES_TO = ("enrollment", "renewal", "both")

# Referral conversion type -> commission context
CONVERSION_CONTEXT = {
    "signup": "enrollment",
    "purchase": "enrollment",
    "subscription": "renewal",
}


def _to_float(raw: Any) -> float | None:
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        raw = str(raw).strip()
        if not raw:
            return None
        try:
            value = float(raw)
        except ValueError:
            return None
    return value if math.isfinite(value) else None


def _to_int(raw: Any) -> int | None:
    f = _to_float(raw)
    if f is None or f != int(f):
        return None
    return int(f)


def parse_tiers(mins: list[str], maxes: list[str], rates: list[str]) -> list[dict[str, Any]]:
    """Build the tier list from the parallel form columns (blank rows dropped)."""
    tiers: list[dict[str, Any]] = []
    for i, raw_min in enumerate(mins):
        raw_max = maxes[i] if i < len(maxes) else ""
        raw_rate = rates[i] if i < len(rates) else ""
        if not (str(raw_min).strip() or str(raw_max).strip() or str(raw_rate).strip()):
            continue
        tiers.append({"min": _to_int(raw_min), "max": _to_int(raw_max), "rate": _to_float(raw_rate)})
    return tiers


def validate_rule_payload(payload: dict) -> list[str]:
    """Validate commission rule creation/update payload. Returns list of errors."""
    errors: list[str] = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")

    rule_type = (payload.get("type") or "").strip()
    if rule_type not in RULE_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(RULE_TYPES)}")

    applies_to = (payload.get("applies_to") or "").strip()
    if applies_to not in APPLIES_TO:
        errors.append(f"Invalid 'applies to'. Must be one of: {', '.join(APPLIES_TO)}")

    if rule_type in ("flat", "percent"):
        amount = _to_float(payload.get("amount"))
        if amount is None:
            errors.append("Amount is required for flat and percentage commission types.")
        elif amount < 0:
            errors.append("Amount cannot be negative.")

    if rule_type == "tiered":
        tiers = payload.get("tiers") or []
        if not tiers:
            errors.append("At least one tier is required for tiered commission type.")
        for n, tier in enumerate(tiers, start=1):
            t_min, t_max, t_rate = tier.get("min"), tier.get("max"), tier.get("rate")
            if t_min is None or t_min < 1:
                errors.append(f"Tier {n}: minimum must be a whole number of at least 1.")
            if t_max is not None and t_min is not None and t_max < t_min:
                errors.append(f"Tier {n}: maximum must be blank or not less than the minimum.")
            if t_rate is None or not math.isfinite(t_rate) or t_rate < 0:
                errors.append(f"Tier {n}: rate must be a non-negative number.")
    return errors


def _apply_payload(rule: CommissionRule, payload: dict) -> None:
    rule.name = (payload.get("name") or "").strip()
    rule.type = (payload.get("type") or "percent").strip()
    rule.applies_to = (payload.get("applies_to") or "enrollment").strip()
    rule.active = bool(payload.get("active", True))
    if rule.type == "tiered":
        rule.amount = None
        rule.tiers = sorted(payload.get("tiers") or [], key=lambda t: t["min"])
    else:
        rule.amount = _to_float(payload.get("amount"))
        rule.tiers = None


def create_rule(s: "Session", payload: dict, user: "User") -> CommissionRule:
    now = datetime.utcnow()
    rule = CommissionRule(created_at=now, updated_at=now, created_by_user_id=user.id)
    _apply_payload(rule, payload)
    s.add(rule)
    s.flush()
    record_event(
        s,
        actor=user,
        action="commission_rule.create",
        entity_type="CommissionRule",
        entity_id=str(rule.id),
        metadata={"name": rule.name, "type": rule.type, "applies_to": rule.applies_to},
    )
    return rule


def update_rule(s: "Session", rule: CommissionRule, payload: dict, user: "User") -> CommissionRule:
    before = {"name": rule.name, "type": rule.type, "amount": rule.amount, "tiers": rule.tiers, "active": rule.active}
    _apply_payload(rule, payload)
    rule.updated_at = datetime.utcnow()
    after = {"name": rule.name, "type": rule.type, "amount": rule.amount, "tiers": rule.tiers, "active": rule.active}
    changes = {k: {"old": before[k], "new": after[k]} for k in before if before[k] != after[k]}
    record_event(
        s,
        actor=user,
        action="commission_rule.edit",
        entity_type="CommissionRule",
        entity_id=str(rule.id),
        metadata={"name": rule.name, "changes": changes},
    )
    return rule


def toggle_rule(s: "Session", rule: CommissionRule, user: "User") -> CommissionRule:
    rule.active = not rule.active
    rule.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="commission_rule.activate" if rule.active else "commission_rule.deactivate",
        entity_type="CommissionRule",
        entity_id=str(rule.id),
        metadata={"name": rule.name},
    )
    return rule


def delete_rule(s: "Session", rule: CommissionRule, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="commission_rule.delete",
        entity_type="CommissionRule",
        entity_id=str(rule.id),
        metadata={"name": rule.name, "type": rule.type},
    )
    s.delete(rule)


def tier_rate_for(tiers: list[dict[str, Any]] | None, referral_number: int) -> float | None:
    for tier in tiers or []:
        t_min = tier.get("min") or 1
        t_max = tier.get("max")
        if referral_number >= t_min and (t_max is None or referral_number <= t_max):
            return float(tier.get("rate") or 0)
    return None


def calculate_commission(rule: CommissionRule, order_amount: float | None, referral_number: int = 1) -> float:
    """
    Commission owed for one conversion.

    flat -> the rule amount; percent -> order amount x amount%; tiered -> order amount x
    the rate of the tier containing ``referral_number`` (the affiliate's n-th referral).
    """
    base = max(order_amount or 0.0, 0.0)
    if rule.type == "flat":
        value = rule.amount or 0.0
    elif rule.type == "percent":
        value = base * (rule.amount or 0.0) / 100
    elif rule.type == "tiered":
        rate = tier_rate_for(rule.tiers, referral_number)
        value = base * rate / 100 if rate is not None else 0.0
    else:
        value = 0.0
    return round(max(value, 0.0), 2)


def effective_rate(rule: CommissionRule, referral_number: int = 1) -> float:
    """Percent rate recorded on the referral (0 for flat rules)."""
    if rule.type == "percent":
        return float(rule.amount or 0.0)
    if rule.type == "tiered":
        return tier_rate_for(rule.tiers, referral_number) or 0.0
    return 0.0


def find_applicable_rule(s: "Session", conversion_type: str) -> CommissionRule | None:
    context = CONVERSION_CONTEXT.get(conversion_type)
    if context is None:
        return None
    return (
        s.query(CommissionRule)
        .filter(CommissionRule.active.is_(True))
        .filter(or_(CommissionRule.applies_to == context, CommissionRule.applies_to == "both"))
        .order_by(CommissionRule.created_at.desc(), CommissionRule.id.desc())
        .first()
    )
