from __future__ import annotations

import csv
import io
import math
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.saudemax.audit import record_event
from app.saudemax.modules.affiliates.models import Affiliate, AffiliateReferral, AffiliateWithdrawal
from app.saudemax.modules.affiliates.service import PAYOUT_METHODS
from app.saudemax.notifications import send_withdrawal_notification

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saudemax.models import User


WITHDRAWAL_STATUSES = ("pending", "processing", "completed", "failed")
OPEN_STATUSES = ("pending", "processing")

# Forward-only lifecycle
WITHDRAWAL_TRANSITIONS = {
    "pending": ("processing", "failed"),
    "processing": ("completed", "failed"),
    "completed": (),
    "failed": (),
}


class WithdrawalError(ValueError):
    pass


def earned_total(s: "Session", affiliate: Affiliate) -> float:
    return float(
        s.query(func.coalesce(func.sum(AffiliateReferral.commission_amount), 0.0))
        .filter(AffiliateReferral.affiliate_id == affiliate.id)
        .filter(AffiliateReferral.status.in_(("approved", "paid")))
        .scalar()
        or 0.0
    )


def committed_total(s: "Session", affiliate: Affiliate) -> float:
    """Money already requested: every withdrawal that has not failed."""
    return float(
        s.query(func.coalesce(func.sum(AffiliateWithdrawal.amount), 0.0))
        .filter(AffiliateWithdrawal.affiliate_id == affiliate.id)
        .filter(AffiliateWithdrawal.status != "failed")
        .scalar()
        or 0.0
    )


def available_balance(s: "Session", affiliate: Affiliate) -> float:
    return round(max(earned_total(s, affiliate) - committed_total(s, affiliate), 0.0), 2)


def open_withdrawal(s: "Session", affiliate: Affiliate) -> AffiliateWithdrawal | None:
    return (
        s.query(AffiliateWithdrawal)
        .filter(AffiliateWithdrawal.affiliate_id == affiliate.id)
        .filter(AffiliateWithdrawal.status.in_(OPEN_STATUSES))
        .first()
    )


def request_withdrawal(
    s: "Session",
    affiliate: Affiliate,
    *,
    amount: float,
    method: str,
    payout_email: str | None,
    user: "User",
    min_amount: float = 0.0,
) -> AffiliateWithdrawal:
    if affiliate.status != "active":
        raise WithdrawalError("Only active affiliates can request withdrawals.")
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise WithdrawalError("Please enter a valid amount.")
    amount = round(amount, 2)
    if amount < min_amount:
        raise WithdrawalError(f"Minimum withdrawal amount is ${min_amount:.2f}.")
    if method not in PAYOUT_METHODS:
        raise WithdrawalError(f"Invalid payout method. Must be one of: {', '.join(PAYOUT_METHODS)}")
    if open_withdrawal(s, affiliate) is not None:
        raise WithdrawalError("You already have a pending withdrawal request.")
    available = available_balance(s, affiliate)
    if amount > available:
        raise WithdrawalError(f"You can only request up to ${available:.2f}.")

    w = AffiliateWithdrawal(
        affiliate_id=affiliate.id,
        amount=amount,
        method=method,
        payout_email=(payout_email or affiliate.payout_email or affiliate.email).strip().lower(),
        status="pending",
        requested_at=datetime.utcnow(),
    )
    s.add(w)
    s.flush()
    record_event(
        s,
        actor=user,
        action="withdrawal.request",
        entity_type="AffiliateWithdrawal",
        entity_id=str(w.id),
        metadata={"affiliate_code": affiliate.affiliate_code, "amount": amount, "method": method},
    )
    return w


def _pay_out_referrals(s: "Session", affiliate: Affiliate, amount: float) -> list[int]:
    """Mark approved referrals paid, oldest first, while they fit in ``amount``."""
    remaining = round(amount, 2)
    paid_ids: list[int] = []
    approved = (
        s.query(AffiliateReferral)
        .filter(AffiliateReferral.affiliate_id == affiliate.id)
        .filter(AffiliateReferral.status == "approved")
        .order_by(AffiliateReferral.created_at.asc(), AffiliateReferral.id.asc())
        .all()
    )
    now = datetime.utcnow()
    for r in approved:
        commission = round(r.commission_amount or 0.0, 2)
        if commission > remaining:
            break
        r.status = "paid"
        r.updated_at = now
        remaining = round(remaining - commission, 2)
        paid_ids.append(r.id)
    return paid_ids


def transition_withdrawal(
    s: "Session",
    withdrawal: AffiliateWithdrawal,
    new_status: str,
    *,
    actor: "User | None",
    config: dict,
    transaction_id: str | None = None,
    notes: str | None = None,
) -> AffiliateWithdrawal:
    allowed = WITHDRAWAL_TRANSITIONS.get(withdrawal.status, ())
    if new_status not in allowed:
        raise WithdrawalError(f"Cannot move a {withdrawal.status} withdrawal to {new_status}.")

    old_status = withdrawal.status
    withdrawal.status = new_status
    withdrawal.processed_at = datetime.utcnow()
    if transaction_id:
        withdrawal.transaction_id = transaction_id.strip()
    if notes:
        withdrawal.notes = notes.strip()

    paid_ids: list[int] = []
    if new_status == "completed":
        if not withdrawal.transaction_id:
            withdrawal.transaction_id = f"TXN-{withdrawal.id}-{int(withdrawal.processed_at.timestamp())}"
        paid_ids = _pay_out_referrals(s, withdrawal.affiliate, withdrawal.amount)
    s.flush()

    record_event(
        s,
        actor=actor,
        action=f"withdrawal.{new_status}",
        entity_type="AffiliateWithdrawal",
        entity_id=str(withdrawal.id),
        reason=notes,
        metadata={
            "affiliate_code": withdrawal.affiliate.affiliate_code,
            "amount": withdrawal.amount,
            "old": old_status,
            "new": new_status,
            "transaction_id": withdrawal.transaction_id,
            "paid_referral_ids": paid_ids,
        },
    )

    send_withdrawal_notification(
        config,
        email=withdrawal.affiliate.email,
        status=new_status,
        amount=withdrawal.amount,
        affiliate_code=withdrawal.affiliate.affiliate_code,
    )
    return withdrawal


def withdrawal_summary(withdrawals: list[AffiliateWithdrawal]) -> dict[str, float | int]:
    counts = {status: 0 for status in WITHDRAWAL_STATUSES}
    for w in withdrawals:
        counts[w.status] = counts.get(w.status, 0) + 1
    completed_total = round(sum(w.amount for w in withdrawals if w.status == "completed"), 2)
    pending_total = round(sum(w.amount for w in withdrawals if w.status in OPEN_STATUSES), 2)
    return {**counts, "completed_total": completed_total, "pending_total": pending_total}


def withdrawals_csv(withdrawals: list[AffiliateWithdrawal]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Affiliate Code", "Email", "Amount", "Method", "Status", "Requested Date", "Processed Date"])
    for row in withdrawals:
        w.writerow(
            [
                row.affiliate.affiliate_code if row.affiliate else "",
                row.affiliate.email if row.affiliate else "",
                f"{row.amount:.2f}",
                row.method,
                row.status,
                row.requested_at.date().isoformat() if row.requested_at else "",
                row.processed_at.date().isoformat() if row.processed_at else "",
            ]
        )
    return buf.getvalue()
