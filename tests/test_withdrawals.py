import pytest

from app.saudemax.accounts import create_user
from app.saudemax.models import AuditEvent
from app.saudemax.modules.affiliates.service import process_conversion, register_affiliate, set_affiliate_status, track_referral
from app.saudemax.modules.affiliates.withdrawals import (
    WithdrawalError,
    available_balance,
    open_withdrawal,
    request_withdrawal,
    transition_withdrawal,
    withdrawal_summary,
    withdrawals_csv,
)


@pytest.fixture()
def earner(db):
    """Active affiliate with $100 of approved commission (20 + 30 + 50, oldest first)."""
    user = create_user(db, email="earner@example.com", password="password-123")
    a = register_affiliate(
        db,
        user,
        {"email": "earner@example.com", "payout_email": "pay@example.com", "payout_method": "paypal"},
        base_url="http://testserver",
        commission_rate=10.0,
        status="active",
    )
    for amount in (200.0, 300.0, 500.0):
        r = track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=amount)
        process_conversion(db, r, "approved")
    # pending commission is not withdrawable
    track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=1000.0)
    return a


def _request(db, a, amount, **kw):
    return request_withdrawal(
        db, a, amount=amount, method=kw.get("method", "paypal"), payout_email=None, user=a.user, min_amount=50.0
    )


def test_available_balance_counts_approved_and_paid_only(db, earner):
    assert available_balance(db, earner) == 100.0


def test_request_withdrawal_rules(db, earner):
    with pytest.raises(WithdrawalError, match="Minimum withdrawal"):
        _request(db, earner, 49.99)
    with pytest.raises(WithdrawalError, match="up to \\$100.00"):
        _request(db, earner, 150.0)
    with pytest.raises(WithdrawalError, match="payout method"):
        _request(db, earner, 60.0, method="cash")
    with pytest.raises(WithdrawalError):
        _request(db, earner, 0)

    for bad in (float("nan"), float("inf"), float("-inf")):
        with pytest.raises(WithdrawalError, match="valid amount"):
            _request(db, earner, bad)

    w = _request(db, earner, 60.0)
    assert w.status == "pending"
    assert w.payout_email == "pay@example.com"
    assert available_balance(db, earner) == 40.0
    assert open_withdrawal(db, earner).id == w.id

    with pytest.raises(WithdrawalError, match="already have a pending"):
        _request(db, earner, 50.0)


def test_suspended_affiliate_cannot_withdraw(db, earner):
    from app.saudemax.models import User

    admin = db.query(User).filter(User.email == "admin@example.com").one()
    set_affiliate_status(db, earner, "suspended", admin)
    with pytest.raises(WithdrawalError, match="Only active affiliates"):
        _request(db, earner, 60.0)


def test_completion_pays_referrals_oldest_first(db, earner):
    w = _request(db, earner, 50.0)
    with pytest.raises(WithdrawalError):
        transition_withdrawal(db, w, "completed", actor=None, config={})

    transition_withdrawal(db, w, "processing", actor=None, config={})
    transition_withdrawal(db, w, "completed", actor=None, config={}, notes="sent")
    assert w.status == "completed"
    assert w.processed_at is not None
    assert w.transaction_id.startswith(f"TXN-{w.id}-")

    statuses = sorted(
        ((r.commission_amount, r.status) for r in earner_referrals(db, earner)),
    )
    assert statuses == [(20.0, "paid"), (30.0, "paid"), (50.0, "approved"), (100.0, "pending")]
    # paid referrals still count as earned, the completed withdrawal is committed
    assert available_balance(db, earner) == 50.0

    with pytest.raises(WithdrawalError):
        transition_withdrawal(db, w, "failed", actor=None, config={})

    ev = db.query(AuditEvent).filter(AuditEvent.action == "withdrawal.completed").one()
    assert ev.reason == "sent"


def test_failed_withdrawal_releases_balance(db, earner):
    w = _request(db, earner, 80.0, method="bank_transfer")
    transition_withdrawal(db, w, "failed", actor=None, config={}, transaction_id="BANK-REJECT")
    assert w.transaction_id == "BANK-REJECT"
    assert available_balance(db, earner) == 100.0
    assert open_withdrawal(db, earner) is None
    # a new request is allowed once the old one failed
    assert _request(db, earner, 100.0).status == "pending"


def test_summary_and_csv(db, earner):
    w1 = _request(db, earner, 50.0)
    transition_withdrawal(db, w1, "processing", actor=None, config={})
    transition_withdrawal(db, w1, "completed", actor=None, config={})
    w2 = _request(db, earner, 50.0)

    summary = withdrawal_summary([w1, w2])
    assert summary["completed"] == 1
    assert summary["pending"] == 1
    assert summary["completed_total"] == 50.0
    assert summary["pending_total"] == 50.0

    lines = withdrawals_csv([w1, w2]).splitlines()
    assert lines[0] == "Affiliate Code,Email,Amount,Method,Status,Requested Date,Processed Date"
    assert lines[1].startswith(f"{earner.affiliate_code},earner@example.com,50.00,paypal,completed,")


def earner_referrals(db, affiliate):
    from app.saudemax.modules.affiliates.models import AffiliateReferral

    return db.query(AffiliateReferral).filter(AffiliateReferral.affiliate_id == affiliate.id).all()
