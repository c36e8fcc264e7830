from datetime import date, datetime, timedelta

import pytest

from app.saudemax.accounts import create_user
from app.saudemax.models import AuditEvent
from app.saudemax.modules.affiliates.metrics import (
    affiliate_metrics,
    conversion_rate,
    leaderboard,
    months_back,
    referral_metrics_by_url,
    update_leaderboard,
)
from app.saudemax.modules.affiliates.models import AffiliateReferral
from app.saudemax.modules.affiliates.service import (
    AffiliateError,
    AffiliateNotFound,
    ReferralError,
    create_link,
    detect_browser,
    detect_device,
    mark_referrals_paid,
    process_conversion,
    register_affiliate,
    set_affiliate_status,
    track_referral,
    track_visit,
)
from app.saudemax.modules.commission_rules.service import create_rule

BASE_URL = "http://testserver"


def _admin(db):
    from app.saudemax.models import User

    return db.query(User).filter(User.email == "admin@example.com").one()


def _affiliate(db, email="aff@example.com", status="active", rate=10.0):
    user = create_user(db, email=email, password="password-123")
    return register_affiliate(
        db,
        user,
        {"email": email, "payout_email": email, "payout_method": "paypal"},
        base_url=BASE_URL,
        commission_rate=rate,
        status=status,
    )


def test_register_affiliate_gives_code_link_and_role(db):
    a = _affiliate(db, status="pending")
    assert a.status == "pending"
    assert len(a.affiliate_code) == 8
    assert a.affiliate_code == a.affiliate_code.upper()
    assert a.referral_link == f"{BASE_URL}/?ref={a.affiliate_code}"
    assert "affiliate" in {r.key for r in a.user.roles}
    assert db.query(AuditEvent).filter(AuditEvent.action == "affiliate.register").count() == 1


def test_register_affiliate_twice_or_bad_payload(db):
    a = _affiliate(db)
    with pytest.raises(AffiliateError):
        register_affiliate(
            db, a.user, {"email": "x@example.com", "payout_email": "x@example.com", "payout_method": "paypal"},
            base_url=BASE_URL, commission_rate=10.0,
        )
    other = create_user(db, email="other@example.com", password="password-123")
    with pytest.raises(AffiliateError, match="payout method"):
        register_affiliate(
            db, other, {"email": "other@example.com", "payout_email": "other@example.com", "payout_method": "cash"},
            base_url=BASE_URL, commission_rate=10.0,
        )


def test_status_transitions(db):
    admin = _admin(db)
    a = _affiliate(db, status="pending")
    set_affiliate_status(db, a, "active", admin, commission_rate=15.0)
    assert a.status == "active"
    assert a.commission_rate == 15.0
    set_affiliate_status(db, a, "suspended", admin, reason="chargebacks")
    set_affiliate_status(db, a, "active", admin)
    with pytest.raises(AffiliateError):
        set_affiliate_status(db, a, "pending", admin)

    rejected = _affiliate(db, email="rej@example.com", status="pending")
    set_affiliate_status(db, rejected, "rejected", admin)
    with pytest.raises(AffiliateError):
        set_affiliate_status(db, rejected, "active", admin)


def test_track_visit_only_counts_active_affiliates(db):
    pending = _affiliate(db, email="p@example.com", status="pending")
    assert track_visit(db, pending.affiliate_code, page_url="/") is None
    assert track_visit(db, "UNKNOWN1", page_url="/") is None

    a = _affiliate(db)
    v = track_visit(
        db,
        a.affiliate_code.lower(),
        page_url="http://testserver/plans",
        user_agent="Mozilla/5.0 (iPhone) Safari",
    )
    assert v is not None
    assert v.device_type == "mobile"
    assert v.browser == "Safari"
    assert a.total_visits == 1


def test_device_and_browser_detection():
    assert detect_device(None) == "desktop"
    assert detect_device("Mozilla/5.0 (Linux; Android 14)") == "mobile"
    assert detect_browser("Mozilla/5.0 Chrome/120 Safari/537") == "Chrome"
    assert detect_browser("curl/8") == "Other"


def test_track_referral_uses_affiliate_rate_without_rule(db):
    a = _affiliate(db, rate=10.0)
    r = track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=349.0, order_id="ORD-1")
    assert r.commission_amount == 34.9
    assert r.commission_rate == 10.0
    assert r.commission_rule_id is None
    assert r.status == "pending"
    assert a.total_referrals == 1
    # Pending commissions are not earnings yet
    assert a.total_earnings == 0.0


def test_track_referral_prefers_newest_matching_rule(db):
    admin = _admin(db)
    a = _affiliate(db)
    create_rule(db, {"name": "Old", "type": "percent", "amount": 5, "applies_to": "enrollment"}, admin)
    newer = create_rule(db, {"name": "Flat", "type": "flat", "amount": 25, "applies_to": "both"}, admin)
    newer.created_at = datetime.utcnow() + timedelta(seconds=1)
    db.flush()

    r = track_referral(db, a.affiliate_code, conversion_type="signup", order_amount=199.0)
    assert r.commission_amount == 25.0
    assert r.commission_rule_id == newer.id
    assert r.commission_rate == 0.0


def test_track_referral_tiered_rule_by_referral_number(db):
    admin = _admin(db)
    a = _affiliate(db)
    create_rule(
        db,
        {
            "name": "Tiered",
            "type": "tiered",
            "applies_to": "renewal",
            "tiers": [{"min": 3, "max": None, "rate": 20.0}, {"min": 1, "max": 2, "rate": 10.0}],
        },
        admin,
    )
    amounts = [
        track_referral(db, a.affiliate_code, conversion_type="subscription", order_amount=100.0).commission_amount
        for _ in range(3)
    ]
    assert amounts == [10.0, 10.0, 20.0]


def test_track_referral_errors(db):
    pending = _affiliate(db, status="pending")
    with pytest.raises(AffiliateNotFound):
        track_referral(db, pending.affiliate_code, conversion_type="signup")
    a = _affiliate(db, email="ok@example.com")
    with pytest.raises(ReferralError):
        track_referral(db, a.affiliate_code, conversion_type="refund")
    with pytest.raises(ReferralError):
        track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=-1)
    for bad in (float("nan"), float("inf")):
        with pytest.raises(ReferralError, match="must be a number"):
            track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=bad)
    assert db.query(AffiliateReferral).count() == 0


def test_process_conversion_updates_earnings_once(db):
    a = _affiliate(db)
    r = track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=500.0)
    process_conversion(db, r, "approved", notes="verified")
    assert r.status == "approved"
    assert a.total_earnings == 50.0
    with pytest.raises(ReferralError):
        process_conversion(db, r, "rejected")
    with pytest.raises(ReferralError):
        process_conversion(db, r, "paid")


def test_mark_referrals_paid_skips_non_approved(db):
    a = _affiliate(db)
    approved = track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=100.0)
    pending = track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=100.0)
    process_conversion(db, approved, "approved")

    paid = mark_referrals_paid(db, [approved, pending])
    assert paid == [approved.id]
    assert approved.status == "paid"
    assert pending.status == "pending"
    # Paid commissions still count as earnings
    assert a.total_earnings == 10.0


def test_create_link_rules(db):
    a = _affiliate(db)
    link = create_link(db, a, "Instagram bio", "Instagram", BASE_URL)
    assert link.source == "instagram"
    assert link.referral_url == f"{BASE_URL}/?ref={a.affiliate_code}&source=instagram"
    with pytest.raises(AffiliateError, match="already exists"):
        create_link(db, a, "Again", "instagram", BASE_URL)
    with pytest.raises(AffiliateError):
        create_link(db, a, "Bad", "has space", BASE_URL)
    with pytest.raises(AffiliateError):
        create_link(db, a, "", "blank-name", BASE_URL)


def test_affiliate_metrics(db):
    a = _affiliate(db)
    track_visit(db, a.affiliate_code, page_url="/")
    track_visit(db, a.affiliate_code, page_url="/plans")
    r1 = track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=200.0)
    track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=100.0)
    process_conversion(db, r1, "approved")

    m = affiliate_metrics(db, a)
    assert m.total_visits == 2
    assert m.total_referrals == 2
    assert m.total_earnings == 20.0
    assert m.pending_commissions == 10.0
    assert m.conversion_rate == 100.0
    assert m.this_month_referrals == 2


def test_referral_metrics_group_by_url_and_link(db):
    a = _affiliate(db)
    link = create_link(db, a, "Newsletter", "newsletter", BASE_URL)
    track_visit(db, a.affiliate_code, page_url="http://testserver/")
    track_visit(db, a.affiliate_code, page_url="http://testserver/")
    track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=100.0, order_id="newsletter-42")
    track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=300.0, order_id="ORD-7")

    report = referral_metrics_by_url(db, a, timeframe="all")
    by_url = {row.referral_url: row for row in report.rows}
    assert by_url["http://testserver/"].click_count == 2
    assert by_url[link.referral_url].conversion_count == 1
    assert by_url[link.referral_url].earnings == 10.0

    only_link = referral_metrics_by_url(db, a, timeframe="all", search="newsletter")
    assert [row.referral_url for row in only_link.rows] == [link.referral_url]


def test_months_back_clamps_day():
    assert months_back(datetime(2024, 3, 31, 12, 0), 1) == datetime(2024, 2, 29, 12, 0)
    assert months_back(datetime(2024, 1, 15), 3) == datetime(2023, 10, 15)
    assert conversion_rate(1, 0) == 0.0
    assert conversion_rate(1, 4) == 25.0


def test_leaderboard_orders_by_earnings_and_hides_money(db):
    first = _affiliate(db, email="first@example.com")
    second = _affiliate(db, email="second@example.com")
    _affiliate(db, email="pending@example.com", status="pending")
    for a, amount in ((first, 1000.0), (second, 500.0)):
        r = track_referral(db, a.affiliate_code, conversion_type="purchase", order_amount=amount)
        process_conversion(db, r, "approved")

    rows = leaderboard(db, limit=10)
    assert [row["affiliate_code"] for row in rows] == [first.affiliate_code, second.affiliate_code]
    assert rows[0]["rank"] == 1
    assert "total_earnings" not in rows[0]
    assert "conversion_rate" not in rows[0]

    rows = leaderboard(db, limit=1, show_earnings=True, show_conversion=True)
    assert len(rows) == 1
    assert rows[0]["total_earnings"] == 100.0
    assert rows[0]["conversion_rate"] == 0.0


def test_update_leaderboard_once_per_day(db):
    a = _affiliate(db)
    today = date(2026, 3, 1)
    first = update_leaderboard(db, today=today)
    assert first["updated"] is True
    assert first["affiliates_updated"] == 1

    again = update_leaderboard(db, today=today)
    assert again["updated"] is False
    assert again["message"] == "Leaderboard already updated today"

    # Stats drift (direct DB edit) is repaired by a forced run
    db.add(
        AffiliateReferral(
            affiliate_id=a.id, conversion_type="purchase", status="approved", commission_amount=12.5, commission_rate=0.0
        )
    )
    db.flush()
    forced = update_leaderboard(db, force=True, today=today)
    assert forced["updated"] is True
    assert a.total_earnings == 12.5
    assert update_leaderboard(db, today=today + timedelta(days=1))["updated"] is True
