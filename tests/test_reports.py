from datetime import datetime, timedelta

from app.saudemax.accounts import create_user
from app.saudemax.analytics import (
    affiliates_csv,
    conversion_funnel,
    conversion_funnel_csv,
    growth_metrics,
    members_csv,
    monthly_growth,
    plan_engagement,
    plan_engagement_csv,
)
from app.saudemax.constants import PLANS, annual_amount
from app.saudemax.modules.affiliates.service import register_affiliate, track_referral, track_visit
from app.saudemax.modules.members.models import BillingRecord
from app.saudemax.modules.members.service import enroll_member, mark_invoice, create_invoice, set_member_status
from app.saudemax.notifications import NotificationError, WebhookNotifier, send_withdrawal_notification, withdrawal_message
from app.saudemax.status import is_negative_status, is_pending_status, is_positive_status, status_class, status_icon, status_priority, status_text


def _admin(db):
    from app.saudemax.models import User

    return db.query(User).filter(User.email == "admin@example.com").one()


def test_annual_pricing():
    assert annual_amount("essential-individual") == 2149.2
    assert sum(1 for p in PLANS.values() if p["popular"]) == 2


def test_growth_metrics_and_monthly_rows(db):
    admin = _admin(db)
    members = []
    for i, status in enumerate(("active", "active", "pending")):
        user = create_user(db, email=f"g{i}@example.com", password="password-123")
        profile = enroll_member(db, user, "essential-individual")
        if status == "active":
            set_member_status(db, profile, "active", admin)
        members.append(profile)
    inv = create_invoice(db, members[0], amount=199.0, due_date=datetime.utcnow().date(), description=None, actor=admin)
    mark_invoice(db, inv, "paid", admin)
    create_invoice(db, members[1], amount=199.0, due_date=datetime.utcnow().date(), description=None, actor=admin)
    db.flush()

    g = growth_metrics(db, "30days")
    assert g.active_members == 2
    assert g.new_signups == 3
    assert g.total_revenue == 199.0
    assert g.monthly_recurring_revenue == 398.0
    assert g.growth_rate == 150.0

    rows = monthly_growth(db, "year")
    assert len(rows) == 12
    assert rows[-1]["month"] == datetime.utcnow().strftime("%b %Y")
    assert rows[-1]["signups"] == 3
    assert rows[-1]["revenue"] == 199.0
    assert len(monthly_growth(db, "30days")) == 6

    lines = members_csv(members).splitlines()
    assert lines[0].startswith("Member Number,Name,Email,Plan,Status")
    assert "g0@example.com" in lines[1]


def test_conversion_funnel(db):
    user = create_user(db, email="aff@example.com", password="password-123")
    a = register_affiliate(
        db, user, {"email": "aff@example.com", "payout_email": "aff@example.com", "payout_method": "paypal"},
        base_url="http://testserver", commission_rate=10.0, status="active",
    )
    for _ in range(4):
        track_visit(db, a.affiliate_code, page_url="/")
    member = create_user(db, email="lead@example.com", password="password-123")
    track_referral(db, a.affiliate_code, conversion_type="signup", referred_user_id=member.id)
    enroll_member(db, member, "complete-individual")
    db.flush()

    f = conversion_funnel(db, "7days")
    assert (f.clicks, f.leads, f.signups, f.active_members) == (4, 1, 1, 0)
    assert f.click_to_lead == 25.0
    assert f.overall == 0.0
    lines = conversion_funnel_csv(f).splitlines()
    assert lines[2] == "Leads Collected,1,25.00%"

    # Visits older than the window drop out
    later = datetime.utcnow() + timedelta(days=40)
    assert conversion_funnel(db, "30days", now=later).clicks == 0

    assert affiliates_csv([a]).splitlines()[1].startswith(f"{a.affiliate_code},aff@example.com,active,10.00,1,4,0.00,")


def test_plan_engagement(db):
    admin = _admin(db)
    for i, (plan, iua, status) in enumerate(
        (
            ("essential-individual", "1500", "active"),
            ("complete-family", "3000", "active"),
            ("complete-family", "3000", "cancelled"),
        )
    ):
        user = create_user(db, email=f"p{i}@example.com", password="password-123")
        profile = enroll_member(db, user, plan, iua_level=iua)
        set_member_status(db, profile, "active", admin)
        if status == "cancelled":
            set_member_status(db, profile, "cancelled", admin)
    db.flush()

    e = plan_engagement(db, "90")
    assert (e.total_active, e.total_cancelled) == (2, 1)
    assert (e.new_enrollments, e.cancellations) == (3, 1)
    assert round(e.retention_rate, 2) == 66.67
    assert e.plan_distribution == {"Essential Individual": 1, "Complete Family": 2}
    assert e.iua_distribution == {"1500": 1, "3000": 2, "6000": 0}
    assert len(e.monthly) == 9
    assert e.monthly[-1] == {"month": datetime.utcnow().strftime("%b %Y"), "enrollments": 3, "cancellations": 1}

    family = plan_engagement(db, "180", "family")
    assert (family.total_active, family.total_cancelled) == (1, 1)
    assert family.plan_distribution == {"Complete Family": 2}
    assert len(family.monthly) == 12

    # Unknown filters fall back to the defaults
    fallback = plan_engagement(db, "7", "corporate")
    assert (fallback.timeframe, fallback.plan_type) == ("30", "all")
    assert len(fallback.monthly) == 6

    # Totals keep every member; the window only drives the recent counts
    later = plan_engagement(db, "180", now=datetime.utcnow() + timedelta(days=200))
    assert (later.total_active, later.new_enrollments, later.cancellations) == (2, 0, 0)

    lines = plan_engagement_csv(e).splitlines()
    assert lines[0] == "Section,Label,Value"
    assert "Summary,Retention Rate,66.67%" in lines
    assert "Summary,New Enrollments (90 days),3" in lines
    assert "Plan,Complete Family,2" in lines
    assert "IUA,$3000,2" in lines


def test_status_helpers():
    assert status_class("Active") == "badge-success"
    assert status_class("nonsense") == "badge-muted"
    assert status_icon(None) == "alert-circle"
    assert status_text("under_review") == "Under Review"
    assert status_text(None) == ""
    assert status_priority("overdue") < status_priority("closed")
    assert is_positive_status("paid")
    assert is_negative_status("denied")
    assert is_pending_status("in_progress")
    assert not is_pending_status("closed")


def test_withdrawal_notification_without_webhook_only_logs(caplog):
    import logging

    with caplog.at_level(logging.INFO, logger="app.saudemax.notifications"):
        sent = send_withdrawal_notification({}, email="a@example.com", status="completed", amount=75, affiliate_code="ABC")
    assert sent is False
    assert "no webhook configured" in caplog.text
    assert withdrawal_message("failed", 12.5) == (
        "Withdrawal Request Failed",
        "Your withdrawal request for $12.50 has been failed.",
    )


def test_withdrawal_notification_posts_and_survives_errors(monkeypatch):
    calls = []

    def fake_post(self, payload):
        calls.append((self.url, payload))

    monkeypatch.setattr(WebhookNotifier, "post_json", fake_post)
    config = {"NOTIFY_WEBHOOK_URL": "https://hooks.example.com/withdrawals"}
    assert send_withdrawal_notification(config, email="a@example.com", status="processing", amount=50.0, affiliate_code="ABC")
    url, payload = calls[0]
    assert url == "https://hooks.example.com/withdrawals"
    assert payload["type"] == "withdrawal_status"
    assert payload["subject"] == "Withdrawal Request Processing"

    def failing_post(self, payload):
        raise NotificationError("HTTP 500 from notification webhook")

    monkeypatch.setattr(WebhookNotifier, "post_json", failing_post)
    assert send_withdrawal_notification(config, email="a@example.com", status="failed", amount=50.0, affiliate_code="ABC") is False


def test_billing_record_defaults(db):
    admin = _admin(db)
    user = create_user(db, email="bill@example.com", password="password-123")
    profile = enroll_member(db, user, "premium-family")
    rec = create_invoice(db, profile, amount=999.0, due_date=datetime.utcnow().date(), description="  ", actor=admin)
    assert isinstance(rec, BillingRecord)
    assert rec.status == "pending"
    assert rec.description is None
