"""
Back-office reporting: membership growth, the referral conversion funnel, plan engagement and CSV exports.
"""
from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.saudemax.constants import IUA_LEVELS, PLANS
from app.saudemax.modules.affiliates.metrics import conversion_rate, months_back
from app.saudemax.modules.affiliates.models import Affiliate, AffiliateVisit
from app.saudemax.modules.members.models import BillingRecord, MemberProfile

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


GROWTH_TIMEFRAMES = {"30days": 1, "quarter": 3, "year": 12}
FUNNEL_TIMEFRAMES = ("7days", "30days", "quarter")


def growth_start(timeframe: str, now: datetime) -> datetime:
    return months_back(now, GROWTH_TIMEFRAMES.get(timeframe, 1))


def funnel_start(timeframe: str, now: datetime) -> datetime:
    if timeframe == "7days":
        return now - timedelta(days=7)
    if timeframe == "quarter":
        return months_back(now, 3)
    return now - timedelta(days=30)


@dataclass
class GrowthMetrics:
    active_members: int
    new_signups: int
    total_revenue: float
    monthly_recurring_revenue: float

    @property
    def growth_rate(self) -> float:
        return conversion_rate(self.new_signups, self.active_members)


def growth_metrics(s: "Session", timeframe: str = "30days", now: datetime | None = None) -> GrowthMetrics:
    now = now or datetime.utcnow()
    start = growth_start(timeframe, now)
    active = s.query(func.count(MemberProfile.id)).filter(MemberProfile.status == "active").scalar() or 0
    signups = (
        s.query(func.count(MemberProfile.id))
        .filter(MemberProfile.created_at >= start, MemberProfile.created_at <= now)
        .scalar()
        or 0
    )
    revenue = (
        s.query(func.coalesce(func.sum(BillingRecord.amount), 0.0)).filter(BillingRecord.status == "paid").scalar() or 0.0
    )
    mrr = (
        s.query(func.coalesce(func.sum(MemberProfile.monthly_contribution), 0.0))
        .filter(MemberProfile.status == "active")
        .scalar()
        or 0.0
    )
    return GrowthMetrics(
        active_members=int(active),
        new_signups=int(signups),
        total_revenue=round(float(revenue), 2),
        monthly_recurring_revenue=round(float(mrr), 2),
    )


def monthly_growth(s: "Session", timeframe: str = "30days", now: datetime | None = None) -> list[dict]:
    """Signups and paid revenue per calendar month, oldest first (6 months, or 12 for ``year``)."""
    now = now or datetime.utcnow()
    months = 12 if timeframe == "year" else 6
    out: list[dict] = []
    for i in range(months - 1, -1, -1):
        anchor = months_back(now, i)
        month_start = anchor.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        next_start = months_back(month_start, -1)
        signups = (
            s.query(func.count(MemberProfile.id))
            .filter(MemberProfile.created_at >= month_start, MemberProfile.created_at < next_start)
            .scalar()
            or 0
        )
        revenue = (
            s.query(func.coalesce(func.sum(BillingRecord.amount), 0.0))
            .filter(BillingRecord.status == "paid")
            .filter(BillingRecord.created_at >= month_start, BillingRecord.created_at < next_start)
            .scalar()
            or 0.0
        )
        out.append({"month": month_start.strftime("%b %Y"), "signups": int(signups), "revenue": round(float(revenue), 2)})
    return out


def monthly_growth_csv(rows: list[dict]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Month", "Signups", "Revenue"])
    for r in rows:
        w.writerow([r["month"], r["signups"], f"{r['revenue']:.2f}"])
    return buf.getvalue()


@dataclass
class ConversionFunnel:
    clicks: int
    leads: int
    signups: int
    active_members: int

    @property
    def click_to_lead(self) -> float:
        return conversion_rate(self.leads, self.clicks)

    @property
    def lead_to_signup(self) -> float:
        return conversion_rate(self.signups, self.leads)

    @property
    def signup_to_active(self) -> float:
        return conversion_rate(self.active_members, self.signups)

    @property
    def overall(self) -> float:
        return conversion_rate(self.active_members, self.clicks)


def conversion_funnel(s: "Session", timeframe: str = "30days", now: datetime | None = None) -> ConversionFunnel:
    now = now or datetime.utcnow()
    start = funnel_start(timeframe, now)
    visits = s.query(AffiliateVisit).filter(AffiliateVisit.created_at >= start, AffiliateVisit.created_at <= now)
    members = s.query(MemberProfile).filter(MemberProfile.created_at >= start, MemberProfile.created_at <= now)
    return ConversionFunnel(
        clicks=visits.count(),
        leads=visits.filter(AffiliateVisit.converted.is_(True)).count(),
        signups=members.count(),
        active_members=members.filter(MemberProfile.status == "active").count(),
    )


def conversion_funnel_csv(f: ConversionFunnel) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Metric", "Value", "Conversion Rate"])
    w.writerow(["Total Clicks", f.clicks, ""])
    w.writerow(["Leads Collected", f.leads, f"{f.click_to_lead:.2f}%"])
    w.writerow(["Members Enrolled", f.signups, f"{f.lead_to_signup:.2f}%"])
    w.writerow(["Active Members", f.active_members, f"{f.signup_to_active:.2f}%"])
    w.writerow(["Overall Conversion", "", f"{f.overall:.2f}%"])
    return buf.getvalue()


PLAN_ENGAGEMENT_TIMEFRAMES = {"30": 30, "90": 90, "180": 180}
PLAN_TYPE_FILTERS = ("all", "individual", "family")


@dataclass
class PlanEngagement:
    timeframe: str
    plan_type: str
    total_active: int
    total_cancelled: int
    new_enrollments: int
    cancellations: int
    plan_distribution: dict[str, int]
    iua_distribution: dict[str, int]
    monthly: list[dict]

    @property
    def retention_rate(self) -> float:
        return conversion_rate(self.total_active, self.total_active + self.total_cancelled)


def _plan_codes(plan_type: str) -> list[str]:
    if plan_type not in ("individual", "family"):
        return list(PLANS)
    return [code for code, plan in PLANS.items() if plan["type"] == plan_type]


def plan_engagement(
    s: "Session", timeframe: str = "30", plan_type: str = "all", now: datetime | None = None
) -> PlanEngagement:
    """
    Membership mix and churn per plan.

    Totals and distributions cover every profile on the selected plan type; new enrollments and
    cancellations count only the last ``timeframe`` days. The monthly trend spans 6, 9 or 12 months.
    """
    now = now or datetime.utcnow()
    if timeframe not in PLAN_ENGAGEMENT_TIMEFRAMES:
        timeframe = "30"
    if plan_type not in PLAN_TYPE_FILTERS:
        plan_type = "all"
    start = now - timedelta(days=PLAN_ENGAGEMENT_TIMEFRAMES[timeframe])
    codes = _plan_codes(plan_type)
    members = s.query(MemberProfile).filter(MemberProfile.plan_code.in_(codes))

    plan_counts = dict(
        s.query(MemberProfile.plan_code, func.count(MemberProfile.id))
        .filter(MemberProfile.plan_code.in_(codes))
        .group_by(MemberProfile.plan_code)
        .all()
    )
    iua_counts = dict(
        s.query(MemberProfile.iua_level, func.count(MemberProfile.id))
        .filter(MemberProfile.plan_code.in_(codes))
        .group_by(MemberProfile.iua_level)
        .all()
    )

    months = {"30": 6, "90": 9, "180": 12}[timeframe]
    trend: list[dict] = []
    for i in range(months - 1, -1, -1):
        anchor = months_back(now, i)
        month_start = anchor.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        next_start = months_back(month_start, -1)
        enrolled = members.filter(MemberProfile.created_at >= month_start, MemberProfile.created_at < next_start).count()
        cancelled = members.filter(
            MemberProfile.status == "cancelled",
            MemberProfile.updated_at >= month_start,
            MemberProfile.updated_at < next_start,
        ).count()
        trend.append({"month": month_start.strftime("%b %Y"), "enrollments": enrolled, "cancellations": cancelled})

    return PlanEngagement(
        timeframe=timeframe,
        plan_type=plan_type,
        total_active=members.filter(MemberProfile.status == "active").count(),
        total_cancelled=members.filter(MemberProfile.status == "cancelled").count(),
        new_enrollments=members.filter(MemberProfile.created_at >= start, MemberProfile.created_at <= now).count(),
        cancellations=members.filter(
            MemberProfile.status == "cancelled",
            MemberProfile.updated_at >= start,
            MemberProfile.updated_at <= now,
        ).count(),
        plan_distribution={PLANS[c]["name"]: int(plan_counts[c]) for c in codes if plan_counts.get(c)},
        iua_distribution={level: int(iua_counts.get(level, 0)) for level in IUA_LEVELS},
        monthly=trend,
    )


def plan_engagement_csv(e: PlanEngagement) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Section", "Label", "Value"])
    w.writerow(["Summary", "Active Members", e.total_active])
    w.writerow(["Summary", "Cancelled Members", e.total_cancelled])
    w.writerow(["Summary", "Retention Rate", f"{e.retention_rate:.2f}%"])
    w.writerow(["Summary", f"New Enrollments ({e.timeframe} days)", e.new_enrollments])
    w.writerow(["Summary", f"Cancellations ({e.timeframe} days)", e.cancellations])
    for name, count in e.plan_distribution.items():
        w.writerow(["Plan", name, count])
    for level, count in e.iua_distribution.items():
        w.writerow(["IUA", f"${level}", count])
    for r in e.monthly:
        w.writerow(["Trend", r["month"], f"{r['enrollments']} enrolled / {r['cancellations']} cancelled"])
    return buf.getvalue()


# ---------- Exports ----------
def members_csv(members: list[MemberProfile]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Member Number", "Name", "Email", "Plan", "Status", "Monthly Contribution", "Enrollment Date", "Next Billing Date"])
    for m in members:
        w.writerow(
            [
                m.member_number or "",
                m.user.full_name or "" if m.user else "",
                m.user.email if m.user else "",
                m.plan_code,
                m.status,
                f"{m.monthly_contribution:.2f}",
                m.enrollment_date.isoformat() if m.enrollment_date else "",
                m.next_billing_date.isoformat() if m.next_billing_date else "",
            ]
        )
    return buf.getvalue()


def affiliates_csv(affiliates: list[Affiliate]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Affiliate Code", "Email", "Status", "Commission Rate", "Total Referrals", "Total Visits", "Total Earnings", "Joined"])
    for a in affiliates:
        w.writerow(
            [
                a.affiliate_code,
                a.email,
                a.status,
                f"{a.commission_rate:.2f}",
                a.total_referrals,
                a.total_visits,
                f"{a.total_earnings:.2f}",
                a.created_at.date().isoformat() if a.created_at else "",
            ]
        )
    return buf.getvalue()
