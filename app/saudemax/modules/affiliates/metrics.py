from __future__ import annotations

import calendar
import csv
import io
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse

from app.saudemax.models import SystemSetting
from app.saudemax.modules.affiliates.models import (
    Affiliate,
    AffiliateLink,
    AffiliateReferral,
    AffiliateVisit,
)
from app.saudemax.modules.affiliates.service import recalculate_stats

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


EARNED_STATUSES = ("approved", "paid")
TIMEFRAMES = ("all", "month", "quarter")
SORT_KEYS = ("earnings", "conversions", "clicks")


def months_back(now: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` earlier, clamped to the end of shorter months."""
    year, month0 = divmod(now.year * 12 + now.month - 1 - months, 12)
    month = month0 + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def timeframe_start(timeframe: str, now: datetime) -> datetime | None:
    if timeframe == "month":
        return months_back(now, 1)
    if timeframe == "quarter":
        return months_back(now, 3)
    return None


def conversion_rate(conversions: int, clicks: int) -> float:
    return (conversions / clicks) * 100 if clicks > 0 else 0.0


# ---------- Dashboard metrics ----------
@dataclass
class AffiliateMetrics:
    total_earnings: float = 0.0
    total_referrals: int = 0
    total_visits: int = 0
    conversion_rate: float = 0.0
    pending_commissions: float = 0.0
    this_month_earnings: float = 0.0
    this_month_referrals: int = 0
    this_month_visits: int = 0


def affiliate_metrics(s: "Session", affiliate: Affiliate, now: datetime | None = None) -> AffiliateMetrics:
    now = now or datetime.utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    referrals = s.query(AffiliateReferral).filter(AffiliateReferral.affiliate_id == affiliate.id).all()
    visits = s.query(AffiliateVisit.created_at).filter(AffiliateVisit.affiliate_id == affiliate.id).all()

    m = AffiliateMetrics()
    m.total_referrals = len(referrals)
    m.total_visits = len(visits)
    m.total_earnings = round(sum(r.commission_amount or 0 for r in referrals if r.status in EARNED_STATUSES), 2)
    m.pending_commissions = round(sum(r.commission_amount or 0 for r in referrals if r.status == "pending"), 2)
    m.conversion_rate = conversion_rate(m.total_referrals, m.total_visits)

    recent = [r for r in referrals if r.created_at >= month_start]
    m.this_month_referrals = len(recent)
    m.this_month_earnings = round(sum(r.commission_amount or 0 for r in recent if r.status in EARNED_STATUSES), 2)
    m.this_month_visits = sum(1 for (created_at,) in visits if created_at >= month_start)
    return m


# ---------- Per-URL referral report ----------
@dataclass
class ReferralUrlRow:
    referral_url: str
    click_count: int = 0
    conversion_count: int = 0
    earnings: float = 0.0
    created_at: datetime | None = None

    @property
    def conversion_rate(self) -> float:
        return conversion_rate(self.conversion_count, self.click_count)


@dataclass
class ReferralReport:
    rows: list[ReferralUrlRow] = field(default_factory=list)

    @property
    def total_clicks(self) -> int:
        return sum(r.click_count for r in self.rows)

    @property
    def total_conversions(self) -> int:
        return sum(r.conversion_count for r in self.rows)

    @property
    def total_earnings(self) -> float:
        return round(sum(r.earnings for r in self.rows), 2)

    @property
    def conversion_rate(self) -> float:
        return conversion_rate(self.total_conversions, self.total_clicks)


def _link_source(link: AffiliateLink) -> str:
    values = parse_qs(urlparse(link.referral_url).query).get("source") or [link.source or ""]
    return values[0]


def referral_metrics_by_url(
    s: "Session",
    affiliate: Affiliate,
    *,
    timeframe: str = "month",
    now: datetime | None = None,
    search: str = "",
    sort_by: str = "earnings",
    descending: bool = True,
) -> ReferralReport:
    """
    Clicks, conversions and earnings grouped by URL.

    Visits group by their landing page; referrals group under the campaign link whose
    ``source`` appears in the order id, or ``default``. Links without visits still get
    a zero row. The timeframe narrows referrals only.
    """
    now = now or datetime.utcnow()
    start = timeframe_start(timeframe, now)

    rq = s.query(AffiliateReferral).filter(AffiliateReferral.affiliate_id == affiliate.id)
    if start is not None:
        rq = rq.filter(AffiliateReferral.created_at >= start)
    referrals = rq.all()
    visits = s.query(AffiliateVisit).filter(AffiliateVisit.affiliate_id == affiliate.id).all()
    links = s.query(AffiliateLink).filter(AffiliateLink.affiliate_id == affiliate.id).all()

    visits_by_url: dict[str, int] = {}
    for v in visits:
        url = v.page_url or "unknown"
        visits_by_url[url] = visits_by_url.get(url, 0) + 1

    conversions_by_url: dict[str, int] = {}
    earnings_by_url: dict[str, float] = {}
    for r in referrals:
        url = "default"
        for link in links:
            source = _link_source(link)
            if source and r.order_id and source in r.order_id:
                url = link.referral_url
                break
        conversions_by_url[url] = conversions_by_url.get(url, 0) + 1
        earnings_by_url[url] = earnings_by_url.get(url, 0.0) + (r.commission_amount or 0.0)

    rows = [
        ReferralUrlRow(
            referral_url=url,
            click_count=count,
            conversion_count=conversions_by_url.get(url, 0),
            earnings=round(earnings_by_url.get(url, 0.0), 2),
        )
        for url, count in visits_by_url.items()
    ]
    seen = {r.referral_url for r in rows}
    for link in links:
        if link.referral_url not in seen:
            rows.append(
                ReferralUrlRow(
                    referral_url=link.referral_url,
                    conversion_count=conversions_by_url.get(link.referral_url, 0),
                    earnings=round(earnings_by_url.get(link.referral_url, 0.0), 2),
                    created_at=link.created_at,
                )
            )
            seen.add(link.referral_url)

    term = (search or "").strip().lower()
    if term:
        rows = [r for r in rows if term in r.referral_url.lower()]

    key_fn = {
        "earnings": lambda r: r.earnings,
        "conversions": lambda r: r.conversion_count,
        "clicks": lambda r: r.click_count,
    }.get(sort_by, lambda r: r.earnings)
    rows.sort(key=key_fn, reverse=descending)
    return ReferralReport(rows=rows)


def referral_report_csv(report: ReferralReport) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Referral URL", "Clicks", "Conversions", "Earnings", "Created Date"])
    for r in report.rows:
        w.writerow(
            [
                r.referral_url,
                r.click_count,
                r.conversion_count,
                f"{r.earnings:.2f}",
                r.created_at.date().isoformat() if r.created_at else "",
            ]
        )
    return buf.getvalue()


# ---------- Leaderboard ----------
def leaderboard(
    s: "Session",
    *,
    limit: int = 10,
    show_earnings: bool = False,
    show_conversion: bool = False,
) -> list[dict[str, Any]]:
    """Active affiliates by total earnings. Earnings and conversion are opt-in fields."""
    limit = max(1, min(int(limit or 10), 100))
    affiliates = (
        s.query(Affiliate)
        .filter(Affiliate.status == "active")
        .order_by(Affiliate.total_earnings.desc(), Affiliate.id.asc())
        .limit(limit)
        .all()
    )
    out: list[dict[str, Any]] = []
    for rank, a in enumerate(affiliates, start=1):
        row: dict[str, Any] = {
            "rank": rank,
            "affiliate_code": a.affiliate_code,
            "total_referrals": a.total_referrals,
        }
        if show_earnings:
            row["total_earnings"] = round(a.total_earnings or 0, 2)
        if show_conversion:
            row["conversion_rate"] = round(conversion_rate(a.total_referrals, a.total_visits), 2)
        out.append(row)
    return out


LAST_LEADERBOARD_UPDATE = "last_leaderboard_update"


def update_leaderboard(s: "Session", *, force: bool = False, today: date | None = None) -> dict[str, Any]:
    """Recompute stats for every active affiliate, at most once per day unless forced."""
    today_str = (today or date.today()).isoformat()
    setting = s.get(SystemSetting, LAST_LEADERBOARD_UPDATE)
    if not force and setting is not None and setting.value == today_str:
        return {"updated": False, "message": "Leaderboard already updated today", "last_update": setting.value}

    affiliates = s.query(Affiliate).filter(Affiliate.status == "active").all()
    for a in affiliates:
        recalculate_stats(s, a)

    if setting is None:
        setting = SystemSetting(key=LAST_LEADERBOARD_UPDATE)
        s.add(setting)
    setting.value = today_str
    setting.updated_at = datetime.utcnow()
    s.flush()
    return {
        "updated": True,
        "message": "Leaderboard updated successfully",
        "affiliates_updated": len(affiliates),
        "last_update": today_str,
    }
