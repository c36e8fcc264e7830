from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.saudemax.models import Base

if TYPE_CHECKING:
    from app.saudemax.models import User


class Affiliate(Base):
    __tablename__ = "affiliates"
    __table_args__ = (
        Index("idx_affiliates_status", "status"),
        Index("idx_affiliates_total_earnings", "total_earnings"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    affiliate_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    referral_link: Mapped[str] = mapped_column(String(512), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, active, suspended, rejected
    commission_rate: Mapped[float] = mapped_column(Float, nullable=False, default=10.0)  # percent

    # Denormalized stats, recomputed by service.recalculate_stats
    total_earnings: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_referrals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_visits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    payout_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    payout_method: Mapped[str] = mapped_column(String(32), nullable=False, default="paypal")  # paypal, bank_transfer, crypto

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped["User"] = relationship("User", lazy="selectin")


class AffiliateVisit(Base):
    __tablename__ = "affiliate_visits"
    __table_args__ = (
        Index("idx_affiliate_visits_affiliate_id", "affiliate_id"),
        Index("idx_affiliate_visits_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    affiliate_id: Mapped[int] = mapped_column(ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    referrer: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    page_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # mobile, desktop
    browser: Mapped[str | None] = mapped_column(String(32), nullable=True)
    converted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AffiliateReferral(Base):
    """A conversion attributed to an affiliate; doubles as the commission record."""

    __tablename__ = "affiliate_referrals"
    __table_args__ = (
        Index("idx_affiliate_referrals_affiliate_id", "affiliate_id"),
        Index("idx_affiliate_referrals_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    affiliate_id: Mapped[int] = mapped_column(ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    referred_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    order_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    commission_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    commission_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    commission_rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("commission_rules.id", ondelete="SET NULL"), nullable=True
    )
    conversion_type: Mapped[str] = mapped_column(String(32), nullable=False)  # signup, purchase, subscription
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, approved, paid, rejected
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    affiliate: Mapped[Affiliate] = relationship(Affiliate, lazy="selectin")


class AffiliateLink(Base):
    __tablename__ = "affiliate_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    affiliate_id: Mapped[int] = mapped_column(ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    referral_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AffiliateWithdrawal(Base):
    __tablename__ = "affiliate_withdrawals"
    __table_args__ = (
        Index("idx_affiliate_withdrawals_affiliate_id", "affiliate_id"),
        Index("idx_affiliate_withdrawals_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    affiliate_id: Mapped[int] = mapped_column(ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)

    amount: Mapped[float] = mapped_column(Float, nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    payout_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, processing, completed, failed
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    affiliate: Mapped[Affiliate] = relationship(Affiliate, lazy="selectin")
