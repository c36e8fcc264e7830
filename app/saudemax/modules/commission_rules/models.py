from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.saudemax.models import Base


class CommissionRule(Base):
    __tablename__ = "commission_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="percent")  # flat, percent, tiered
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)  # null for tiered
    # [{"min": 1, "max": 10, "rate": 5.0}, {"min": 11, "max": null, "rate": 7.5}]
    tiers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    applies_to: Mapped[str] = mapped_column(String(16), nullable=False, default="enrollment")  # enrollment, renewal, both
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
