"""Append-only log of plan changes on a subscription."""
from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.base import Base
from src.db.models.subscription import utcnow


class PlanChange(Base):
    """One entry of a subscription's plan history."""

    __tablename__ = "plan_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    from_plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    to_plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    change_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_difference: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    changed_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    effective_date: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)

    subscription: Mapped["Subscription"] = relationship(
        "Subscription", back_populates="plan_history"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"<PlanChange {self.change_type} {self.from_plan_id}->{self.to_plan_id}>"
        )
