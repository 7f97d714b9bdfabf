"""Subscription plan catalog and helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from src.db.models.enums import BillingCycle, PlanChangeType


@dataclass(frozen=True)
class PlanInfo:
    id: str
    name: str
    monthly_price: Decimal
    yearly_price: Decimal
    currency: str = "EUR"
    features: tuple[str, ...] = field(default_factory=tuple)

    def price_for(self, cycle: BillingCycle | str) -> Decimal:
        if BillingCycle(cycle) is BillingCycle.YEARLY:
            return self.yearly_price
        return self.monthly_price


PLAN_CATALOG: dict[str, PlanInfo] = {
    "free": PlanInfo(
        id="free",
        name="Free",
        monthly_price=Decimal("0"),
        yearly_price=Decimal("0"),
        features=("events", "attendance"),
    ),
    "basic": PlanInfo(
        id="basic",
        name="Basic",
        monthly_price=Decimal("29.00"),
        yearly_price=Decimal("290.00"),
        features=("events", "attendance", "registration_forms", "reports"),
    ),
    "premium": PlanInfo(
        id="premium",
        name="Premium",
        monthly_price=Decimal("79.00"),
        yearly_price=Decimal("790.00"),
        features=(
            "events",
            "attendance",
            "registration_forms",
            "reports",
            "presence_policies",
            "campaigns",
        ),
    ),
    "enterprise": PlanInfo(
        id="enterprise",
        name="Enterprise",
        monthly_price=Decimal("199.00"),
        yearly_price=Decimal("1990.00"),
        features=(
            "events",
            "attendance",
            "registration_forms",
            "reports",
            "presence_policies",
            "campaigns",
            "custom_domains",
            "sso",
        ),
    ),
}

ALLOWED_PLAN_IDS: frozenset[str] = frozenset(PLAN_CATALOG)


def get_plan(plan_id: Optional[str]) -> Optional[PlanInfo]:
    if not plan_id:
        return None
    return PLAN_CATALOG.get(plan_id)


def list_plans() -> list[PlanInfo]:
    """Return the catalog ordered by monthly price."""

    return sorted(PLAN_CATALOG.values(), key=lambda plan: plan.monthly_price)


def classify_plan_change(
    from_plan_id: str,
    to_plan_id: str,
    cycle: BillingCycle | str = BillingCycle.MONTHLY,
) -> tuple[PlanChangeType, Decimal]:
    """Return the change type and price difference for moving between plans.

    A move to a plan of equal price counts as an upgrade with a zero
    difference.
    """

    current = PLAN_CATALOG[from_plan_id]
    target = PLAN_CATALOG[to_plan_id]
    difference = target.price_for(cycle) - current.price_for(cycle)
    if difference < 0:
        return PlanChangeType.DOWNGRADE, difference
    return PlanChangeType.UPGRADE, difference
