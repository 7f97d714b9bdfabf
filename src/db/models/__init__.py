"""Database models package exports."""

from src.db.models.enums import BillingCycle, PlanChangeType, SubscriptionStatus
from src.db.models.plan_change import PlanChange
from src.db.models.subscription import Subscription

__all__ = [
    "BillingCycle",
    "PlanChange",
    "PlanChangeType",
    "Subscription",
    "SubscriptionStatus",
]
