"""Enumerations stored as plain strings on subscription records."""
from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELLED = "CANCELLED"
    TRIALING = "TRIALING"
    GRACE_PERIOD = "GRACE_PERIOD"
    PAST_DUE = "PAST_DUE"


class PlanChangeType(str, Enum):
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"
    GRACE_CONVERSION = "GRACE_CONVERSION"
    CANCELLATION = "CANCELLATION"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
