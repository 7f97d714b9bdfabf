"""Pydantic schemas for subscription resources.

Request and response bodies use camelCase on the wire; snake_case field
names are accepted on input as well.
"""
from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from src.db.models.enums import BillingCycle
from src.db.models.plan_change import PlanChange
from src.db.models.subscription import Subscription
from src.services.plans import PlanInfo

Money = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionCreate(CamelModel):
    """Body of ``POST /subscriptions``."""

    plan_id: Optional[str] = Field(default=None, description="Plan identifier")
    billing_cycle: BillingCycle = Field(
        default=BillingCycle.MONTHLY, description="Billing cycle"
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Caller defined key/value pairs"
    )


class SubscriptionUpdate(CamelModel):
    """Partial update body of ``PUT /subscriptions/{id}``."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    plan_id: Optional[str] = None
    status: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    base_price: Optional[Decimal] = None
    currency: Optional[str] = None
    grace_period_id: Optional[str] = None
    grace_period_ends_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None


class SubscriptionCancel(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    cancel_at_period_end: bool = Field(
        default=False, description="Cancel when the current billing period ends"
    )
    effective_date: Optional[datetime] = None


class ChangePlanRequest(CamelModel):
    plan_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)
    effective_date: Optional[datetime] = None


class ReactivateRequest(CamelModel):
    plan_id: Optional[str] = None


class GracePeriodRequest(CamelModel):
    grace_period_id: str = Field(..., min_length=1)
    ends_at: datetime


class ConvertGraceRequest(CamelModel):
    plan_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class PlanChangeRead(CamelModel):
    from_plan_id: str
    to_plan_id: str
    changed_at: datetime
    change_type: str
    reason: Optional[str] = None
    price_difference: Money
    effective_date: datetime
    changed_by: str

    @classmethod
    def from_model(cls, change: PlanChange) -> "PlanChangeRead":
        return cls(
            from_plan_id=change.from_plan_id,
            to_plan_id=change.to_plan_id,
            changed_at=change.changed_at,
            change_type=change.change_type,
            reason=change.reason,
            price_difference=change.price_difference,
            effective_date=change.effective_date,
            changed_by=change.changed_by,
        )


class SubscriptionRead(CamelModel):
    """Public view of a subscription."""

    id: str
    tenant_id: str
    plan_id: str
    status: str
    billing_cycle: str
    base_price: Money
    currency: str
    is_in_grace_period: bool = False
    grace_period_id: Optional[str] = None
    grace_period_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_at_period_end: bool = False
    cancel_effective_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    plan_history: list[PlanChangeRead] = Field(default_factory=list)
    created_by: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionRead":
        return cls(
            id=subscription.id,
            tenant_id=subscription.tenant_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            base_price=subscription.base_price,
            currency=subscription.currency,
            is_in_grace_period=subscription.is_in_grace_period,
            grace_period_id=subscription.grace_period_id,
            grace_period_ends_at=subscription.grace_period_ends_at,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_ends_at=subscription.trial_ends_at,
            cancelled_at=subscription.cancelled_at,
            cancel_reason=subscription.cancel_reason,
            cancelled_by=subscription.cancelled_by,
            cancel_at_period_end=bool(subscription.cancel_at_period_end),
            cancel_effective_at=subscription.cancel_effective_at,
            metadata=dict(subscription.meta or {}),
            plan_history=[
                PlanChangeRead.from_model(change)
                for change in subscription.plan_history
            ],
            created_by=subscription.created_by,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, *, page: int, limit: int, total: int) -> "Pagination":
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if limit else 0,
        )


class PlanRead(CamelModel):
    id: str
    name: str
    monthly_price: Money
    yearly_price: Money
    currency: str
    features: list[str]

    @classmethod
    def from_plan(cls, plan: PlanInfo) -> "PlanRead":
        return cls(
            id=plan.id,
            name=plan.name,
            monthly_price=plan.monthly_price,
            yearly_price=plan.yearly_price,
            currency=plan.currency,
            features=list(plan.features),
        )
