"""Repository utilities for tenant subscriptions."""
from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from src.db.models.enums import SubscriptionStatus
from src.db.models.plan_change import PlanChange
from src.db.models.subscription import Subscription


class SubscriptionRepo:
    """Data-access helpers for :class:`Subscription`, bound to one tenant.

    Every query is filtered on the tenant the repository was created for, so
    callers cannot read or count another tenant's records.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self.session = session
        self.tenant_id = tenant_id

    def _scoped(self) -> Select:
        return select(Subscription).where(Subscription.tenant_id == self.tenant_id)

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            self._scoped().where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_active(self) -> Optional[Subscription]:
        result = await self.session.execute(
            self._scoped()
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .limit(1)
        )
        return result.scalars().first()

    async def list_page(
        self,
        *,
        offset: int,
        limit: int,
        status: Optional[SubscriptionStatus] = None,
    ) -> list[Subscription]:
        query = self._scoped()
        if status is not None:
            query = query.where(Subscription.status == status.value)
        query = (
            query.order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count(self, status: Optional[SubscriptionStatus] = None) -> int:
        query = (
            select(func.count())
            .select_from(Subscription)
            .where(Subscription.tenant_id == self.tenant_id)
        )
        if status is not None:
            query = query.where(Subscription.status == status.value)
        result = await self.session.execute(query)
        value = result.scalar_one()
        return int(value or 0)

    async def list_due(self, now: dt.datetime) -> list[Subscription]:
        """Uncancelled subscriptions with a deadline at or before ``now``."""

        running = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)
        query = (
            self._scoped()
            .where(Subscription.status != SubscriptionStatus.CANCELLED.value)
            .where(
                or_(
                    Subscription.cancel_effective_at <= now,
                    and_(
                        Subscription.status.in_(running),
                        Subscription.current_period_end <= now,
                    ),
                    and_(
                        Subscription.status == SubscriptionStatus.TRIALING.value,
                        Subscription.trial_ends_at <= now,
                    ),
                )
            )
            .order_by(Subscription.created_at, Subscription.id)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def add(self, subscription: Subscription) -> Subscription:
        if subscription.tenant_id != self.tenant_id:
            raise ValueError("Subscription belongs to a different tenant")
        # Start with a loaded, empty history so appends never lazy-load.
        subscription.plan_history = []
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    def add_plan_change(
        self, subscription: Subscription, change: PlanChange
    ) -> PlanChange:
        subscription.plan_history.append(change)
        return change

    async def flush(self) -> None:
        await self.session.flush()
