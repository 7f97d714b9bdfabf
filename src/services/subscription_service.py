"""Subscription lifecycle operations for a tenant."""
from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Mapping, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.exceptions import ConflictError, NotFoundError, ValidationError
from src.db.models.enums import BillingCycle, PlanChangeType, SubscriptionStatus
from src.db.models.plan_change import PlanChange
from src.db.models.subscription import Subscription, new_id, utcnow
from src.repositories.subscription_repo import SubscriptionRepo
from src.schemas.subscription import Pagination, SubscriptionCreate
from src.services.plans import PLAN_CATALOG, classify_plan_change
from src.services.subscription_lifecycle import (
    LifecycleEvent,
    apply_event,
    resolve_transition,
)
from src.services.subscription_validator import (
    as_utc,
    is_valid_plan_id,
    is_valid_status,
    validate_subscription,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "plan_id",
        "status",
        "billing_cycle",
        "base_price",
        "currency",
        "grace_period_id",
        "grace_period_ends_at",
        "metadata",
    }
)

NON_NULLABLE_FIELDS = frozenset({"billing_cycle"})

GRACE_FIELDS = ("grace_period_id", "grace_period_ends_at")

SNAPSHOT_FIELDS = (
    "tenant_id",
    "plan_id",
    "status",
    "created_by",
    "base_price",
    "currency",
    "grace_period_ends_at",
)


def billing_period_end(start: dt.datetime, cycle: BillingCycle | str) -> dt.datetime:
    if BillingCycle(cycle) is BillingCycle.YEARLY:
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


def _check_plan_id(plan_id: Any) -> str:
    if not plan_id:
        raise ValidationError("planId is required", field="plan_id")
    if not is_valid_plan_id(plan_id):
        allowed = ", ".join(PLAN_CATALOG)
        raise ValidationError(
            f"Invalid planId '{plan_id}'. Allowed plans: {allowed}", field="plan_id"
        )
    return plan_id


class SubscriptionService:
    """Creates, reads and mutates subscriptions, one tenant at a time."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _repo(self, tenant_id: str) -> SubscriptionRepo:
        return SubscriptionRepo(self.session, tenant_id)

    async def _require(self, repo: SubscriptionRepo, subscription_id: str) -> Subscription:
        subscription = await repo.get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return subscription

    async def _flush(self, repo: SubscriptionRepo, subscription_id: str) -> None:
        """Flush pending changes, mapping the active-per-tenant index to a conflict."""

        try:
            await repo.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning(
                f"Active subscription conflict for tenant {repo.tenant_id}",
                extra={"tenant_id": repo.tenant_id, "subscription_id": subscription_id},
            )
            raise ConflictError(
                "Tenant already has an active subscription"
            ) from exc

    def _record_change(
        self,
        repo: SubscriptionRepo,
        subscription: Subscription,
        *,
        change_type: PlanChangeType,
        from_plan_id: str,
        to_plan_id: str,
        price_difference: Decimal,
        changed_by: str,
        changed_at: dt.datetime,
        reason: Optional[str] = None,
        effective_date: Optional[dt.datetime] = None,
    ) -> PlanChange:
        change = PlanChange(
            from_plan_id=from_plan_id,
            to_plan_id=to_plan_id,
            change_type=change_type.value,
            reason=reason,
            price_difference=price_difference,
            changed_at=changed_at,
            effective_date=effective_date or changed_at,
            changed_by=changed_by,
        )
        return repo.add_plan_change(subscription, change)

    async def _ensure_no_other_active(
        self, repo: SubscriptionRepo, subscription_id: str
    ) -> None:
        active = await repo.get_active()
        if active is not None and active.id != subscription_id:
            raise ConflictError("Tenant already has an active subscription")

    async def create_subscription(
        self, request: SubscriptionCreate, tenant_id: str, user_id: str
    ) -> Subscription:
        """Create the tenant's active subscription.

        Raises:
            ConflictError: If the tenant already has an ACTIVE subscription.
            ValidationError: If ``plan_id`` is missing or not an offered plan.
        """

        repo = self._repo(tenant_id)
        if await repo.get_active() is not None:
            raise ConflictError("Tenant already has an active subscription")

        plan_id = _check_plan_id(request.plan_id)
        now = utcnow()
        subscription = Subscription(
            id=new_id(),
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            billing_cycle=BillingCycle(request.billing_cycle).value,
            base_price=Decimal("0"),
            currency=settings.billing.default_currency,
            is_in_grace_period=False,
            current_period_start=now,
            current_period_end=billing_period_end(now, request.billing_cycle),
            meta=dict(request.metadata or {}),
            created_by=user_id,
            created_at=now,
            updated_at=now,
        )
        validate_subscription(subscription, now=now)

        try:
            await repo.add(subscription)
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning(
                f"Concurrent subscription create rejected for tenant {tenant_id}",
                extra={"tenant_id": tenant_id},
            )
            raise ConflictError("Tenant already has an active subscription") from exc

        logger.info(
            f"Subscription {subscription.id} created on plan {plan_id}",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription.id,
                "user_id": user_id,
            },
        )
        return subscription

    async def get_subscription(
        self, subscription_id: str, tenant_id: str
    ) -> Optional[Subscription]:
        """Return the subscription, or ``None`` if the tenant cannot see it."""

        return await self._repo(tenant_id).get(subscription_id)

    async def get_active_subscription_by_tenant(
        self, tenant_id: str
    ) -> Optional[Subscription]:
        return await self._repo(tenant_id).get_active()

    async def update_subscription(
        self,
        subscription_id: str,
        updates: Mapping[str, Any],
        tenant_id: str,
        user_id: str,
    ) -> Subscription:
        """Merge ``updates`` into the subscription and persist it.

        Status changes must follow the lifecycle table; the merged record is
        validated as a whole before anything is written.
        """

        repo = self._repo(tenant_id)
        subscription = await self._require(repo, subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ValidationError(
                "Cannot update a cancelled subscription; reactivate it first",
                field="status",
            )

        if "tenant_id" in updates and updates["tenant_id"] != subscription.tenant_id:
            raise ValidationError("tenant_id cannot be changed", field="tenant_id")
        unknown = set(updates) - UPDATABLE_FIELDS - {"tenant_id"}
        if unknown:
            name = sorted(unknown)[0]
            raise ValidationError(f"{name} cannot be updated", field=name)

        changes = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS}
        now = utcnow()

        previous_plan = subscription.plan_id
        plan_changed = "plan_id" in changes and changes["plan_id"] != previous_plan
        if plan_changed:
            _check_plan_id(changes["plan_id"])

        target_status = subscription.status
        if changes.get("status") is not None:
            if not is_valid_status(changes["status"]):
                raise ValidationError(
                    f"Invalid status '{changes['status']}'", field="status"
                )
            target_status = SubscriptionStatus(changes["status"]).value
            resolve_transition(subscription.status, target_status)
            changes["status"] = target_status
        else:
            changes.pop("status", None)

        merged: dict[str, Any] = {name: getattr(subscription, name) for name in SNAPSHOT_FIELDS}
        merged.update(
            {key: value for key, value in changes.items() if key in SNAPSHOT_FIELDS}
        )
        merged["status"] = target_status

        in_grace = target_status == SubscriptionStatus.GRACE_PERIOD.value
        entering_grace = in_grace and target_status != subscription.status
        if in_grace:
            grace_id = changes.get("grace_period_id", subscription.grace_period_id)
            if not grace_id or merged.get("grace_period_ends_at") is None:
                raise ValidationError(
                    "A subscription in its grace period requires gracePeriodId "
                    "and gracePeriodEndsAt",
                    field="grace_period_id",
                )
        else:
            for name in GRACE_FIELDS:
                if changes.get(name) is not None:
                    raise ValidationError(
                        "Grace period fields can only be set on a subscription "
                        "in its grace period",
                        field=name,
                    )

        if target_status != subscription.status:
            changes["is_in_grace_period"] = in_grace
            if target_status == SubscriptionStatus.TRIALING.value:
                changes["trial_ends_at"] = now + dt.timedelta(
                    days=settings.billing.default_trial_days
                )

        # A deadline persisted earlier may have passed; only check it when it
        # is being set or the subscription is entering its grace period.
        recheck_deadline = "grace_period_ends_at" in changes or entering_grace
        skip = () if recheck_deadline else ("grace_period_ends_at",)
        validate_subscription(merged, now=now, skip=skip)

        for key, value in changes.items():
            if key == "metadata":
                if value is not None:
                    subscription.meta = {**(subscription.meta or {}), **value}
            elif key in NON_NULLABLE_FIELDS and value is None:
                continue
            elif key == "billing_cycle":
                subscription.billing_cycle = BillingCycle(value).value
            else:
                setattr(subscription, key, value)

        if plan_changed:
            change_type, difference = classify_plan_change(
                previous_plan, subscription.plan_id, subscription.billing_cycle
            )
            self._record_change(
                repo,
                subscription,
                change_type=change_type,
                from_plan_id=previous_plan,
                to_plan_id=subscription.plan_id,
                price_difference=difference,
                changed_by=user_id,
                changed_at=now,
            )

        subscription.updated_at = now
        await self._flush(repo, subscription_id)
        logger.info(
            f"Subscription {subscription_id} updated",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "user_id": user_id,
            },
        )
        return subscription

    def _close(self, subscription: Subscription, now: dt.datetime) -> None:
        subscription.status = apply_event(subscription.status, LifecycleEvent.CANCEL).value
        subscription.cancelled_at = now
        subscription.is_in_grace_period = False
        subscription.updated_at = now

    def _record_cancellation(
        self,
        repo: SubscriptionRepo,
        subscription: Subscription,
        *,
        changed_by: str,
        changed_at: dt.datetime,
        effective_date: dt.datetime,
        reason: Optional[str],
    ) -> PlanChange:
        return self._record_change(
            repo,
            subscription,
            change_type=PlanChangeType.CANCELLATION,
            from_plan_id=subscription.plan_id,
            to_plan_id=subscription.plan_id,
            price_difference=Decimal("0") - (subscription.base_price or Decimal("0")),
            changed_by=changed_by,
            changed_at=changed_at,
            reason=reason,
            effective_date=effective_date,
        )

    async def cancel_subscription(
        self,
        subscription_id: str,
        tenant_id: str,
        user_id: str,
        reason: Optional[str] = None,
        *,
        cancel_at_period_end: bool = False,
        effective_date: Optional[dt.datetime] = None,
    ) -> Subscription:
        """Cancel the subscription now or at a later date.

        ``cancel_at_period_end`` defers the cancellation to the end of the
        current billing period and ``effective_date`` names the date
        explicitly. A future effective date keeps the current status until
        :meth:`process_expired_subscriptions` reaches it.
        """

        repo = self._repo(tenant_id)
        subscription = await self._require(repo, subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ValidationError("Subscription is already cancelled", field="status")

        now = utcnow()
        if effective_date is not None:
            effective = as_utc(effective_date)
        elif cancel_at_period_end and subscription.current_period_end is not None:
            effective = as_utc(subscription.current_period_end)
        else:
            effective = now
        scheduled = effective > now
        if scheduled and subscription.cancel_effective_at is not None:
            raise ValidationError(
                "A cancellation is already scheduled for this subscription",
                field="status",
            )

        subscription.cancel_reason = reason
        subscription.cancelled_by = user_id
        subscription.cancel_at_period_end = cancel_at_period_end
        subscription.cancel_effective_at = effective
        subscription.updated_at = now
        if not scheduled:
            self._close(subscription, now)
        self._record_cancellation(
            repo,
            subscription,
            changed_by=user_id,
            changed_at=now,
            effective_date=effective,
            reason=reason,
        )
        await self._flush(repo, subscription_id)

        if scheduled:
            message = (
                f"Subscription {subscription_id} cancellation scheduled for "
                f"{effective.isoformat()}"
            )
        else:
            message = f"Subscription {subscription_id} cancelled"
        logger.info(
            message,
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "user_id": user_id,
                "reason": reason,
            },
        )
        return subscription

    async def process_expired_subscriptions(
        self,
        tenant_id: str,
        user_id: str,
        *,
        now: Optional[dt.datetime] = None,
    ) -> dict[str, int]:
        """Settle the tenant's subscriptions whose deadlines have passed.

        Scheduled cancellations take effect and expired trials are cancelled.
        Active subscriptions past the end of their billing period become
        PAST_DUE; nothing is renewed here because no payment is collected.
        """

        repo = self._repo(tenant_id)
        now = as_utc(now) if now is not None else utcnow()
        results = {"processed": 0, "cancelled": 0, "past_due": 0}

        for subscription in await repo.list_due(now):
            results["processed"] += 1
            effective = subscription.cancel_effective_at
            if effective is not None and as_utc(effective) <= now:
                self._close(subscription, now)
                results["cancelled"] += 1
            elif subscription.status == SubscriptionStatus.TRIALING.value:
                reason = "Trial expired without payment method"
                subscription.cancel_reason = reason
                subscription.cancelled_by = user_id
                subscription.cancel_effective_at = now
                self._close(subscription, now)
                self._record_cancellation(
                    repo,
                    subscription,
                    changed_by=user_id,
                    changed_at=now,
                    effective_date=now,
                    reason=reason,
                )
                results["cancelled"] += 1
            else:
                subscription.status = apply_event(
                    subscription.status, LifecycleEvent.MARK_PAST_DUE
                ).value
                subscription.updated_at = now
                results["past_due"] += 1

        await repo.flush()
        logger.info(
            f"Processed {results['processed']} expired subscriptions "
            f"for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "user_id": user_id, **results},
        )
        return results

    async def get_subscriptions_by_tenant(
        self,
        tenant_id: str,
        *,
        page: int = 1,
        limit: Optional[int] = None,
        status: Optional[str] = None,
    ) -> tuple[list[Subscription], Pagination]:
        """Return one page of the tenant's subscriptions, newest first.

        ``limit`` is clamped to ``[1, billing.max_page_size]`` and ``page``
        floors at 1. The total comes from a separate count query.
        """

        status_filter: Optional[SubscriptionStatus] = None
        if status:
            if not is_valid_status(status):
                raise ValidationError(f"Invalid status '{status}'", field="status")
            status_filter = SubscriptionStatus(status)

        billing = settings.billing
        page = max(1, int(page or 1))
        limit = billing.default_page_size if limit is None else int(limit)
        limit = max(1, min(limit, billing.max_page_size))

        repo = self._repo(tenant_id)
        total = await repo.count(status_filter)
        items = await repo.list_page(
            offset=(page - 1) * limit, limit=limit, status=status_filter
        )
        return items, Pagination.build(page=page, limit=limit, total=total)

    async def change_plan(
        self,
        subscription_id: str,
        plan_id: Optional[str],
        tenant_id: str,
        user_id: str,
        *,
        reason: Optional[str] = None,
        effective_date: Optional[dt.datetime] = None,
    ) -> Subscription:
        """Move the subscription to another plan and log the change.

        The base price follows the catalog price of the new plan for the
        subscription's billing cycle.
        """

        repo = self._repo(tenant_id)
        subscription = await self._require(repo, subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ValidationError(
                "Cannot change the plan of a cancelled subscription", field="status"
            )
        new_plan_id = _check_plan_id(plan_id)
        if new_plan_id == subscription.plan_id:
            raise ValidationError(
                f"Subscription is already on plan '{new_plan_id}'", field="plan_id"
            )

        now = utcnow()
        previous_plan = subscription.plan_id
        change_type, difference = classify_plan_change(
            previous_plan, new_plan_id, subscription.billing_cycle
        )
        plan = PLAN_CATALOG[new_plan_id]
        subscription.plan_id = new_plan_id
        subscription.base_price = plan.price_for(subscription.billing_cycle)
        subscription.currency = plan.currency
        subscription.updated_at = now
        validate_subscription(subscription, now=now, skip=("grace_period_ends_at",))

        self._record_change(
            repo,
            subscription,
            change_type=change_type,
            from_plan_id=previous_plan,
            to_plan_id=new_plan_id,
            price_difference=difference,
            changed_by=user_id,
            changed_at=now,
            reason=reason,
            effective_date=effective_date,
        )
        await self._flush(repo, subscription_id)
        logger.info(
            f"Subscription {subscription_id} plan changed "
            f"{previous_plan} -> {new_plan_id} ({change_type.value})",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "user_id": user_id,
            },
        )
        return subscription

    async def renew_subscription(
        self, subscription_id: str, tenant_id: str, user_id: str
    ) -> Subscription:
        """Advance the billing period by one cycle and mark the record active."""

        repo = self._repo(tenant_id)
        subscription = await self._require(repo, subscription_id)
        target = apply_event(subscription.status, LifecycleEvent.RENEW)
        if subscription.status != target.value:
            await self._ensure_no_other_active(repo, subscription_id)

        now = utcnow()
        start = (
            as_utc(subscription.current_period_end)
            if subscription.current_period_end is not None
            else now
        )
        subscription.status = target.value
        subscription.current_period_start = start
        subscription.current_period_end = billing_period_end(
            start, subscription.billing_cycle
        )
        subscription.trial_ends_at = None
        meta = dict(subscription.meta or {})
        meta["renewal_count"] = int(meta.get("renewal_count", 0)) + 1
        meta["last_renewed_at"] = now.isoformat()
        subscription.meta = meta
        subscription.updated_at = now
        await self._flush(repo, subscription_id)

        logger.info(
            f"Subscription {subscription_id} renewed",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "user_id": user_id,
            },
        )
        return subscription

    async def reactivate_subscription(
        self,
        subscription_id: str,
        tenant_id: str,
        user_id: str,
        plan_id: Optional[str] = None,
    ) -> Subscription:
        """Bring a cancelled subscription back to ACTIVE, optionally on a new plan."""

        repo = self._repo(tenant_id)
        subscription = await self._require(repo, subscription_id)
        target = apply_event(subscription.status, LifecycleEvent.REACTIVATE)
        new_plan_id = _check_plan_id(plan_id or subscription.plan_id)
        await self._ensure_no_other_active(repo, subscription_id)

        now = utcnow()
        previous_plan = subscription.plan_id
        subscription.status = target.value
        subscription.plan_id = new_plan_id
        subscription.cancelled_at = None
        subscription.cancel_reason = None
        subscription.cancelled_by = None
        subscription.cancel_at_period_end = False
        subscription.cancel_effective_at = None
        subscription.current_period_start = now
        subscription.current_period_end = billing_period_end(
            now, subscription.billing_cycle
        )
        subscription.meta = {
            **(subscription.meta or {}),
            "reactivated_at": now.isoformat(),
            "reactivated_by": user_id,
        }
        subscription.updated_at = now

        if new_plan_id != previous_plan:
            change_type, difference = classify_plan_change(
                previous_plan, new_plan_id, subscription.billing_cycle
            )
            self._record_change(
                repo,
                subscription,
                change_type=change_type,
                from_plan_id=previous_plan,
                to_plan_id=new_plan_id,
                price_difference=difference,
                changed_by=user_id,
                changed_at=now,
                reason="reactivation",
            )
        await self._flush(repo, subscription_id)

        logger.info(
            f"Subscription {subscription_id} reactivated on plan {new_plan_id}",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "user_id": user_id,
            },
        )
        return subscription

    async def enter_grace_period(
        self,
        subscription_id: str,
        tenant_id: str,
        user_id: str,
        *,
        grace_period_id: str,
        ends_at: dt.datetime,
    ) -> Subscription:
        repo = self._repo(tenant_id)
        subscription = await self._require(repo, subscription_id)
        target = apply_event(subscription.status, LifecycleEvent.ENTER_GRACE)
        if not grace_period_id:
            raise ValidationError("gracePeriodId is required", field="grace_period_id")

        now = utcnow()
        candidate = {name: getattr(subscription, name) for name in SNAPSHOT_FIELDS}
        candidate.update(status=target.value, grace_period_ends_at=ends_at)
        validate_subscription(candidate, now=now)

        subscription.status = target.value
        subscription.is_in_grace_period = True
        subscription.grace_period_id = grace_period_id
        subscription.grace_period_ends_at = ends_at
        subscription.updated_at = now
        await self._flush(repo, subscription_id)

        logger.info(
            f"Subscription {subscription_id} entered grace period {grace_period_id}",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "user_id": user_id,
            },
        )
        return subscription

    async def convert_grace_period(
        self,
        subscription_id: str,
        tenant_id: str,
        user_id: str,
        *,
        plan_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Subscription:
        """Turn a grace-period subscription into an ACTIVE paid one."""

        repo = self._repo(tenant_id)
        subscription = await self._require(repo, subscription_id)
        target = apply_event(subscription.status, LifecycleEvent.CONVERT_GRACE)
        new_plan_id = _check_plan_id(plan_id or subscription.plan_id)
        await self._ensure_no_other_active(repo, subscription_id)

        now = utcnow()
        previous_plan = subscription.plan_id
        _, difference = classify_plan_change(
            previous_plan, new_plan_id, subscription.billing_cycle
        )
        plan = PLAN_CATALOG[new_plan_id]
        subscription.status = target.value
        subscription.plan_id = new_plan_id
        subscription.base_price = plan.price_for(subscription.billing_cycle)
        subscription.currency = plan.currency
        subscription.is_in_grace_period = False
        subscription.grace_period_ends_at = None
        subscription.current_period_start = now
        subscription.current_period_end = billing_period_end(
            now, subscription.billing_cycle
        )
        subscription.updated_at = now
        self._record_change(
            repo,
            subscription,
            change_type=PlanChangeType.GRACE_CONVERSION,
            from_plan_id=previous_plan,
            to_plan_id=new_plan_id,
            price_difference=difference,
            changed_by=user_id,
            changed_at=now,
            reason=reason,
        )
        await self._flush(repo, subscription_id)

        logger.info(
            f"Grace period {subscription.grace_period_id} converted on "
            f"subscription {subscription_id}",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "user_id": user_id,
            },
        )
        return subscription

    async def get_plan_history(
        self, subscription_id: str, tenant_id: str
    ) -> list[PlanChange]:
        subscription = await self._require(self._repo(tenant_id), subscription_id)
        return list(subscription.plan_history)
