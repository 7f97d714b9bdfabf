"""Endpoints for managing tenant subscriptions."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_db_session
from src.auth.jwt import require_auth
from src.core.exceptions import AppError, NotFoundError
from src.db.models.enums import SubscriptionStatus
from src.schemas.subscription import (
    ChangePlanRequest,
    ConvertGraceRequest,
    GracePeriodRequest,
    PlanChangeRead,
    ReactivateRequest,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionUpdate,
)
from src.services.limits import (
    check_rate_limit,
    ensure_idempotent,
    release_idempotency_key,
)
from src.services.subscription_service import SubscriptionService


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def envelope(data: Any, message: Optional[str] = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def _dump(subscription) -> dict[str, Any]:
    return SubscriptionRead.from_model(subscription).model_dump(
        by_alias=True, mode="json"
    )


async def _caller(auth: dict = Depends(require_auth)) -> dict:
    await check_rate_limit(auth["tenant_id"])
    return auth


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreate,
    auth=Depends(_caller),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db_session),
):
    await ensure_idempotent(auth["tenant_id"], idempotency_key)
    service = SubscriptionService(db)
    try:
        subscription = await service.create_subscription(
            body, auth["tenant_id"], auth["user_id"]
        )
    except AppError:
        await release_idempotency_key(auth["tenant_id"], idempotency_key)
        raise
    return envelope(_dump(subscription), "Subscription created")


@router.get("")
async def list_subscriptions(
    page: int = Query(default=1),
    limit: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    items, pagination = await service.get_subscriptions_by_tenant(
        auth["tenant_id"], page=page, limit=limit, status=status_filter
    )
    return {
        "success": True,
        "data": [_dump(item) for item in items],
        "pagination": pagination.model_dump(by_alias=True),
    }


@router.post("/process-expired")
async def process_expired_subscriptions(
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    results = await service.process_expired_subscriptions(
        auth["tenant_id"], auth["user_id"]
    )
    return envelope(results, "Expired subscriptions processed")


@router.get("/active")
async def get_active_subscription(
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.get_active_subscription_by_tenant(auth["tenant_id"])
    return envelope(_dump(subscription) if subscription is not None else None)


@router.get("/{subscription_id}")
async def get_subscription(
    subscription_id: str,
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.get_subscription(subscription_id, auth["tenant_id"])
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return envelope(_dump(subscription))


@router.put("/{subscription_id}")
async def update_subscription(
    subscription_id: str,
    body: SubscriptionUpdate,
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.update_subscription(
        subscription_id,
        body.model_dump(exclude_unset=True),
        auth["tenant_id"],
        auth["user_id"],
    )
    return envelope(_dump(subscription), "Subscription updated")


@router.delete("/{subscription_id}")
async def cancel_subscription(
    subscription_id: str,
    body: Optional[SubscriptionCancel] = Body(default=None),
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    body = body or SubscriptionCancel()
    service = SubscriptionService(db)
    subscription = await service.cancel_subscription(
        subscription_id,
        auth["tenant_id"],
        auth["user_id"],
        reason=body.reason,
        cancel_at_period_end=body.cancel_at_period_end,
        effective_date=body.effective_date,
    )
    if subscription.status != SubscriptionStatus.CANCELLED.value:
        return envelope(_dump(subscription), "Subscription cancellation scheduled")
    return envelope(_dump(subscription), "Subscription cancelled")


@router.post("/{subscription_id}/change-plan")
async def change_plan(
    subscription_id: str,
    body: ChangePlanRequest,
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.change_plan(
        subscription_id,
        body.plan_id,
        auth["tenant_id"],
        auth["user_id"],
        reason=body.reason,
        effective_date=body.effective_date,
    )
    return envelope(_dump(subscription), "Plan changed")


@router.post("/{subscription_id}/renew")
async def renew_subscription(
    subscription_id: str,
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.renew_subscription(
        subscription_id, auth["tenant_id"], auth["user_id"]
    )
    return envelope(_dump(subscription), "Subscription renewed")


@router.post("/{subscription_id}/reactivate")
async def reactivate_subscription(
    subscription_id: str,
    body: Optional[ReactivateRequest] = Body(default=None),
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.reactivate_subscription(
        subscription_id,
        auth["tenant_id"],
        auth["user_id"],
        plan_id=body.plan_id if body is not None else None,
    )
    return envelope(_dump(subscription), "Subscription reactivated")


@router.post("/{subscription_id}/grace-period")
async def enter_grace_period(
    subscription_id: str,
    body: GracePeriodRequest,
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.enter_grace_period(
        subscription_id,
        auth["tenant_id"],
        auth["user_id"],
        grace_period_id=body.grace_period_id,
        ends_at=body.ends_at,
    )
    return envelope(_dump(subscription), "Grace period started")


@router.post("/{subscription_id}/grace-period/convert")
async def convert_grace_period(
    subscription_id: str,
    body: Optional[ConvertGraceRequest] = Body(default=None),
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    subscription = await service.convert_grace_period(
        subscription_id,
        auth["tenant_id"],
        auth["user_id"],
        plan_id=body.plan_id if body is not None else None,
        reason=body.reason if body is not None else None,
    )
    return envelope(_dump(subscription), "Grace period converted")


@router.get("/{subscription_id}/history")
async def get_plan_history(
    subscription_id: str,
    auth=Depends(_caller),
    db: AsyncSession = Depends(get_db_session),
):
    service = SubscriptionService(db)
    history = await service.get_plan_history(subscription_id, auth["tenant_id"])
    return envelope(
        [
            PlanChangeRead.from_model(change).model_dump(by_alias=True, mode="json")
            for change in history
        ]
    )
