"""Endpoints exposing the plan catalog."""
from __future__ import annotations

from fastapi import APIRouter

from src.schemas.subscription import PlanRead
from src.services.plans import list_plans


router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("")
async def get_plans():
    return {
        "success": True,
        "data": [
            PlanRead.from_plan(plan).model_dump(by_alias=True, mode="json")
            for plan in list_plans()
        ],
    }
