"""Version 1 API router."""
from fastapi import APIRouter

from src.api.v1.endpoints import plans, subscriptions

api_router = APIRouter()
api_router.include_router(subscriptions.router)
api_router.include_router(plans.router)
