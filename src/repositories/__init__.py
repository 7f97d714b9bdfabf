"""Repository layer package."""

from src.repositories.subscription_repo import SubscriptionRepo

__all__ = ["SubscriptionRepo"]
