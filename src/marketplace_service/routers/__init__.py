"""API routers."""

from marketplace_service.routers import bids, health, notifications, reviews, tasks, wallets

__all__ = ["bids", "health", "notifications", "reviews", "tasks", "wallets"]
