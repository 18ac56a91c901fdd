"""API router modules for the car-wash platform."""

from __future__ import annotations

from api.routers import (
    admin,
    auth,
    billing,
    cron,
    health,
    invoices,
    payments,
    plans,
    team,
    webhooks,
)

__all__ = [
    "admin",
    "auth",
    "billing",
    "cron",
    "health",
    "invoices",
    "payments",
    "plans",
    "team",
    "webhooks",
]
