"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from carwash_core.state.database import get_engine, get_session
from carwash_core.state.repository import (
    DuplicateOpenInvoiceError,
    InvoiceRepository,
    PaymentReminderRepository,
    PaymentRepository,
    PlanRepository,
    ScheduledPlanChangeRepository,
    TenantRepository,
    TenantUserRepository,
    UserRepository,
)

__all__ = [
    "DuplicateOpenInvoiceError",
    "InvoiceRepository",
    "PaymentReminderRepository",
    "PaymentRepository",
    "PlanRepository",
    "ScheduledPlanChangeRepository",
    "TenantRepository",
    "TenantUserRepository",
    "UserRepository",
    "get_engine",
    "get_session",
]
