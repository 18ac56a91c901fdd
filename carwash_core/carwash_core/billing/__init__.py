"""Plan/billing rules that do not touch the state store."""

from carwash_core.billing.models import (
    BlockReason,
    InvoiceStatus,
    PaymentMethod,
    PaymentStatus,
    PlanChangeStatus,
    PlanInterval,
    ReminderType,
    TenantBillingSnapshot,
    TenantPlanStatus,
)
from carwash_core.billing.plan_status import days_left, get_tenant_plan_status

__all__ = [
    "BlockReason",
    "InvoiceStatus",
    "PaymentMethod",
    "PaymentStatus",
    "PlanChangeStatus",
    "PlanInterval",
    "ReminderType",
    "TenantBillingSnapshot",
    "TenantPlanStatus",
    "days_left",
    "get_tenant_plan_status",
]
