"""Value types shared by the billing state machine and the state store."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class PlanInterval(str, Enum):
    """Billing interval of a plan."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states.  ``PENDING`` and ``OVERDUE`` are non-terminal."""

    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


OPEN_INVOICE_STATUSES: tuple[str, ...] = (InvoiceStatus.PENDING.value, InvoiceStatus.OVERDUE.value)


class PaymentStatus(str, Enum):
    """Payment attempt states.  Only ``PENDING`` may transition."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"


FAILED_PAYMENT_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.DECLINED, PaymentStatus.EXPIRED, PaymentStatus.ERROR}
)


class PaymentMethod(str, Enum):
    """Supported gateway payment methods."""

    PSE = "PSE"
    CREDIT_CARD = "CREDIT_CARD"


class PlanChangeStatus(str, Enum):
    """Lifecycle of a deferred plan transition."""

    SCHEDULED = "SCHEDULED"
    APPLIED = "APPLIED"
    CANCELLED = "CANCELLED"


class ReminderType(str, Enum):
    """Payment reminder kinds, keyed by days before the due date."""

    EXPIRING_7_DAYS = "EXPIRING_7_DAYS"
    EXPIRING_3_DAYS = "EXPIRING_3_DAYS"
    EXPIRING_1_DAY = "EXPIRING_1_DAY"
    EXPIRED = "EXPIRED"


class BlockReason(str, Enum):
    """Why a tenant is not allowed to operate."""

    INACTIVE = "inactive"
    NO_PLAN = "no_plan"
    TRIAL_EXPIRED = "trial_expired"
    PAYMENT_OVERDUE = "payment_overdue"


class TenantBillingSnapshot(BaseModel):
    """The subset of tenant + plan state the status function reads.

    Attributes
    ----------
    is_active:
        Administrative activation flag.
    plan_id:
        Currently connected plan, if any.
    plan_price:
        Price of the connected plan; ``0`` denotes a free/trial plan.
    plan_name:
        Display name of the connected plan.
    trial_ends_at:
        End of the current trial or paid period.
    stripe_subscription_id:
        Legacy external subscription reference.
    """

    is_active: bool = True
    plan_id: str | None = None
    plan_price: Decimal | None = None
    plan_name: str | None = None
    trial_ends_at: datetime | None = None
    stripe_subscription_id: str | None = None


class TenantPlanStatus(BaseModel):
    """Blocking status of a tenant, serialised in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_blocked: bool
    reason: BlockReason | None = None
    trial_ends_at: datetime | None = None
    plan_name: str | None = None
    days_left: int | None = None
    pending_invoice_id: str | None = None

    @classmethod
    def unrestricted(cls) -> TenantPlanStatus:
        """Status reported for identities that bypass plan checks."""
        return cls(is_blocked=False)
