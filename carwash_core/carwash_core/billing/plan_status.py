"""Pure computation of a tenant's plan blocking status."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

from carwash_core.billing.models import BlockReason, TenantBillingSnapshot, TenantPlanStatus

_ONE_DAY_SECONDS = timedelta(days=1).total_seconds()

# Days before expiry at which the UI starts warning.  Informational only.
EXPIRY_WARNING_DAYS = 7


def days_left(trial_ends_at: datetime | None, now: datetime) -> int | None:
    """Return ``ceil((trial_ends_at - now) / 1 day)`` or ``None``.

    A tenant expiring in 30 minutes has ``1`` day left; an expired one
    has ``0`` or a negative count.
    """
    if trial_ends_at is None:
        return None
    return math.ceil((trial_ends_at - now).total_seconds() / _ONE_DAY_SECONDS)


def get_tenant_plan_status(
    tenant: TenantBillingSnapshot,
    pending_invoice_id: str | None = None,
    *,
    now: datetime | None = None,
) -> TenantPlanStatus:
    """Decide whether *tenant* may operate.

    Rules are evaluated in order and the first match wins:

    1. inactive tenant -> blocked (``inactive``)
    2. no plan -> blocked (``no_plan``), carrying any open invoice
    3. paid plan with an external subscription -> allowed
    4. lapsed period -> allowed with a subscription, else
       ``payment_overdue`` when an open invoice exists, else
       ``trial_expired``
    5. otherwise allowed

    Parameters
    ----------
    tenant:
        Snapshot of the tenant and its connected plan.
    pending_invoice_id:
        Oldest ``PENDING``/``OVERDUE`` invoice of the tenant, if any.
    now:
        Evaluation instant; defaults to the current UTC time.

    Returns
    -------
    TenantPlanStatus
        ``days_left`` is filled whenever ``trial_ends_at`` is set,
        independent of the block decision.
    """
    now = now or datetime.now(UTC)
    remaining = days_left(tenant.trial_ends_at, now)

    def _status(reason: BlockReason | None, invoice_id: str | None = None) -> TenantPlanStatus:
        return TenantPlanStatus(
            is_blocked=reason is not None,
            reason=reason,
            trial_ends_at=tenant.trial_ends_at,
            plan_name=tenant.plan_name,
            days_left=remaining,
            pending_invoice_id=invoice_id,
        )

    if not tenant.is_active:
        return _status(BlockReason.INACTIVE)

    if tenant.plan_id is None:
        return _status(BlockReason.NO_PLAN, pending_invoice_id)

    has_subscription = bool(tenant.stripe_subscription_id)
    if has_subscription and (tenant.plan_price or 0) > 0:
        return _status(None)

    if tenant.trial_ends_at is not None and now > tenant.trial_ends_at:
        if has_subscription:
            return _status(None)
        if pending_invoice_id is not None:
            return _status(BlockReason.PAYMENT_OVERDUE, pending_invoice_id)
        return _status(BlockReason.TRIAL_EXPIRED)

    return _status(None)


def is_expiring_soon(status: TenantPlanStatus) -> bool:
    """Return ``True`` when a non-blocked tenant is inside the warning window."""
    return (
        not status.is_blocked
        and status.days_left is not None
        and status.days_left <= EXPIRY_WARNING_DAYS
    )
