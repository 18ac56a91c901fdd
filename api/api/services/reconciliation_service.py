"""Periodic billing reconciliation: scheduled plan changes and payment reminders.

Both operations are safe to run concurrently with themselves.  Each row is
claimed with a conditional update before any side effect, so an overlapping
runner that reaches the same row sees it already resolved and skips it.
The caller owns the transaction; the HTTP triggers and the in-process
scheduler both commit once the batch completes.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from carwash_core.billing import InvoiceStatus, PlanChangeStatus, ReminderType
from carwash_core.state import (
    InvoiceRepository,
    PaymentReminderRepository,
    ScheduledPlanChangeRepository,
    TenantRepository,
)
from carwash_core.state.tables import PaymentReminderTable, ScheduledPlanChangeTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PLAN_CHANGE_BATCH_SIZE = 50
REMINDER_BATCH_SIZE = 100

_CANCELLING_INVOICE_STATUSES = frozenset({InvoiceStatus.OVERDUE.value, InvoiceStatus.CANCELLED.value})
_SETTLED_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value})


class ReconciliationService:
    """Cross-tenant reconciliation jobs.

    Parameters
    ----------
    session:
        Active database session.  Repositories are unscoped because a
        single run covers every tenant.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._tenants = TenantRepository(session)
        self._invoices = InvoiceRepository(session)
        self._changes = ScheduledPlanChangeRepository(session)
        self._reminders = PaymentReminderRepository(session)

    async def apply_due_plan_changes(
        self,
        *,
        now: datetime | None = None,
        limit: int = PLAN_CHANGE_BATCH_SIZE,
    ) -> dict[str, Any]:
        """Resolve ``SCHEDULED`` plan changes whose effective date has passed.

        A change whose invoice is ``PAID`` is applied: the tenant moves to
        the new plan until the invoice's period end.  A change whose invoice
        went ``OVERDUE`` or ``CANCELLED`` is cancelled.  Anything else stays
        scheduled for a later run.

        Returns
        -------
        dict
            ``{applied, cancelled, blocked, totalChecked}`` where ``blocked``
            counts active tenants whose period lapsed without renewal.
        """
        now = now or datetime.now(UTC)
        due = await self._changes.list_due(now, limit=limit)

        applied = 0
        cancelled = 0
        for change in due:
            outcome = await self._resolve_change(change)
            if outcome is PlanChangeStatus.APPLIED:
                applied += 1
            elif outcome is PlanChangeStatus.CANCELLED:
                cancelled += 1

        blocked = await self._tenants.count_lapsed(now)
        if applied or cancelled:
            logger.info(
                "Plan change reconciliation: %d applied, %d cancelled of %d due",
                applied,
                cancelled,
                len(due),
            )
        return {
            "applied": applied,
            "cancelled": cancelled,
            "blocked": blocked,
            "totalChecked": len(due),
        }

    async def _resolve_change(self, change: ScheduledPlanChangeTable) -> PlanChangeStatus | None:
        invoice = await self._invoices.get(change.invoice_id)
        if invoice is None:
            logger.warning("Plan change %s references missing invoice %s", change.id, change.invoice_id)
            return None

        if invoice.status == InvoiceStatus.PAID.value:
            if not await self._changes.resolve(change.id, PlanChangeStatus.APPLIED):
                return None
            await self._tenants.connect_plan(change.tenant_id, change.to_plan_id, invoice.period_end)
            logger.info(
                "Applied plan change %s: tenant %s -> plan %s",
                change.id,
                change.tenant_id,
                change.to_plan_id,
                extra={"billing": {"event": "plan_change_applied", "change_id": change.id}},
            )
            return PlanChangeStatus.APPLIED

        if invoice.status in _CANCELLING_INVOICE_STATUSES:
            if not await self._changes.resolve(change.id, PlanChangeStatus.CANCELLED):
                return None
            logger.info("Cancelled plan change %s (invoice %s is %s)", change.id, invoice.id, invoice.status)
            return PlanChangeStatus.CANCELLED

        return None

    async def process_due_reminders(
        self,
        *,
        now: datetime | None = None,
        limit: int = REMINDER_BATCH_SIZE,
    ) -> dict[str, int]:
        """Dispatch unsent reminders scheduled at or before *now*.

        Reminders of settled invoices are marked sent without dispatch.  An
        ``EXPIRED`` reminder on a still ``PENDING`` invoice flips the invoice
        to ``OVERDUE``.

        Returns
        -------
        dict
            ``{processed, total}``.
        """
        now = now or datetime.now(UTC)
        due = await self._reminders.list_due(now, limit=limit)

        processed = 0
        for reminder in due:
            if not await self._reminders.mark_sent(reminder.id, now):
                continue
            if await self._handle_reminder(reminder):
                processed += 1

        return {"processed": processed, "total": len(due)}

    async def _handle_reminder(self, reminder: PaymentReminderTable) -> bool:
        invoice = await self._invoices.get(reminder.invoice_id)
        if invoice is None or invoice.status in _SETTLED_INVOICE_STATUSES:
            return False

        if reminder.type == ReminderType.EXPIRED.value and invoice.status == InvoiceStatus.PENDING.value:
            await self._invoices.transition_status(
                invoice.id,
                from_statuses=(InvoiceStatus.PENDING.value,),
                to_status=InvoiceStatus.OVERDUE.value,
            )
            logger.info("Invoice %s marked overdue", invoice.invoice_number)

        logger.info(
            "Payment reminder %s for invoice %s",
            reminder.type,
            invoice.invoice_number,
            extra={
                "billing": {
                    "event": "payment_reminder",
                    "reminder_type": reminder.type,
                    "tenant_id": reminder.tenant_id,
                    "invoice_id": invoice.id,
                    "due_date": invoice.due_date.isoformat(),
                }
            },
        )
        return True
