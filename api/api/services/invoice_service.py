"""Plan invoice generation and retrieval.

An invoice bills one period of one plan.  Creating it also allocates the
monthly invoice number, writes the plan and tax line items and schedules
the payment reminders; all of it happens inside the caller's transaction.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from carwash_core.billing import PlanInterval
from carwash_core.billing.periods import DEFAULT_TAX_RATE, compute_due_date, compute_tax, reminder_schedule
from carwash_core.state import InvoiceRepository, PaymentReminderRepository, PaymentRepository
from carwash_core.state.tables import InvoiceTable, PlanTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_INTERVAL_LABELS: dict[str, str] = {
    PlanInterval.MONTHLY.value: "Monthly",
    PlanInterval.YEARLY.value: "Yearly",
}


def _date_label(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def _money(value: Decimal | None) -> float:
    return float(value) if value is not None else 0.0


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def invoice_to_dict(row: InvoiceTable) -> dict[str, Any]:
    """Render an invoice row in the camelCase wire shape."""
    return {
        "id": row.id,
        "invoiceNumber": row.invoice_number,
        "planId": row.plan_id,
        "status": row.status,
        "description": row.description,
        "amount": _money(row.amount),
        "tax": _money(row.tax),
        "totalAmount": _money(row.total_amount),
        "periodStart": _iso(row.period_start),
        "periodEnd": _iso(row.period_end),
        "dueDate": _iso(row.due_date),
        "paidAt": _iso(row.paid_at),
        "createdAt": _iso(row.created_at),
    }


class InvoiceService:
    """Per-tenant invoice generation and lookup.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    tenant_id:
        Tenant the invoices belong to.
    tax_rate:
        IVA rate applied on top of the plan price.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
    ) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._tax_rate = tax_rate
        self._repo = InvoiceRepository(session, tenant_id)

    async def create_plan_invoice(
        self,
        plan: PlanTable,
        period_start: datetime,
        period_end: datetime,
        *,
        now: datetime | None = None,
    ) -> InvoiceTable:
        """Create a ``PENDING`` invoice for *plan* covering the given period.

        Returns
        -------
        InvoiceTable
            The flushed invoice row; its items and reminders are flushed
            too.

        Raises
        ------
        DuplicateOpenInvoiceError
            When an open invoice for the same plan already exists.  The
            store's unique index raises it even when two requests race.
        """
        now = now or datetime.now(UTC)
        amount = Decimal(plan.price)
        tax = compute_tax(amount, self._tax_rate)
        due_date = compute_due_date(period_start, now)
        interval_label = _INTERVAL_LABELS.get(plan.interval, plan.interval)
        tax_percent = (self._tax_rate * 100).normalize()

        invoice_number = await self._repo.get_next_invoice_number(now)
        invoice = await self._repo.create(
            plan_id=plan.id,
            invoice_number=invoice_number,
            amount=amount,
            tax=tax,
            period_start=period_start,
            period_end=period_end,
            due_date=due_date,
            description=(
                f"Plan {plan.name} subscription ({interval_label}) - "
                f"period {_date_label(period_start)} to {_date_label(period_end)}"
            ),
            items=[
                {
                    "description": f"Plan {plan.name} - {interval_label}",
                    "quantity": 1,
                    "unit_price": amount,
                    "subtotal": amount,
                },
                {
                    "description": f"IVA ({tax_percent:f}%)",
                    "quantity": 1,
                    "unit_price": tax,
                    "subtotal": tax,
                },
            ],
        )

        schedule = reminder_schedule(due_date, now)
        await PaymentReminderRepository(self._session, self._tenant_id).create_many(invoice.id, schedule)

        logger.info(
            "Created invoice %s for tenant %s plan %s",
            invoice_number,
            self._tenant_id,
            plan.id,
            extra={
                "billing": {
                    "event": "invoice_created",
                    "invoice_id": invoice.id,
                    "tenant_id": self._tenant_id,
                    "reminders": len(schedule),
                }
            },
        )
        return invoice

    async def list_invoices(self, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        """Return a page of invoices, newest first."""
        rows, total = await self._repo.list_for_tenant(limit=limit, offset=offset)
        return {
            "invoices": [invoice_to_dict(r) for r in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def get_invoice(self, invoice_id: str) -> dict[str, Any] | None:
        """Return one invoice with its items and payment attempts."""
        row = await self._repo.get(invoice_id)
        if row is None:
            return None
        items = await self._repo.get_items(invoice_id)
        payments = await PaymentRepository(self._session, self._tenant_id).list_for_invoice(invoice_id)

        result = invoice_to_dict(row)
        result["items"] = [
            {
                "description": item.description,
                "quantity": item.quantity,
                "unitPrice": _money(item.unit_price),
                "subtotal": _money(item.subtotal),
            }
            for item in items
        ]
        result["payments"] = [
            {
                "id": p.id,
                "status": p.status,
                "method": p.method,
                "amount": _money(p.amount),
                "referenceCode": p.payu_reference_code,
                "paidAt": _iso(p.paid_at),
                "createdAt": _iso(p.created_at),
            }
            for p in payments
        ]
        return result
