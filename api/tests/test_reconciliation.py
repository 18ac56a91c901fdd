"""Tests for api/api/services/reconciliation_service.py

Covers:
- Due scheduled plan changes with a PAID invoice are applied exactly once
- Changes whose invoice went OVERDUE/CANCELLED are cancelled
- Changes with a still-PENDING invoice stay scheduled
- A concurrent runner that lost the claim does nothing
- Reminders: EXPIRED flips the invoice to OVERDUE, settled invoices are skipped,
  every reminder is claimed once
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from carwash_core.billing import InvoiceStatus, PlanChangeStatus
from carwash_core.state import (
    InvoiceRepository,
    PaymentReminderRepository,
    PlanRepository,
    ScheduledPlanChangeRepository,
    TenantRepository,
)

from api.services.billing_service import BillingService, confirm_invoice_paid
from api.services.invoice_service import InvoiceService
from api.services.reconciliation_service import ReconciliationService

BASE = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
PERIOD_END = BASE + timedelta(days=20)


async def _schedule_upgrade(session, world, test_settings):
    """Put the tenant inside a paid basic period and schedule a move to pro.

    Returns the pro invoice.
    """
    repo = InvoiceRepository(session, world.tenant_id)
    paid = await repo.create(
        plan_id=world.basic_plan_id,
        invoice_number="FAC-2604-00001",
        amount=Decimal("50000"),
        tax=Decimal("9500"),
        period_start=PERIOD_END - timedelta(days=30),
        period_end=PERIOD_END,
        due_date=PERIOD_END - timedelta(days=30),
    )
    await repo.transition_status(paid.id, from_statuses=["PENDING"], to_status="PAID", paid_at=BASE)
    await TenantRepository(session).connect_plan(world.tenant_id, world.basic_plan_id, PERIOD_END)

    result = await BillingService(session, test_settings, tenant_id=world.tenant_id).change_plan(
        world.pro_plan_id, now=BASE
    )
    await session.commit()
    return await repo.get(result["invoiceId"])


async def _tenant(session, world):
    tenant = await TenantRepository(session).get(world.tenant_id)
    await session.refresh(tenant)
    return tenant


class TestApplyDuePlanChanges:
    @pytest.mark.asyncio
    async def test_paid_change_applied_exactly_once(self, db_session, world, test_settings) -> None:
        invoice = await _schedule_upgrade(db_session, world, test_settings)
        await confirm_invoice_paid(db_session, invoice, now=BASE)
        await db_session.commit()

        service = ReconciliationService(db_session)
        later = PERIOD_END + timedelta(minutes=5)

        first = await service.apply_due_plan_changes(now=later)
        await db_session.commit()
        tenant = await _tenant(db_session, world)
        assert first["applied"] == 1
        assert first["cancelled"] == 0
        assert first["totalChecked"] == 1
        assert tenant.plan_id == world.pro_plan_id
        assert tenant.trial_ends_at == invoice.period_end

        # Move the period end so a second activation would be visible.
        await TenantRepository(db_session).update_fields(world.tenant_id, trial_ends_at=later)
        await db_session.commit()

        second = await service.apply_due_plan_changes(now=later)
        await db_session.commit()
        assert second["applied"] == 0
        assert second["totalChecked"] == 0
        assert (await _tenant(db_session, world)).trial_ends_at == later

    @pytest.mark.asyncio
    async def test_change_not_yet_due_is_left_alone(self, db_session, world, test_settings) -> None:
        invoice = await _schedule_upgrade(db_session, world, test_settings)
        await confirm_invoice_paid(db_session, invoice, now=BASE)
        await db_session.commit()

        result = await ReconciliationService(db_session).apply_due_plan_changes(now=BASE + timedelta(days=1))
        assert result["totalChecked"] == 0
        assert (await _tenant(db_session, world)).plan_id == world.basic_plan_id

    @pytest.mark.asyncio
    async def test_pending_invoice_keeps_change_scheduled(self, db_session, world, test_settings) -> None:
        invoice = await _schedule_upgrade(db_session, world, test_settings)

        result = await ReconciliationService(db_session).apply_due_plan_changes(now=PERIOD_END + timedelta(hours=1))
        await db_session.commit()

        assert result["applied"] == 0
        assert result["cancelled"] == 0
        assert result["totalChecked"] == 1
        change = await ScheduledPlanChangeRepository(db_session).get_scheduled_for_invoice(invoice.id)
        assert change is not None

    @pytest.mark.asyncio
    async def test_overdue_invoice_cancels_change(self, db_session, world, test_settings) -> None:
        invoice = await _schedule_upgrade(db_session, world, test_settings)
        await InvoiceRepository(db_session).transition_status(
            invoice.id, from_statuses=["PENDING"], to_status=InvoiceStatus.OVERDUE.value
        )
        await db_session.commit()

        result = await ReconciliationService(db_session).apply_due_plan_changes(now=PERIOD_END + timedelta(hours=1))
        await db_session.commit()

        assert result["cancelled"] == 1
        assert result["applied"] == 0
        assert await ScheduledPlanChangeRepository(db_session).get_scheduled_for_invoice(invoice.id) is None
        assert (await _tenant(db_session, world)).plan_id == world.basic_plan_id

    @pytest.mark.asyncio
    async def test_lost_claim_is_a_noop(self, db_session, world, test_settings) -> None:
        """A second runner holding the same due row cannot claim it again."""
        invoice = await _schedule_upgrade(db_session, world, test_settings)
        await confirm_invoice_paid(db_session, invoice, now=BASE)
        await db_session.commit()

        later = PERIOD_END + timedelta(minutes=1)
        changes = ScheduledPlanChangeRepository(db_session)
        seen_by_other_runner = await changes.list_due(later)
        assert len(seen_by_other_runner) == 1

        await ReconciliationService(db_session).apply_due_plan_changes(now=later)
        assert await changes.resolve(seen_by_other_runner[0].id, PlanChangeStatus.APPLIED) is False

    @pytest.mark.asyncio
    async def test_disconnect_wins_over_pending_change(self, db_session, world, test_settings) -> None:
        """A disconnected tenant's change is cancelled and never applied later."""
        invoice = await _schedule_upgrade(db_session, world, test_settings)
        await BillingService(db_session, test_settings, tenant_id=world.tenant_id).disconnect_plan()
        await db_session.commit()

        result = await ReconciliationService(db_session).apply_due_plan_changes(now=PERIOD_END + timedelta(days=1))
        assert result["totalChecked"] == 0
        assert (await _tenant(db_session, world)).plan_id is None
        await db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.CANCELLED.value


class TestProcessDueReminders:
    async def _invoice(self, session, world):
        plan = await PlanRepository(session).get(world.basic_plan_id)
        invoice = await InvoiceService(session, world.tenant_id).create_plan_invoice(
            plan, BASE, BASE + timedelta(days=31), now=BASE
        )
        await session.commit()
        return invoice

    @pytest.mark.asyncio
    async def test_expired_reminder_marks_invoice_overdue(self, db_session, world) -> None:
        invoice = await self._invoice(db_session, world)
        service = ReconciliationService(db_session)

        result = await service.process_due_reminders(now=BASE + timedelta(days=4))
        await db_session.commit()

        assert result == {"processed": 3, "total": 3}
        await db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.OVERDUE.value
        reminders = await PaymentReminderRepository(db_session).list_for_invoice(invoice.id)
        assert all(r.sent_at is not None for r in reminders)

    @pytest.mark.asyncio
    async def test_second_run_sends_nothing(self, db_session, world) -> None:
        await self._invoice(db_session, world)
        service = ReconciliationService(db_session)
        when = BASE + timedelta(days=4)

        await service.process_due_reminders(now=when)
        await db_session.commit()
        again = await service.process_due_reminders(now=when)

        assert again == {"processed": 0, "total": 0}

    @pytest.mark.asyncio
    async def test_only_due_reminders_are_sent(self, db_session, world) -> None:
        invoice = await self._invoice(db_session, world)

        result = await ReconciliationService(db_session).process_due_reminders(now=BASE + timedelta(hours=1))
        await db_session.commit()

        assert result == {"processed": 1, "total": 1}
        await db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_paid_invoice_reminders_are_silenced(self, db_session, world) -> None:
        invoice = await self._invoice(db_session, world)
        await confirm_invoice_paid(db_session, invoice, now=BASE)
        await db_session.commit()

        result = await ReconciliationService(db_session).process_due_reminders(now=BASE + timedelta(days=4))
        await db_session.commit()

        assert result == {"processed": 0, "total": 3}
        await db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID.value
        assert await PaymentReminderRepository(db_session).list_due(BASE + timedelta(days=4)) == []
