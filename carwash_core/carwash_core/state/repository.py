"""Repository classes providing CRUD access to the car-wash state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Repositories that accept a ``tenant_id`` scope every query to that tenant.
Passing ``None`` yields an unscoped repository, used only by cross-tenant
callers (gateway webhooks and reconciliation jobs).

State transitions are written as conditional updates
(``UPDATE ... WHERE status = <expected>``) and report whether a row moved.
A concurrent caller that lost the race sees ``False`` and must treat the
transition as already done.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from carwash_core.billing.models import (
    OPEN_INVOICE_STATUSES,
    InvoiceStatus,
    PaymentStatus,
    PlanChangeStatus,
    ReminderType,
)
from carwash_core.billing.periods import format_invoice_number, invoice_number_prefix, parse_invoice_sequence
from carwash_core.state.database import dialect_name
from carwash_core.state.tables import (
    InvoiceItemTable,
    InvoiceTable,
    PaymentReminderTable,
    PaymentTable,
    PlanTable,
    ScheduledPlanChangeTable,
    TenantTable,
    TenantUserTable,
    UserTable,
)

logger = logging.getLogger(__name__)

# Advisory lock key serialising invoice number allocation (PostgreSQL).
_INVOICE_NUMBER_LOCK_ID = 0x43574E4F  # "CWNO"

_OPEN_INVOICE_INDEX = "ux_invoices_open_tenant_plan"


class DuplicateOpenInvoiceError(Exception):
    """A non-terminal invoice already exists for the tenant and plan."""

    def __init__(self, tenant_id: str, plan_id: str | None) -> None:
        super().__init__(f"Tenant {tenant_id} already has an open invoice for plan {plan_id}")
        self.tenant_id = tenant_id
        self.plan_id = plan_id


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _is_open_invoice_conflict(exc: IntegrityError) -> bool:
    """Return ``True`` if *exc* was raised by the open-invoice unique index.

    PostgreSQL names the index in the message; SQLite names the columns.
    """
    message = str(exc.orig)
    return _OPEN_INVOICE_INDEX in message or "invoices.tenant_id, invoices.plan_id" in message


def _rowcount(result: Any) -> int:
    return int(getattr(result, "rowcount", 0) or 0)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanRepository:
    """Read access to the ``plans`` catalogue."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: str) -> PlanTable | None:
        """Fetch a plan by id, active or not."""
        result = await self._session.execute(select(PlanTable).where(PlanTable.id == plan_id))
        return result.scalar_one_or_none()

    async def get_active(self, plan_id: str) -> PlanTable | None:
        """Fetch a plan that is still offered."""
        result = await self._session.execute(
            select(PlanTable).where(PlanTable.id == plan_id, PlanTable.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def list_active(self) -> list[PlanTable]:
        """Return offered plans, cheapest first."""
        result = await self._session.execute(
            select(PlanTable).where(PlanTable.is_active.is_(True)).order_by(PlanTable.price.asc(), PlanTable.name)
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[PlanTable]:
        """Return every plan, retired ones included."""
        result = await self._session.execute(select(PlanTable).order_by(PlanTable.price.asc(), PlanTable.name))
        return list(result.scalars().all())

    async def get_by_stripe_price(self, stripe_price_id: str) -> PlanTable | None:
        """Map a legacy Stripe price id to a plan."""
        result = await self._session.execute(
            select(PlanTable).where(PlanTable.stripe_price_id == stripe_price_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        name: str,
        price: Decimal,
        interval: str = "MONTHLY",
        description: str | None = None,
        stripe_price_id: str | None = None,
        is_active: bool = True,
    ) -> PlanTable:
        """Insert a plan (admin console and fixtures)."""
        row = PlanTable(
            name=name,
            price=price,
            interval=interval,
            description=description,
            stripe_price_id=stripe_price_id,
            is_active=is_active,
        )
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantRepository:
    """CRUD operations for the ``tenants`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        slug: str,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        plan_id: str | None = None,
        trial_ends_at: datetime | None = None,
        is_active: bool = True,
    ) -> TenantTable:
        """Insert a new tenant."""
        row = TenantTable(
            slug=slug,
            name=name,
            email=email,
            phone=phone,
            plan_id=plan_id,
            trial_ends_at=trial_ends_at,
            is_active=is_active,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, tenant_id: str) -> TenantTable | None:
        """Fetch a tenant by id."""
        result = await self._session.execute(select(TenantTable).where(TenantTable.id == tenant_id))
        return result.scalar_one_or_none()

    async def get_active_by_slug(self, slug: str) -> TenantTable | None:
        """Fetch the active tenant routed to by *slug*."""
        result = await self._session.execute(
            select(TenantTable).where(TenantTable.slug == slug, TenantTable.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def slug_exists(self, slug: str) -> bool:
        """Return ``True`` when any tenant, active or not, owns *slug*."""
        result = await self._session.execute(select(func.count()).select_from(TenantTable).where(TenantTable.slug == slug))
        return result.scalar_one() > 0

    async def get_with_plan(self, tenant_id: str) -> tuple[TenantTable, PlanTable | None] | None:
        """Fetch a tenant together with its connected plan."""
        result = await self._session.execute(
            select(TenantTable, PlanTable)
            .outerjoin(PlanTable, PlanTable.id == TenantTable.plan_id)
            .where(TenantTable.id == tenant_id)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def search(self, query: str | None, *, offset: int = 0, limit: int = 20) -> tuple[list[TenantTable], int]:
        """Page through tenants, newest first, matching *query* on name, slug or email."""
        stmt = select(TenantTable)
        if query:
            pattern = f"%{_escape_like(query.strip().lower())}%"
            stmt = stmt.where(
                func.lower(TenantTable.name).like(pattern, escape="\\")
                | TenantTable.slug.like(pattern, escape="\\")
                | func.lower(TenantTable.email).like(pattern, escape="\\")
            )
        total = await self._session.execute(select(func.count()).select_from(stmt.subquery()))
        rows = await self._session.execute(
            stmt.order_by(TenantTable.created_at.desc(), TenantTable.id).offset(offset).limit(limit)
        )
        return list(rows.scalars().all()), total.scalar_one()

    async def get_by_stripe_subscription(self, subscription_id: str) -> TenantTable | None:
        """Find the tenant holding a legacy Stripe subscription."""
        result = await self._session.execute(
            select(TenantTable).where(TenantTable.stripe_subscription_id == subscription_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, customer_id: str) -> TenantTable | None:
        """Find the tenant behind a legacy Stripe customer."""
        result = await self._session.execute(
            select(TenantTable).where(TenantTable.stripe_customer_id == customer_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def update_fields(self, tenant_id: str, **values: Any) -> bool:
        """Update arbitrary columns of a tenant.  Returns True if updated."""
        result = await self._session.execute(update(TenantTable).where(TenantTable.id == tenant_id).values(**values))
        await self._session.flush()
        return _rowcount(result) > 0

    async def connect_plan(self, tenant_id: str, plan_id: str, period_end: datetime | None) -> bool:
        """Attach *plan_id* and set the period end; reactivates the tenant."""
        return await self.update_fields(tenant_id, plan_id=plan_id, trial_ends_at=period_end, is_active=True)

    async def disconnect_plan(self, tenant_id: str) -> bool:
        """Clear the plan and the period end."""
        return await self.update_fields(tenant_id, plan_id=None, trial_ends_at=None)

    async def count_lapsed(self, now: datetime) -> int:
        """Count active tenants whose period ended without a renewal.

        A tenant is lapsed when it has a plan, its period end has passed,
        it holds no external subscription and no ``PAID`` invoice covers
        a period that is still running.
        """
        renewed = (
            select(InvoiceTable.id)
            .where(
                InvoiceTable.tenant_id == TenantTable.id,
                InvoiceTable.status == InvoiceStatus.PAID.value,
                InvoiceTable.period_end > now,
            )
            .exists()
        )
        result = await self._session.execute(
            select(func.count())
            .select_from(TenantTable)
            .where(
                TenantTable.is_active.is_(True),
                TenantTable.plan_id.is_not(None),
                TenantTable.trial_ends_at.is_not(None),
                TenantTable.trial_ends_at < now,
                TenantTable.stripe_subscription_id.is_(None),
                ~renewed,
            )
        )
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Users and membership
# ---------------------------------------------------------------------------


class UserRepository:
    """Minimal access to ``users``; credentials live elsewhere."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, email: str, name: str | None = None, global_role: str = "USER") -> UserTable:
        """Insert a user."""
        row = UserTable(email=email.strip().lower(), name=name, global_role=global_role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> UserTable | None:
        """Fetch a user by id."""
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> UserTable | None:
        """Fetch a user by (case-insensitive) email."""
        result = await self._session.execute(select(UserTable).where(UserTable.email == email.strip().lower()))
        return result.scalar_one_or_none()


class TenantUserRepository:
    """Tenant-scoped access to ``tenant_users``."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def add_member(self, user_id: str, role: str) -> TenantUserTable:
        """Attach *user_id* to the tenant with *role*."""
        row = TenantUserTable(user_id=user_id, tenant_id=self._tenant_id, role=role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_active_membership(self, user_id: str) -> TenantUserTable | None:
        """Return the active membership of *user_id*, if any."""
        result = await self._session.execute(
            select(TenantUserTable).where(
                TenantUserTable.tenant_id == self._tenant_id,
                TenantUserTable.user_id == user_id,
                TenantUserTable.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get(self, member_id: str) -> TenantUserTable | None:
        """Fetch a membership row of this tenant by id."""
        result = await self._session.execute(
            select(TenantUserTable).where(
                TenantUserTable.tenant_id == self._tenant_id,
                TenantUserTable.id == member_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_members(self) -> list[tuple[TenantUserTable, UserTable]]:
        """Return active memberships with their users, owners first."""
        result = await self._session.execute(
            select(TenantUserTable, UserTable)
            .join(UserTable, UserTable.id == TenantUserTable.user_id)
            .where(
                TenantUserTable.tenant_id == self._tenant_id,
                TenantUserTable.is_active.is_(True),
            )
            .order_by(TenantUserTable.role.desc(), TenantUserTable.created_at)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def update_role(self, member_id: str, role: str) -> bool:
        """Change a non-owner member's role.  Returns True if updated."""
        result = await self._session.execute(
            update(TenantUserTable)
            .where(
                TenantUserTable.tenant_id == self._tenant_id,
                TenantUserTable.id == member_id,
                TenantUserTable.role != "OWNER",
            )
            .values(role=role)
        )
        await self._session.flush()
        return _rowcount(result) > 0

    async def deactivate(self, member_id: str) -> bool:
        """Deactivate a non-owner member.  Returns True if updated."""
        result = await self._session.execute(
            update(TenantUserTable)
            .where(
                TenantUserTable.tenant_id == self._tenant_id,
                TenantUserTable.id == member_id,
                TenantUserTable.role != "OWNER",
                TenantUserTable.is_active.is_(True),
            )
            .values(is_active=False)
        )
        await self._session.flush()
        return _rowcount(result) > 0


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """CRUD operations for ``invoices`` and ``invoice_items``."""

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _scoped(self, stmt: Any) -> Any:
        if self._tenant_id is None:
            return stmt
        return stmt.where(InvoiceTable.tenant_id == self._tenant_id)

    async def create(
        self,
        *,
        plan_id: str,
        invoice_number: str,
        amount: Decimal,
        tax: Decimal,
        period_start: datetime,
        period_end: datetime,
        due_date: datetime,
        description: str | None = None,
        items: Sequence[dict[str, Any]] = (),
    ) -> InvoiceTable:
        """Insert a ``PENDING`` invoice with its line items.

        Raises
        ------
        DuplicateOpenInvoiceError
            When the store already holds a ``PENDING``/``OVERDUE`` invoice
            for the same tenant and plan.  The session must then be rolled
            back by the caller.
        """
        if self._tenant_id is None:
            raise ValueError("InvoiceRepository.create requires a tenant-scoped repository")
        row = InvoiceTable(
            tenant_id=self._tenant_id,
            plan_id=plan_id,
            invoice_number=invoice_number,
            amount=amount,
            tax=tax,
            total_amount=amount + tax,
            status=InvoiceStatus.PENDING.value,
            description=description,
            period_start=period_start,
            period_end=period_end,
            due_date=due_date,
        )
        self._session.add(row)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            if _is_open_invoice_conflict(exc):
                raise DuplicateOpenInvoiceError(self._tenant_id, plan_id) from exc
            raise

        for position, item in enumerate(items):
            self._session.add(
                InvoiceItemTable(
                    invoice_id=row.id,
                    position=position,
                    description=item["description"],
                    quantity=item.get("quantity", 1),
                    unit_price=item["unit_price"],
                    subtotal=item["subtotal"],
                )
            )
        await self._session.flush()
        return row

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        """Fetch a single invoice by id (scoped to the tenant when set)."""
        result = await self._session.execute(self._scoped(select(InvoiceTable).where(InvoiceTable.id == invoice_id)))
        return result.scalar_one_or_none()

    async def get_items(self, invoice_id: str) -> list[InvoiceItemTable]:
        """Return the line items of an invoice."""
        result = await self._session.execute(
            select(InvoiceItemTable).where(InvoiceItemTable.invoice_id == invoice_id).order_by(InvoiceItemTable.position)
        )
        return list(result.scalars().all())

    async def list_for_tenant(self, limit: int = 20, offset: int = 0) -> tuple[list[InvoiceTable], int]:
        """List invoices for this tenant, newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        count_r = await self._session.execute(self._scoped(select(func.count()).select_from(InvoiceTable)))
        total = count_r.scalar_one()

        stmt = self._scoped(select(InvoiceTable)).order_by(InvoiceTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def get_oldest_open(self) -> InvoiceTable | None:
        """Return the ``PENDING``/``OVERDUE`` invoice with the earliest due date."""
        stmt = (
            self._scoped(select(InvoiceTable))
            .where(InvoiceTable.status.in_(OPEN_INVOICE_STATUSES))
            .order_by(InvoiceTable.due_date.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_open_for_plan(self, plan_id: str) -> InvoiceTable | None:
        """Return the open invoice for *plan_id*, if one exists."""
        stmt = self._scoped(select(InvoiceTable)).where(
            InvoiceTable.plan_id == plan_id,
            InvoiceTable.status.in_(OPEN_INVOICE_STATUSES),
        )
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def get_current_period_end(self, now: datetime) -> datetime | None:
        """Return the end of the active paid period, if still running.

        The active period is the latest ``PAID`` invoice whose
        ``period_end`` lies in the future.
        """
        stmt = self._scoped(select(func.max(InvoiceTable.period_end))).where(
            InvoiceTable.status == InvoiceStatus.PAID.value
        )
        result = await self._session.execute(stmt)
        period_end = result.scalar_one_or_none()
        if period_end is None:
            return None
        return period_end if period_end > now else None

    async def transition_status(
        self,
        invoice_id: str,
        *,
        from_statuses: Iterable[str],
        to_status: str,
        paid_at: datetime | None = None,
    ) -> bool:
        """Move an invoice to *to_status* if it is currently in *from_statuses*.

        Returns ``True`` only for the caller that performed the transition.
        """
        values: dict[str, Any] = {"status": to_status}
        if paid_at is not None:
            values["paid_at"] = paid_at
        stmt = self._scoped(
            update(InvoiceTable).where(
                InvoiceTable.id == invoice_id,
                InvoiceTable.status.in_(list(from_statuses)),
            )
        ).values(**values)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return _rowcount(result) > 0

    async def cancel_pending(self) -> int:
        """Cancel every ``PENDING`` invoice of the tenant.  Returns the count."""
        if self._tenant_id is None:
            raise ValueError("cancel_pending requires a tenant-scoped repository")
        result = await self._session.execute(
            update(InvoiceTable)
            .where(
                InvoiceTable.tenant_id == self._tenant_id,
                InvoiceTable.status == InvoiceStatus.PENDING.value,
            )
            .values(status=InvoiceStatus.CANCELLED.value)
        )
        await self._session.flush()
        return _rowcount(result)

    async def get_next_invoice_number(self, now: datetime) -> str:
        """Generate the next sequential invoice number.

        Format: ``FAC-YYMM-NNNNN``, numbered per calendar month across all
        tenants.

        Acquires an advisory transaction lock (PostgreSQL) before reading
        the current maximum so two concurrent requests cannot allocate the
        same number.  The unique index on ``invoice_number`` backs this up.
        """
        if dialect_name(self._session) == "postgresql":
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:id)"),
                {"id": _INVOICE_NUMBER_LOCK_ID},
            )
        # For SQLite: single-writer semantics, no advisory lock needed.

        prefix = invoice_number_prefix(now)
        stmt = (
            select(InvoiceTable.invoice_number)
            .where(InvoiceTable.invoice_number.like(f"{_escape_like(prefix)}-%", escape="\\"))
            .order_by(InvoiceTable.invoice_number.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        last = result.scalar_one_or_none()
        sequence = parse_invoice_sequence(last) + 1 if last else 1
        return format_invoice_number(prefix, sequence)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentRepository:
    """CRUD operations for the ``payments`` table."""

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _scoped(self, stmt: Any) -> Any:
        if self._tenant_id is None:
            return stmt
        return stmt.where(PaymentTable.tenant_id == self._tenant_id)

    async def create(
        self,
        *,
        invoice_id: str,
        amount: Decimal,
        method: str,
        status: str,
        reference_code: str,
        order_id: str | None = None,
        transaction_id: str | None = None,
        response_code: str | None = None,
        pse_bank: str | None = None,
        pse_bank_url: str | None = None,
        paid_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentTable:
        """Record a payment attempt returned by the gateway."""
        if self._tenant_id is None:
            raise ValueError("PaymentRepository.create requires a tenant-scoped repository")
        row = PaymentTable(
            invoice_id=invoice_id,
            tenant_id=self._tenant_id,
            amount=amount,
            method=method,
            status=status,
            payu_reference_code=reference_code,
            payu_order_id=order_id,
            payu_transaction_id=transaction_id,
            payu_response_code=response_code,
            pse_bank=pse_bank,
            pse_bank_url=pse_bank_url,
            paid_at=paid_at,
            metadata_json=metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, payment_id: str) -> PaymentTable | None:
        """Fetch a payment by id."""
        result = await self._session.execute(self._scoped(select(PaymentTable).where(PaymentTable.id == payment_id)))
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference_code: str) -> PaymentTable | None:
        """Fetch a payment by its gateway reference code."""
        result = await self._session.execute(
            self._scoped(select(PaymentTable).where(PaymentTable.payu_reference_code == reference_code))
        )
        return result.scalar_one_or_none()

    async def list_for_invoice(self, invoice_id: str) -> list[PaymentTable]:
        """Return every attempt against an invoice, newest first."""
        result = await self._session.execute(
            self._scoped(select(PaymentTable).where(PaymentTable.invoice_id == invoice_id)).order_by(
                PaymentTable.created_at.desc()
            )
        )
        return list(result.scalars().all())

    async def transition_from_pending(self, payment_id: str, to_status: str, **fields: Any) -> bool:
        """Move a ``PENDING`` payment to *to_status*.

        Returns ``False`` when the payment had already left ``PENDING``,
        which makes repeated gateway confirmations no-ops.
        """
        result = await self._session.execute(
            self._scoped(
                update(PaymentTable).where(
                    PaymentTable.id == payment_id,
                    PaymentTable.status == PaymentStatus.PENDING.value,
                )
            ).values(status=to_status, **fields)
        )
        await self._session.flush()
        return _rowcount(result) > 0

    async def count_other_pending(self, invoice_id: str, exclude_payment_id: str) -> int:
        """Count ``PENDING`` attempts on *invoice_id* other than *exclude_payment_id*."""
        result = await self._session.execute(
            select(func.count())
            .select_from(PaymentTable)
            .where(
                PaymentTable.invoice_id == invoice_id,
                PaymentTable.id != exclude_payment_id,
                PaymentTable.status == PaymentStatus.PENDING.value,
            )
        )
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Scheduled plan changes
# ---------------------------------------------------------------------------


class ScheduledPlanChangeRepository:
    """CRUD operations for ``scheduled_plan_changes``."""

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _scoped(self, stmt: Any) -> Any:
        if self._tenant_id is None:
            return stmt
        return stmt.where(ScheduledPlanChangeTable.tenant_id == self._tenant_id)

    async def create(
        self,
        *,
        from_plan_id: str | None,
        to_plan_id: str,
        invoice_id: str,
        effective_date: datetime,
    ) -> ScheduledPlanChangeTable:
        """Insert a ``SCHEDULED`` change linked to *invoice_id*."""
        if self._tenant_id is None:
            raise ValueError("ScheduledPlanChangeRepository.create requires a tenant-scoped repository")
        row = ScheduledPlanChangeTable(
            tenant_id=self._tenant_id,
            from_plan_id=from_plan_id,
            to_plan_id=to_plan_id,
            invoice_id=invoice_id,
            effective_date=effective_date,
            status=PlanChangeStatus.SCHEDULED.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, change_id: str) -> ScheduledPlanChangeTable | None:
        """Fetch a change by id."""
        result = await self._session.execute(
            self._scoped(select(ScheduledPlanChangeTable).where(ScheduledPlanChangeTable.id == change_id))
        )
        return result.scalar_one_or_none()

    async def get_scheduled_for_invoice(self, invoice_id: str) -> ScheduledPlanChangeTable | None:
        """Return the still-``SCHEDULED`` change paid for by *invoice_id*."""
        result = await self._session.execute(
            self._scoped(
                select(ScheduledPlanChangeTable).where(
                    ScheduledPlanChangeTable.invoice_id == invoice_id,
                    ScheduledPlanChangeTable.status == PlanChangeStatus.SCHEDULED.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_due(self, now: datetime, limit: int = 50) -> list[ScheduledPlanChangeTable]:
        """Return ``SCHEDULED`` changes whose effective date has passed."""
        result = await self._session.execute(
            self._scoped(
                select(ScheduledPlanChangeTable).where(
                    ScheduledPlanChangeTable.status == PlanChangeStatus.SCHEDULED.value,
                    ScheduledPlanChangeTable.effective_date <= now,
                )
            )
            .order_by(ScheduledPlanChangeTable.effective_date.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def resolve(self, change_id: str, to_status: PlanChangeStatus) -> bool:
        """Move a ``SCHEDULED`` change to *to_status*.

        Returns ``True`` only for the caller that claimed the row; a
        concurrent runner (or a disconnect that already cancelled it) sees
        ``False``.
        """
        result = await self._session.execute(
            self._scoped(
                update(ScheduledPlanChangeTable).where(
                    ScheduledPlanChangeTable.id == change_id,
                    ScheduledPlanChangeTable.status == PlanChangeStatus.SCHEDULED.value,
                )
            ).values(status=to_status.value)
        )
        await self._session.flush()
        return _rowcount(result) > 0

    async def cancel_all_scheduled(self) -> int:
        """Cancel every ``SCHEDULED`` change of the tenant.  Returns the count."""
        if self._tenant_id is None:
            raise ValueError("cancel_all_scheduled requires a tenant-scoped repository")
        result = await self._session.execute(
            update(ScheduledPlanChangeTable)
            .where(
                ScheduledPlanChangeTable.tenant_id == self._tenant_id,
                ScheduledPlanChangeTable.status == PlanChangeStatus.SCHEDULED.value,
            )
            .values(status=PlanChangeStatus.CANCELLED.value)
        )
        await self._session.flush()
        return _rowcount(result)


# ---------------------------------------------------------------------------
# Payment reminders
# ---------------------------------------------------------------------------


class PaymentReminderRepository:
    """CRUD operations for ``payment_reminders``."""

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create_many(
        self,
        invoice_id: str,
        schedule: Sequence[tuple[ReminderType, datetime]],
    ) -> int:
        """Insert one reminder per ``(type, scheduled_for)`` entry."""
        if self._tenant_id is None:
            raise ValueError("PaymentReminderRepository.create_many requires a tenant-scoped repository")
        for reminder_type, scheduled_for in schedule:
            self._session.add(
                PaymentReminderTable(
                    tenant_id=self._tenant_id,
                    invoice_id=invoice_id,
                    type=reminder_type.value,
                    scheduled_for=scheduled_for,
                )
            )
        await self._session.flush()
        return len(schedule)

    async def list_for_invoice(self, invoice_id: str) -> list[PaymentReminderTable]:
        """Return reminders of an invoice ordered by schedule."""
        result = await self._session.execute(
            select(PaymentReminderTable)
            .where(PaymentReminderTable.invoice_id == invoice_id)
            .order_by(PaymentReminderTable.scheduled_for.asc())
        )
        return list(result.scalars().all())

    async def list_due(self, now: datetime, limit: int = 100) -> list[PaymentReminderTable]:
        """Return unsent reminders scheduled at or before *now*."""
        stmt = select(PaymentReminderTable).where(
            PaymentReminderTable.sent_at.is_(None),
            PaymentReminderTable.scheduled_for <= now,
        )
        if self._tenant_id is not None:
            stmt = stmt.where(PaymentReminderTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt.order_by(PaymentReminderTable.scheduled_for.asc()).limit(limit))
        return list(result.scalars().all())

    async def mark_sent(self, reminder_id: str, sent_at: datetime) -> bool:
        """Claim an unsent reminder.  Returns False if another runner did."""
        result = await self._session.execute(
            update(PaymentReminderTable)
            .where(
                PaymentReminderTable.id == reminder_id,
                PaymentReminderTable.sent_at.is_(None),
            )
            .values(sent_at=sent_at)
        )
        await self._session.flush()
        return _rowcount(result) > 0
