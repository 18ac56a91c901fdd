"""SQLAlchemy 2.0 ORM table definitions for the car-wash state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` in development
and for the repository layer.

Cross-row invariants that must hold under concurrency are enforced here,
by the store, rather than by read-then-write checks in services:

* ``ux_invoices_open_tenant_plan`` -- at most one ``PENDING``/``OVERDUE``
  invoice per ``(tenant_id, plan_id)``.
* ``ux_tenant_users_owner`` -- at most one active ``OWNER`` per tenant.
* ``ux_payments_reference`` -- gateway reference codes are unique.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

_MONEY = Numeric(14, 2)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops ``tzinfo`` on storage; naive values read back are
    re-tagged as UTC so comparisons against ``datetime.now(UTC)`` work on
    both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all car-wash tables."""


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanTable(Base):
    """Subscription plans offered to tenants.  A price of 0 is a free plan."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(_MONEY, nullable=False, default=Decimal("0"))
    interval: Mapped[str] = mapped_column(String(16), nullable=False, default="MONTHLY")
    max_users: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("interval IN ('MONTHLY','YEARLY')", name="ck_plans_interval"),
        CheckConstraint("price >= 0", name="ck_plans_price"),
        Index("ix_plans_stripe_price", "stripe_price_id"),
    )


# ---------------------------------------------------------------------------
# Tenants and membership
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """A car-wash business, addressed by its subdomain ``slug``.

    ``trial_ends_at`` doubles as the end of the current billing period.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    plan_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("plans.id"), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ux_tenants_slug", "slug", unique=True),
        Index("ix_tenants_stripe_customer", "stripe_customer_id"),
        Index("ix_tenants_stripe_subscription", "stripe_subscription_id"),
    )


class UserTable(Base):
    """A person able to sign in.  ``SUPER_ADMIN`` spans every tenant."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    global_role: Mapped[str] = mapped_column(String(32), nullable=False, default="USER")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("global_role IN ('SUPER_ADMIN','USER')", name="ck_users_global_role"),
        Index("ux_users_email", "email", unique=True),
    )


class TenantUserTable(Base):
    """Membership of a user in a tenant with a tenant-scoped role."""

    __tablename__ = "tenant_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="EMPLOYEE")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("role IN ('OWNER','ADMIN','EMPLOYEE')", name="ck_tenant_users_role"),
        Index("ux_tenant_users_user_tenant", "user_id", "tenant_id", unique=True),
        Index(
            "ux_tenant_users_owner",
            "tenant_id",
            unique=True,
            postgresql_where=text("role = 'OWNER' AND is_active"),
            sqlite_where=text("role = 'OWNER' AND is_active = 1"),
        ),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """A plan invoice covering one billing period.

    Lifecycle: ``PENDING`` -> ``PAID`` | ``OVERDUE`` | ``CANCELLED``;
    ``OVERDUE`` -> ``PAID`` | ``CANCELLED``.
    """

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    plan_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("plans.id"), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_MONEY, nullable=False)
    tax: Mapped[Decimal] = mapped_column(_MONEY, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(_MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING','PAID','OVERDUE','CANCELLED')",
            name="ck_invoices_status",
        ),
        Index("ux_invoices_number", "invoice_number", unique=True),
        Index("ix_invoices_tenant_status_due", "tenant_id", "status", "due_date"),
        Index(
            "ux_invoices_open_tenant_plan",
            "tenant_id",
            "plan_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING','OVERDUE')"),
            sqlite_where=text("status IN ('PENDING','OVERDUE')"),
        ),
    )


class InvoiceItemTable(Base):
    """Line items of an invoice (plan line and tax line)."""

    __tablename__ = "invoice_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(_MONEY, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(_MONEY, nullable=False)

    __table_args__ = (Index("ix_invoice_items_invoice", "invoice_id"),)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTable(Base):
    """A gateway payment attempt against an invoice.

    Only ``PENDING`` rows transition; every transition is a conditional
    update on ``status = 'PENDING'`` so duplicate confirmations are no-ops.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(String(64), ForeignKey("invoices.id"), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_MONEY, nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    payu_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payu_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payu_reference_code: Mapped[str] = mapped_column(String(128), nullable=False)
    payu_response_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pse_bank: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pse_bank_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING','APPROVED','DECLINED','EXPIRED','ERROR')",
            name="ck_payments_status",
        ),
        CheckConstraint("method IN ('PSE','CREDIT_CARD')", name="ck_payments_method"),
        Index("ux_payments_reference", "payu_reference_code", unique=True),
        Index("ix_payments_invoice_status", "invoice_id", "status"),
    )


# ---------------------------------------------------------------------------
# Scheduled plan changes and reminders
# ---------------------------------------------------------------------------


class ScheduledPlanChangeTable(Base):
    """A deferred plan transition that takes effect once its invoice is paid."""

    __tablename__ = "scheduled_plan_changes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    from_plan_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("plans.id"), nullable=True)
    to_plan_id: Mapped[str] = mapped_column(String(64), ForeignKey("plans.id"), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(64), ForeignKey("invoices.id"), nullable=False)
    effective_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="SCHEDULED")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('SCHEDULED','APPLIED','CANCELLED')",
            name="ck_scheduled_plan_changes_status",
        ),
        Index("ux_scheduled_plan_changes_invoice", "invoice_id", unique=True),
        Index("ix_scheduled_plan_changes_due", "status", "effective_date"),
    )


class PaymentReminderTable(Base):
    """A reminder to send for an invoice at ``scheduled_for``."""

    __tablename__ = "payment_reminders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(64), ForeignKey("invoices.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "type IN ('EXPIRING_7_DAYS','EXPIRING_3_DAYS','EXPIRING_1_DAY','EXPIRED')",
            name="ck_payment_reminders_type",
        ),
        Index("ux_payment_reminders_invoice_type", "invoice_id", "type", unique=True),
        Index("ix_payment_reminders_due", "sent_at", "scheduled_for"),
    )
