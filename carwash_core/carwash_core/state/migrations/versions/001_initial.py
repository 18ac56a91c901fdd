"""Initial car-wash schema.

Creates plans, tenants, users, tenant memberships, invoices with their
line items, payments, scheduled plan changes and payment reminders,
including the partial unique indexes that guard open invoices and the
single active owner per tenant.

Revision ID: 001
Revises:
Create Date: 2026-03-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_MONEY = sa.Numeric(14, 2)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", _MONEY, nullable=False, server_default="0"),
        sa.Column("interval", sa.String(16), nullable=False, server_default="MONTHLY"),
        sa.Column("max_users", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stripe_price_id", sa.String(256), nullable=True),
        _created_at(),
        sa.CheckConstraint("interval IN ('MONTHLY','YEARLY')", name="ck_plans_interval"),
        sa.CheckConstraint("price >= 0", name="ck_plans_price"),
    )
    op.create_index("ix_plans_stripe_price", "plans", ["stripe_price_id"])

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("plan_id", sa.String(64), sa.ForeignKey("plans.id"), nullable=True),
        _ts("trial_ends_at", nullable=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(256), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ux_tenants_slug", "tenants", ["slug"], unique=True)
    op.create_index("ix_tenants_stripe_customer", "tenants", ["stripe_customer_id"])
    op.create_index("ix_tenants_stripe_subscription", "tenants", ["stripe_subscription_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("global_role", sa.String(32), nullable=False, server_default="USER"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint("global_role IN ('SUPER_ADMIN','USER')", name="ck_users_global_role"),
    )
    op.create_index("ux_users_email", "users", ["email"], unique=True)

    op.create_table(
        "tenant_users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="EMPLOYEE"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint("role IN ('OWNER','ADMIN','EMPLOYEE')", name="ck_tenant_users_role"),
    )
    op.create_index("ux_tenant_users_user_tenant", "tenant_users", ["user_id", "tenant_id"], unique=True)
    op.create_index(
        "ux_tenant_users_owner",
        "tenant_users",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("role = 'OWNER' AND is_active"),
        sqlite_where=sa.text("role = 'OWNER' AND is_active = 1"),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("plan_id", sa.String(64), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("invoice_number", sa.String(32), nullable=False),
        sa.Column("amount", _MONEY, nullable=False),
        sa.Column("tax", _MONEY, nullable=False, server_default="0"),
        sa.Column("total_amount", _MONEY, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("description", sa.Text(), nullable=True),
        _ts("period_start"),
        _ts("period_end"),
        _ts("due_date"),
        _ts("paid_at", nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("status IN ('PENDING','PAID','OVERDUE','CANCELLED')", name="ck_invoices_status"),
    )
    op.create_index("ux_invoices_number", "invoices", ["invoice_number"], unique=True)
    op.create_index("ix_invoices_tenant_status_due", "invoices", ["tenant_id", "status", "due_date"])
    op.create_index(
        "ux_invoices_open_tenant_plan",
        "invoices",
        ["tenant_id", "plan_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING','OVERDUE')"),
        sqlite_where=sa.text("status IN ('PENDING','OVERDUE')"),
    )

    op.create_table(
        "invoice_items",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "invoice_id",
            sa.String(64),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("description", sa.String(512), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", _MONEY, nullable=False),
        sa.Column("subtotal", _MONEY, nullable=False),
    )
    op.create_index("ix_invoice_items_invoice", "invoice_items", ["invoice_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("invoice_id", sa.String(64), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("amount", _MONEY, nullable=False),
        sa.Column("method", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("payu_order_id", sa.String(128), nullable=True),
        sa.Column("payu_transaction_id", sa.String(128), nullable=True),
        sa.Column("payu_reference_code", sa.String(128), nullable=False),
        sa.Column("payu_response_code", sa.String(128), nullable=True),
        sa.Column("pse_bank", sa.String(64), nullable=True),
        sa.Column("pse_bank_url", sa.String(2048), nullable=True),
        _ts("paid_at", nullable=True),
        sa.Column("metadata_json", JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(
            "status IN ('PENDING','APPROVED','DECLINED','EXPIRED','ERROR')",
            name="ck_payments_status",
        ),
        sa.CheckConstraint("method IN ('PSE','CREDIT_CARD')", name="ck_payments_method"),
    )
    op.create_index("ux_payments_reference", "payments", ["payu_reference_code"], unique=True)
    op.create_index("ix_payments_invoice_status", "payments", ["invoice_id", "status"])

    op.create_table(
        "scheduled_plan_changes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("from_plan_id", sa.String(64), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("to_plan_id", sa.String(64), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("invoice_id", sa.String(64), sa.ForeignKey("invoices.id"), nullable=False),
        _ts("effective_date"),
        sa.Column("status", sa.String(16), nullable=False, server_default="SCHEDULED"),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(
            "status IN ('SCHEDULED','APPLIED','CANCELLED')",
            name="ck_scheduled_plan_changes_status",
        ),
    )
    op.create_index(
        "ux_scheduled_plan_changes_invoice",
        "scheduled_plan_changes",
        ["invoice_id"],
        unique=True,
    )
    op.create_index("ix_scheduled_plan_changes_due", "scheduled_plan_changes", ["status", "effective_date"])

    op.create_table(
        "payment_reminders",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("invoice_id", sa.String(64), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        _ts("scheduled_for"),
        _ts("sent_at", nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "type IN ('EXPIRING_7_DAYS','EXPIRING_3_DAYS','EXPIRING_1_DAY','EXPIRED')",
            name="ck_payment_reminders_type",
        ),
    )
    op.create_index(
        "ux_payment_reminders_invoice_type",
        "payment_reminders",
        ["invoice_id", "type"],
        unique=True,
    )
    op.create_index("ix_payment_reminders_due", "payment_reminders", ["sent_at", "scheduled_for"])


def downgrade() -> None:
    op.drop_table("payment_reminders")
    op.drop_table("scheduled_plan_changes")
    op.drop_table("payments")
    op.drop_table("invoice_items")
    op.drop_table("invoices")
    op.drop_table("tenant_users")
    op.drop_table("users")
    op.drop_table("tenants")
    op.drop_table("plans")
