"""Shared Pydantic response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    """Body of every error response."""

    error: str


class MessageResponse(CamelModel):
    message: str


# ---------------------------------------------------------------------------
# Plans and billing
# ---------------------------------------------------------------------------


class PlanResponse(CamelModel):
    """A subscription plan."""

    id: str
    name: str
    description: str | None = None
    price: float
    interval: str
    max_users: int | None = None
    is_active: bool = True


class BillingInfoResponse(CamelModel):
    """Current plan and legacy Stripe references of a tenant."""

    plan: PlanResponse | None = None
    trial_ends_at: str | None = None
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None


class BillingActionResponse(CamelModel):
    """Outcome of ``POST /api/tenant/billing``.

    Exactly one group is populated: ``url`` for a Stripe redirect,
    ``invoice_id``/``invoice_number``/``total_amount`` for a generated
    invoice, or ``success``/``message`` for an immediate change.
    """

    url: str | None = None
    invoice_id: str | None = None
    invoice_number: str | None = None
    total_amount: float | None = None
    success: bool | None = None
    message: str | None = None


class PlanStatusResponse(CamelModel):
    """Blocking status of the current tenant."""

    is_blocked: bool
    reason: str | None = None
    trial_ends_at: str | None = None
    plan_name: str | None = None
    days_left: int | None = None
    pending_invoice_id: str | None = None
    expiring_soon: bool = False
    exempt_paths: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Invoices and payments
# ---------------------------------------------------------------------------


class InvoiceResponse(CamelModel):
    """An invoice without its line items."""

    id: str
    invoice_number: str
    plan_id: str | None = None
    status: str
    description: str | None = None
    amount: float
    tax: float
    total_amount: float
    period_start: str | None = None
    period_end: str | None = None
    due_date: str | None = None
    paid_at: str | None = None
    created_at: str | None = None


class InvoiceItemResponse(CamelModel):
    description: str
    quantity: int
    unit_price: float
    subtotal: float


class InvoicePaymentResponse(CamelModel):
    """A payment attempt as listed on an invoice."""

    id: str
    status: str
    method: str
    amount: float
    reference_code: str
    paid_at: str | None = None
    created_at: str | None = None


class InvoiceDetailResponse(InvoiceResponse):
    """An invoice with its line items and payment attempts."""

    items: list[InvoiceItemResponse] = Field(default_factory=list)
    payments: list[InvoicePaymentResponse] = Field(default_factory=list)


class InvoiceListResponse(CamelModel):
    """Paginated invoice list."""

    invoices: list[InvoiceResponse]
    total: int
    limit: int
    offset: int


class PaymentCreatedResponse(CamelModel):
    """Result of submitting a payment to the gateway."""

    payment_id: str
    status: str
    bank_url: str | None = None
    response_code: str | None = None


class PaymentInvoiceSummary(CamelModel):
    id: str
    invoice_number: str
    total_amount: float
    status: str


class PaymentResponse(CamelModel):
    """A payment attempt with the invoice it pays."""

    id: str
    invoice_id: str
    amount: float
    method: str
    status: str
    reference_code: str
    order_id: str | None = None
    transaction_id: str | None = None
    response_code: str | None = None
    pse_bank: str | None = None
    bank_url: str | None = None
    paid_at: str | None = None
    created_at: str | None = None
    invoice: PaymentInvoiceSummary | None = None


class PseBankResponse(CamelModel):
    pse_code: str
    description: str


# ---------------------------------------------------------------------------
# Team
# ---------------------------------------------------------------------------


class TeamMemberResponse(CamelModel):
    """An active tenant member."""

    id: str
    user_id: str
    name: str | None = None
    email: str
    role: str
    is_active: bool
    created_at: str | None = None


class TeamListResponse(CamelModel):
    members: list[TeamMemberResponse]
    total: int


class RoleUpdateResponse(CamelModel):
    id: str
    role: str


# ---------------------------------------------------------------------------
# Auth, webhooks, cron
# ---------------------------------------------------------------------------


class SlugCheckResponse(CamelModel):
    """Availability of a tenant slug."""

    available: bool
    reason: str | None = None


class WebhookAck(CamelModel):
    received: bool = True


class PlanChangeRunResponse(CamelModel):
    """Result of one scheduled-plan-change reconciliation run."""

    applied: int
    cancelled: int
    blocked: int
    total_checked: int


class ReminderRunResponse(CamelModel):
    """Result of one payment-reminder run."""

    processed: int
    total: int


# ---------------------------------------------------------------------------
# Platform administration
# ---------------------------------------------------------------------------


class AdminTenantResponse(CamelModel):
    """A tenant as seen by a platform administrator."""

    id: str
    slug: str
    name: str
    email: str | None = None
    phone: str | None = None
    is_active: bool
    plan_id: str | None = None
    plan: PlanResponse | None = None
    trial_ends_at: str | None = None
    created_at: str | None = None


class AdminTenantMember(CamelModel):
    id: str
    user_id: str
    email: str
    name: str | None = None
    role: str


class AdminTenantDetailResponse(AdminTenantResponse):
    members: list[AdminTenantMember] = Field(default_factory=list)
    plan_status: PlanStatusResponse


class AdminTenantListResponse(CamelModel):
    tenants: list[AdminTenantResponse]
    total: int
    pages: int
