"""Plan/billing state machine transitions and legacy Stripe integration.

Transitions run inside the request transaction owned by the caller, so an
invoice and its scheduled plan change, or a paid invoice and the tenant
activation it triggers, are committed together or not at all.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from carwash_core.billing import InvoiceStatus, PlanChangeStatus
from carwash_core.billing.models import OPEN_INVOICE_STATUSES
from carwash_core.billing.periods import calculate_next_period
from carwash_core.domain import build_tenant_url, get_base_domain_url
from carwash_core.state import (
    DuplicateOpenInvoiceError,
    InvoiceRepository,
    PlanRepository,
    ScheduledPlanChangeRepository,
    TenantRepository,
)
from carwash_core.state.tables import InvoiceTable, PlanTable, TenantTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.errors import DuplicateInvoice, GatewaySignatureInvalid, InvalidRequest, ResourceNotFound
from api.services.invoice_service import InvoiceService

logger = logging.getLogger(__name__)

# Stripe subscription states that keep a legacy tenant active.
_ACTIVE_SUBSCRIPTION_STATES = frozenset({"active", "trialing"})


def plan_to_dict(plan: PlanTable | None) -> dict[str, Any] | None:
    """Render a plan row in the camelCase wire shape."""
    if plan is None:
        return None
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description,
        "price": float(plan.price),
        "interval": plan.interval,
        "maxUsers": plan.max_users,
        "isActive": plan.is_active,
    }


def _get_stripe(settings: APISettings) -> Any:
    """Lazily import and configure the Stripe library."""
    import stripe

    stripe.api_key = settings.stripe_secret_key.get_secret_value()
    return stripe


# ---------------------------------------------------------------------------
# Payment confirmation
# ---------------------------------------------------------------------------


async def confirm_invoice_paid(
    session: AsyncSession,
    invoice: InvoiceTable,
    *,
    now: datetime | None = None,
) -> bool:
    """Mark *invoice* ``PAID`` and activate the plan it bills.

    The invoice moves from ``PENDING``/``OVERDUE`` with a conditional
    update, so of two concurrent confirmations only one performs the
    activation.  When the invoice pays for a ``SCHEDULED`` plan change that
    is not yet effective, the tenant keeps its current plan and the
    reconciliation job applies the change on its effective date.

    Returns
    -------
    bool
        ``True`` if this call moved the invoice to ``PAID``.
    """
    now = now or datetime.now(UTC)
    invoices = InvoiceRepository(session, invoice.tenant_id)
    moved = await invoices.transition_status(
        invoice.id,
        from_statuses=OPEN_INVOICE_STATUSES,
        to_status=InvoiceStatus.PAID.value,
        paid_at=now,
    )
    if not moved:
        logger.info("Invoice %s already settled; skipping activation", invoice.id)
        return False

    changes = ScheduledPlanChangeRepository(session, invoice.tenant_id)
    change = await changes.get_scheduled_for_invoice(invoice.id)
    if change is not None and change.effective_date > now:
        logger.info(
            "Invoice %s paid; plan change %s deferred until %s",
            invoice.id,
            change.id,
            change.effective_date.isoformat(),
            extra={"billing": {"event": "plan_change_deferred", "invoice_id": invoice.id}},
        )
        return True
    if change is not None:
        await changes.resolve(change.id, PlanChangeStatus.APPLIED)

    if invoice.plan_id is not None:
        await TenantRepository(session).connect_plan(invoice.tenant_id, invoice.plan_id, invoice.period_end)
    logger.info(
        "Invoice %s paid; tenant %s active until %s",
        invoice.id,
        invoice.tenant_id,
        invoice.period_end.isoformat(),
        extra={"billing": {"event": "invoice_paid", "invoice_id": invoice.id, "tenant_id": invoice.tenant_id}},
    )
    return True


# ---------------------------------------------------------------------------
# Tenant billing operations
# ---------------------------------------------------------------------------


class BillingService:
    """Plan changes and billing lookups for a single tenant.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings with billing rules and Stripe configuration.
    tenant_id:
        The tenant performing billing operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tenant_id: str,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tenant_id = tenant_id
        self._tenants = TenantRepository(session)
        self._plans = PlanRepository(session)
        self._invoices = InvoiceRepository(session, tenant_id)
        self._changes = ScheduledPlanChangeRepository(session, tenant_id)

    async def _load_tenant(self) -> tuple[TenantTable, PlanTable | None]:
        loaded = await self._tenants.get_with_plan(self._tenant_id)
        if loaded is None:
            raise ResourceNotFound("Tenant not found")
        return loaded

    async def get_billing_info(self) -> dict[str, Any]:
        """Return the connected plan and legacy Stripe references."""
        tenant, plan = await self._load_tenant()
        return {
            "plan": plan_to_dict(plan),
            "trialEndsAt": tenant.trial_ends_at.isoformat() if tenant.trial_ends_at else None,
            "stripeSubscriptionId": tenant.stripe_subscription_id,
            "stripeCustomerId": tenant.stripe_customer_id,
        }

    async def change_plan(self, plan_id: str | None, *, now: datetime | None = None) -> dict[str, Any]:
        """Drive the plan state machine towards *plan_id*.

        ``None`` disconnects the current plan.  A free plan is attached
        immediately with a fresh trial.  A paid plan produces an invoice for
        the next billable period; when the tenant is inside a paid period a
        ``SCHEDULED`` plan change linked to that invoice is created too.

        Returns
        -------
        dict
            ``{success, message}`` for immediate changes,
            ``{invoiceId, invoiceNumber, totalAmount}`` when an invoice was
            generated, or ``{url}`` for tenants billed through Stripe.

        Raises
        ------
        DuplicateInvoice
            An unpaid invoice for the same plan already exists.
        """
        now = now or datetime.now(UTC)
        if plan_id is None:
            return await self.disconnect_plan()

        plan = await self._plans.get_active(plan_id)
        if plan is None:
            raise ResourceNotFound("Plan not found")

        tenant, current_plan = await self._load_tenant()

        if Decimal(plan.price) == 0:
            trial_end = now + timedelta(days=self._settings.trial_days)
            await self._tenants.connect_plan(self._tenant_id, plan.id, trial_end)
            logger.info("Tenant %s switched to free plan %s", self._tenant_id, plan.id)
            return {"success": True, "message": f"Plan {plan.name} activated"}

        if tenant.stripe_subscription_id and tenant.stripe_customer_id:
            return await self.create_portal_session(tenant)

        existing = await self._invoices.find_open_for_plan(plan.id)
        if existing is not None:
            raise DuplicateInvoice(existing.id)

        current_period_end = await self._invoices.get_current_period_end(now)
        period_start, period_end = calculate_next_period(current_period_end, plan.interval, now)

        invoice_service = InvoiceService(self._session, self._tenant_id, tax_rate=self._settings.tax_rate)
        try:
            invoice = await invoice_service.create_plan_invoice(plan, period_start, period_end, now=now)
        except DuplicateOpenInvoiceError as exc:
            # Lost a race with a concurrent request; the session must roll back.
            raise DuplicateInvoice() from exc

        if current_period_end is not None:
            change = await self._changes.create(
                from_plan_id=current_plan.id if current_plan else None,
                to_plan_id=plan.id,
                invoice_id=invoice.id,
                effective_date=period_start,
            )
            logger.info(
                "Scheduled plan change %s for tenant %s effective %s",
                change.id,
                self._tenant_id,
                period_start.isoformat(),
            )

        return {
            "invoiceId": invoice.id,
            "invoiceNumber": invoice.invoice_number,
            "totalAmount": float(invoice.total_amount),
        }

    async def disconnect_plan(self) -> dict[str, Any]:
        """Detach the plan and cancel every pending invoice and scheduled change."""
        await self._tenants.disconnect_plan(self._tenant_id)
        cancelled_invoices = await self._invoices.cancel_pending()
        cancelled_changes = await self._changes.cancel_all_scheduled()
        logger.info(
            "Tenant %s disconnected plan (%d invoices, %d plan changes cancelled)",
            self._tenant_id,
            cancelled_invoices,
            cancelled_changes,
        )
        return {"success": True, "message": "Plan disconnected"}

    # -- Legacy Stripe -------------------------------------------------------

    async def create_portal_session(self, tenant: TenantTable | None = None) -> dict[str, str]:
        """Create a Stripe Customer Portal session for the tenant.

        Returns
        -------
        dict
            Contains ``url`` for the portal session.
        """
        if tenant is None:
            tenant, _ = await self._load_tenant()
        if not tenant.stripe_customer_id:
            raise InvalidRequest("Invalid action")

        return_url = build_tenant_url(
            tenant.slug,
            "/billing",
            self._settings.app_domain,
            production=self._settings.is_production,
        )
        stripe = _get_stripe(self._settings)
        portal = stripe.billing_portal.Session.create(
            customer=tenant.stripe_customer_id,
            return_url=return_url,
        )
        return {"url": portal["url"]}

    async def create_checkout_session(self, plan_id: str, customer_email: str | None = None) -> dict[str, str]:
        """Create a Stripe Checkout session subscribing the tenant to *plan_id*.

        Returns
        -------
        dict
            Contains ``url`` to redirect the customer to.
        """
        plan = await self._plans.get(plan_id)
        if plan is None or not plan.stripe_price_id:
            raise InvalidRequest("Invalid plan")
        tenant, _ = await self._load_tenant()

        production = self._settings.is_production
        params: dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": plan.stripe_price_id, "quantity": 1}],
            "metadata": {"tenantId": self._tenant_id, "tenantName": tenant.name},
            "success_url": get_base_domain_url(
                "/login?payment=success", self._settings.app_domain, production=production
            ),
            "cancel_url": get_base_domain_url(
                "/register?cancelled=true", self._settings.app_domain, production=production
            ),
        }
        if tenant.stripe_customer_id:
            params["customer"] = tenant.stripe_customer_id
        else:
            params["customer_email"] = customer_email or tenant.email or ""

        stripe = _get_stripe(self._settings)
        checkout = stripe.checkout.Session.create(**params)
        return {"url": checkout["url"]}


# ---------------------------------------------------------------------------
# Stripe webhooks
# ---------------------------------------------------------------------------


def verify_stripe_event(payload: bytes, signature: str | None, settings: APISettings) -> dict[str, Any]:
    """Verify the ``stripe-signature`` header and return the event as a dict.

    Raises
    ------
    GatewaySignatureInvalid
        When the header is missing or does not match the payload.
    """
    if not signature:
        raise GatewaySignatureInvalid("Missing signature")
    stripe = _get_stripe(settings)
    try:
        stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret.get_secret_value())
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise GatewaySignatureInvalid() from exc
    return json.loads(payload)


class StripeWebhookHandler:
    """Apply verified Stripe events to legacy-subscription tenants.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings; used to call back into Stripe for subscription details.
    """

    def __init__(self, session: AsyncSession, settings: APISettings) -> None:
        self._session = session
        self._settings = settings
        self._tenants = TenantRepository(session)
        self._plans = PlanRepository(session)

    async def handle(self, event: dict[str, Any]) -> dict[str, bool]:
        """Process one event.  Unknown event types are acknowledged and ignored."""
        event_type = event.get("type", "")
        data_object = event.get("data", {}).get("object", {})

        if event_type == "checkout.session.completed":
            await self._handle_checkout_completed(data_object)
        elif event_type == "customer.subscription.updated":
            await self._handle_subscription_updated(data_object)
        elif event_type == "customer.subscription.deleted":
            await self._handle_subscription_deleted(data_object)
        elif event_type == "invoice.payment_failed":
            await self._handle_payment_failed(data_object)
        else:
            logger.debug("Unhandled Stripe event type: %s", event_type)
        return {"received": True}

    async def _handle_checkout_completed(self, checkout: dict[str, Any]) -> None:
        tenant_id = (checkout.get("metadata") or {}).get("tenantId")
        customer_id = checkout.get("customer")
        subscription_id = checkout.get("subscription")
        if not (tenant_id and customer_id and subscription_id):
            return

        values: dict[str, Any] = {
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
            "is_active": True,
        }
        price_id = self._subscription_price_id(subscription_id)
        if price_id:
            plan = await self._plans.get_by_stripe_price(price_id)
            if plan is not None:
                values["plan_id"] = plan.id
                values["trial_ends_at"] = None

        await self._tenants.update_fields(tenant_id, **values)
        logger.info("Stripe checkout completed for tenant %s", tenant_id)

    def _subscription_price_id(self, subscription_id: str) -> str | None:
        stripe = _get_stripe(self._settings)
        subscription = stripe.Subscription.retrieve(subscription_id)
        items = subscription["items"]["data"]
        if not items:
            return None
        return items[0]["price"]["id"]

    async def _handle_subscription_updated(self, subscription: dict[str, Any]) -> None:
        tenant = await self._tenants.get_by_stripe_subscription(subscription.get("id", ""))
        if tenant is None:
            logger.warning("Received subscription event for unknown subscription: %s", subscription.get("id"))
            return
        is_active = subscription.get("status") in _ACTIVE_SUBSCRIPTION_STATES
        await self._tenants.update_fields(tenant.id, is_active=is_active)

    async def _handle_subscription_deleted(self, subscription: dict[str, Any]) -> None:
        tenant = await self._tenants.get_by_stripe_subscription(subscription.get("id", ""))
        if tenant is None:
            return
        await self._tenants.update_fields(tenant.id, is_active=False, stripe_subscription_id=None, plan_id=None)
        logger.info("Stripe subscription cancelled for tenant %s", tenant.slug)

    async def _handle_payment_failed(self, invoice: dict[str, Any]) -> None:
        customer_id = invoice.get("customer")
        if not customer_id:
            return
        tenant = await self._tenants.get_by_stripe_customer(customer_id)
        if tenant is not None:
            logger.warning("Payment failed for tenant %s", tenant.slug)
