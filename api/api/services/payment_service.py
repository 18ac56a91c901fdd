"""Invoice payments through the PayU gateway.

A payment attempt is created only after the gateway answered, so a timeout
or transport error leaves no half-written row behind.  Every later status
change, whether from the confirmation webhook or from polling the gateway,
goes through :func:`apply_payment_status`, which only ever moves a payment
out of ``PENDING`` and therefore makes repeated confirmations no-ops.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from carwash_core.billing import InvoiceStatus, PaymentMethod, PaymentStatus
from carwash_core.billing.models import FAILED_PAYMENT_STATUSES
from carwash_core.billing.periods import generate_reference_code
from carwash_core.domain import build_tenant_url
from carwash_core.state import InvoiceRepository, PaymentRepository, TenantRepository
from carwash_core.state.tables import PaymentTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.errors import (
    GatewayRejected,
    GatewaySignatureInvalid,
    GatewayUnavailable,
    InvalidRequest,
    InvoiceNotPayable,
    ResourceNotFound,
)
from api.services.billing_service import confirm_invoice_paid
from api.services.payu_client import Buyer, CardDetails, DeviceInfo, PayUClient, map_gateway_state

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def payment_to_dict(row: PaymentTable) -> dict[str, Any]:
    """Render a payment row in the camelCase wire shape."""
    return {
        "id": row.id,
        "invoiceId": row.invoice_id,
        "amount": float(row.amount),
        "method": row.method,
        "status": row.status,
        "referenceCode": row.payu_reference_code,
        "orderId": row.payu_order_id,
        "transactionId": row.payu_transaction_id,
        "responseCode": row.payu_response_code,
        "pseBank": row.pse_bank,
        "bankUrl": row.pse_bank_url,
        "paidAt": _iso(row.paid_at),
        "createdAt": _iso(row.created_at),
    }


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


async def apply_payment_status(
    session: AsyncSession,
    payment: PaymentTable,
    status: PaymentStatus,
    *,
    response_code: str | None = None,
    transaction_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Move a ``PENDING`` payment to *status* and propagate to its invoice.

    ``APPROVED`` marks the invoice paid and activates its plan.  A failed
    attempt marks the invoice ``OVERDUE`` when no other attempt is still
    pending and the due date has passed.

    Returns
    -------
    bool
        ``True`` if this call performed the transition; ``False`` when the
        payment had already left ``PENDING`` or *status* is ``PENDING``.
    """
    if status is PaymentStatus.PENDING:
        return False
    now = now or datetime.now(UTC)

    fields: dict[str, Any] = {}
    if response_code:
        fields["payu_response_code"] = response_code
    if transaction_id:
        fields["payu_transaction_id"] = transaction_id
    if status is PaymentStatus.APPROVED:
        fields["paid_at"] = now

    payments = PaymentRepository(session, payment.tenant_id)
    moved = await payments.transition_from_pending(payment.id, status.value, **fields)
    if not moved:
        logger.info("Payment %s already resolved; ignoring %s", payment.id, status.value)
        return False

    invoices = InvoiceRepository(session, payment.tenant_id)
    invoice = await invoices.get(payment.invoice_id)
    if invoice is None:
        logger.warning("Payment %s references missing invoice %s", payment.id, payment.invoice_id)
        return True

    if status is PaymentStatus.APPROVED:
        await confirm_invoice_paid(session, invoice, now=now)
    elif status in FAILED_PAYMENT_STATUSES:
        others = await payments.count_other_pending(invoice.id, payment.id)
        if others == 0 and invoice.due_date < now:
            await invoices.transition_status(
                invoice.id,
                from_statuses=(InvoiceStatus.PENDING.value,),
                to_status=InvoiceStatus.OVERDUE.value,
            )
            logger.info("Invoice %s overdue after failed payment %s", invoice.id, payment.id)

    logger.info(
        "Payment %s -> %s",
        payment.id,
        status.value,
        extra={"billing": {"event": "payment_status", "payment_id": payment.id, "status": status.value}},
    )
    return True


# ---------------------------------------------------------------------------
# Gateway confirmations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PayUConfirmation:
    """Fields of a PayU confirmation callback."""

    reference_code: str
    transaction_id: str | None
    state: str | None
    response_code: str | None
    signature: str
    amount: str
    currency: str
    merchant_id: str | None

    @classmethod
    def from_fields(cls, data: Mapping[str, Any]) -> PayUConfirmation:
        """Parse a form-encoded or JSON confirmation body."""

        def _get(*names: str) -> str | None:
            for name in names:
                value = data.get(name)
                if value not in (None, ""):
                    return str(value)
            return None

        reference = _get("reference_sale", "referenceCode")
        if reference is None:
            raise InvalidRequest("Missing reference code")
        return cls(
            reference_code=reference,
            transaction_id=_get("transaction_id", "transactionId"),
            state=_get("state_pol", "transactionState"),
            response_code=_get("response_code_pol", "responseCode"),
            signature=_get("sign", "signature") or "",
            amount=_get("value", "TX_VALUE") or "0",
            currency=_get("currency") or "",
            merchant_id=_get("merchant_id", "merchantId"),
        )


async def process_payu_confirmation(
    session: AsyncSession,
    client: PayUClient,
    data: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> dict[str, bool]:
    """Verify and apply a PayU confirmation callback.

    Raises
    ------
    GatewaySignatureInvalid
        When the signature does not match; nothing is written.
    """
    confirmation = PayUConfirmation.from_fields(data)
    logger.info("PayU confirmation received: ref=%s state=%s", confirmation.reference_code, confirmation.state)

    if not client.verify_signature(
        confirmation.reference_code,
        confirmation.amount,
        confirmation.currency,
        confirmation.signature,
    ):
        logger.warning("PayU signature verification failed for reference %s", confirmation.reference_code)
        raise GatewaySignatureInvalid()

    payment = await PaymentRepository(session).get_by_reference(confirmation.reference_code)
    if payment is None:
        logger.warning("PayU confirmation for unknown reference: %s", confirmation.reference_code)
        return {"received": True}

    status = map_gateway_state(confirmation.state)
    if status is None:
        logger.warning("Unrecognised PayU state %r for reference %s", confirmation.state, confirmation.reference_code)
        return {"received": True}

    await apply_payment_status(
        session,
        payment,
        status,
        response_code=confirmation.response_code,
        transaction_id=confirmation.transaction_id,
        now=now,
    )
    return {"received": True}


async def list_pse_banks(client: PayUClient) -> list[dict[str, str]]:
    """Return the PSE bank list, or an empty list when the gateway fails."""
    try:
        banks = await client.get_pse_banks()
    except (GatewayUnavailable, GatewayRejected) as exc:
        logger.warning("Could not load PSE banks: %s", exc)
        return []
    return [{"pseCode": b.pse_code, "description": b.description} for b in banks]


# ---------------------------------------------------------------------------
# Tenant payment operations
# ---------------------------------------------------------------------------


class PaymentService:
    """Payment creation and lookup for a single tenant.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings; used to build the PSE return URL.
    client:
        PayU gateway client.
    tenant_id:
        The tenant paying its invoices.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        client: PayUClient,
        *,
        tenant_id: str,
    ) -> None:
        self._session = session
        self._settings = settings
        self._client = client
        self._tenant_id = tenant_id
        self._invoices = InvoiceRepository(session, tenant_id)
        self._payments = PaymentRepository(session, tenant_id)

    async def create_payment(
        self,
        *,
        invoice_id: str,
        method: PaymentMethod,
        buyer: Buyer,
        device: DeviceInfo,
        pse_bank: str | None = None,
        person_type: str = "N",
        card: CardDetails | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Submit a payment for one of the tenant's open invoices.

        Returns
        -------
        dict
            ``{paymentId, status, bankUrl, responseCode}``.

        Raises
        ------
        InvoiceNotPayable
            The invoice is already ``PAID`` or ``CANCELLED``.
        GatewayUnavailable
            The gateway timed out; no payment was recorded.
        """
        now = now or datetime.now(UTC)
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise ResourceNotFound("Invoice not found")
        if invoice.status == InvoiceStatus.PAID.value:
            raise InvoiceNotPayable("This invoice has already been paid")
        if invoice.status == InvoiceStatus.CANCELLED.value:
            raise InvoiceNotPayable("This invoice has been cancelled")

        reference_code = generate_reference_code(invoice.id, int(now.timestamp() * 1000))
        description = invoice.description or f"Invoice {invoice.invoice_number}"
        amount = Decimal(invoice.total_amount)

        if method is PaymentMethod.PSE:
            if not pse_bank:
                raise InvalidRequest("A PSE bank is required")
            tenant = await TenantRepository(self._session).get(self._tenant_id)
            response_url = build_tenant_url(
                tenant.slug if tenant else "",
                f"/billing/invoices/{invoice.id}?payment=complete",
                self._settings.app_domain,
                production=self._settings.is_production,
            )
            result = await self._client.create_pse_payment(
                reference_code=reference_code,
                description=description,
                amount=amount,
                tax=Decimal(invoice.tax),
                tax_return_base=Decimal(invoice.amount),
                buyer=buyer,
                device=device,
                pse_bank=pse_bank,
                person_type=person_type,
                response_url=response_url,
            )
        elif method is PaymentMethod.CREDIT_CARD:
            if card is None:
                raise InvalidRequest("Card details are required")
            result = await self._client.create_credit_card_payment(
                reference_code=reference_code,
                description=description,
                amount=amount,
                tax=Decimal(invoice.tax),
                tax_return_base=Decimal(invoice.amount),
                buyer=buyer,
                device=device,
                card=card,
            )
        else:
            raise InvalidRequest("Unsupported payment method")

        payment = await self._payments.create(
            invoice_id=invoice.id,
            amount=amount,
            method=method.value,
            status=PaymentStatus.PENDING.value,
            reference_code=reference_code,
            order_id=result.order_id,
            transaction_id=result.transaction_id,
            response_code=result.response_code,
            pse_bank=pse_bank if method is PaymentMethod.PSE else None,
            pse_bank_url=result.bank_url if method is PaymentMethod.PSE else None,
            metadata={"payerName": buyer.full_name, "payerDocument": buyer.document, "payerEmail": buyer.email},
        )
        logger.info("Created %s payment %s for invoice %s", method.value, payment.id, invoice.id)

        # A synchronous terminal answer settles the attempt right away.
        status = result.status
        if status is not PaymentStatus.PENDING:
            await apply_payment_status(
                self._session, payment, status, response_code=result.response_code, now=now
            )

        return {
            "paymentId": payment.id,
            "status": status.value,
            "bankUrl": result.bank_url,
            "responseCode": result.response_code,
        }

    async def get_payment(self, payment_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Return one payment, refreshing a ``PENDING`` one from the gateway."""
        payment = await self._payments.get(payment_id)
        if payment is None:
            raise ResourceNotFound("Payment not found")

        if payment.status == PaymentStatus.PENDING.value:
            await self._refresh(payment, now=now)
            await self._session.refresh(payment)

        result = payment_to_dict(payment)
        invoice = await self._invoices.get(payment.invoice_id)
        if invoice is not None:
            result["invoice"] = {
                "id": invoice.id,
                "invoiceNumber": invoice.invoice_number,
                "totalAmount": float(invoice.total_amount),
                "status": invoice.status,
            }
        return result

    async def _refresh(self, payment: PaymentTable, *, now: datetime | None) -> None:
        try:
            report = await self._client.query_by_reference(payment.payu_reference_code)
        except GatewayUnavailable:
            logger.warning("Gateway unavailable while polling payment %s", payment.id)
            return
        if report is None:
            return

        if report.order_status == "CAPTURED":
            status = PaymentStatus.APPROVED
        else:
            status = map_gateway_state(report.transaction_state)
        if status is None:
            return
        await apply_payment_status(
            self._session,
            payment,
            status,
            response_code=report.response_code,
            now=now,
        )
