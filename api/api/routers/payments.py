"""Tenant payment endpoints: submit a payment, poll its status, list PSE banks."""

from __future__ import annotations

import logging
import time
from typing import Any

from carwash_core.billing import PaymentMethod
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from api.dependencies import IdentityDep, PayUClientDep, SessionDep, SettingsDep
from api.middleware.rbac import Permission, require_permission
from api.schemas import ErrorResponse, PaymentCreatedResponse, PaymentResponse, PseBankResponse
from api.services.access_gate import Membership
from api.services.payment_service import PaymentService, list_pse_banks
from api.services.payu_client import Buyer, CardDetails, DeviceInfo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenant/payments", tags=["payments"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class PayerInfo(BaseModel):
    """Payer data forwarded to the gateway.  Card fields are never stored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    full_name: str = Field(..., min_length=1)
    document: str = Field(..., min_length=1)
    document_type: str = "CC"
    email: str | None = None
    phone: str | None = None
    pse_bank: str | None = None
    person_type: str = Field(default="N", pattern="^(N|J)$")
    card_number: str | None = None
    card_expiration: str | None = None
    card_security_code: str | None = None
    card_holder_name: str | None = None
    card_brand: str = "VISA"
    installments: int = Field(default=1, ge=1, le=36)

    def to_card(self) -> CardDetails | None:
        if not (self.card_number and self.card_expiration and self.card_security_code):
            return None
        return CardDetails(
            number=self.card_number,
            security_code=self.card_security_code,
            expiration=self.card_expiration,
            holder_name=self.card_holder_name or self.full_name,
            network=self.card_brand,
            installments=self.installments,
        )


class PaymentCreateRequest(BaseModel):
    """Request body for ``POST /api/tenant/payments``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    invoice_id: str
    method: PaymentMethod
    payer_info: PayerInfo


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/banks", response_model=list[PseBankResponse])
async def list_banks(_identity: IdentityDep, client: PayUClientDep) -> list[dict[str, str]]:
    """Return the PSE bank list; empty when the gateway is unavailable."""
    return await list_pse_banks(client)


@router.post(
    "",
    response_model=PaymentCreatedResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def create_payment(
    body: PaymentCreateRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    client: PayUClientDep,
    identity: IdentityDep,
    membership: Membership = Depends(require_permission(Permission.MAKE_PAYMENTS)),
) -> dict[str, Any]:
    """Submit a payment for an open invoice.  Requires ``ADMIN`` or ``OWNER``."""
    payer = body.payer_info
    buyer = Buyer(
        full_name=payer.full_name,
        email=payer.email or identity.email or "",
        document=payer.document,
        document_type=payer.document_type,
        phone=payer.phone or "",
    )
    device = DeviceInfo(
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent", "Mozilla/5.0"),
        session_id=f"cw_{membership.tenant_id}_{int(time.time() * 1000)}",
    )
    service = PaymentService(session, settings, client, tenant_id=membership.tenant_id)
    return await service.create_payment(
        invoice_id=body.invoice_id,
        method=body.method,
        buyer=buyer,
        device=device,
        pse_bank=payer.pse_bank,
        person_type=payer.person_type,
        card=payer.to_card(),
    )


@router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payment(
    payment_id: str,
    session: SessionDep,
    settings: SettingsDep,
    client: PayUClientDep,
    membership: Membership = Depends(require_permission(Permission.VIEW_BILLING)),
) -> dict[str, Any]:
    """Return a payment, refreshing a pending one from the gateway."""
    service = PaymentService(session, settings, client, tenant_id=membership.tenant_id)
    return await service.get_payment(payment_id)
