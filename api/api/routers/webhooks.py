"""Payment gateway webhooks: PayU confirmations and legacy Stripe events.

Both endpoints are public at the edge and authenticate the sender by
signature.  Nothing is written when verification fails.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request

from api.dependencies import PayUClientDep, SessionDep, SettingsDep
from api.errors import InvalidRequest
from api.schemas import ErrorResponse, WebhookAck
from api.services.billing_service import StripeWebhookHandler, verify_stripe_event
from api.services.payment_service import process_payu_confirmation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _read_fields(request: Request) -> dict[str, Any]:
    """Read a form-encoded or JSON body into a flat dict."""
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {key: str(value) for key, value in form.items()}
    try:
        data = json.loads(await request.body())
    except ValueError as exc:
        raise InvalidRequest("Invalid webhook body") from exc
    if not isinstance(data, dict):
        raise InvalidRequest("Invalid webhook body")
    return data


@router.post("/payu", response_model=WebhookAck, responses={400: {"model": ErrorResponse}})
async def payu_confirmation(
    request: Request,
    session: SessionDep,
    client: PayUClientDep,
) -> dict[str, bool]:
    """Apply a PayU payment confirmation.

    Repeated deliveries for the same reference are acknowledged without
    side effects.
    """
    data = await _read_fields(request)
    return await process_payu_confirmation(session, client, data)


@router.get("/payu")
async def payu_ping() -> dict[str, str]:
    """PayU also issues GET requests when the payer returns from the gateway."""
    return {"status": "ok"}


@router.post("/stripe", response_model=WebhookAck, responses={400: {"model": ErrorResponse}})
async def stripe_event(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
) -> dict[str, bool]:
    """Apply a verified Stripe subscription event."""
    payload = await request.body()
    event = verify_stripe_event(payload, request.headers.get("stripe-signature"), settings)
    return await StripeWebhookHandler(session, settings).handle(event)
