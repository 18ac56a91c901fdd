"""Tenant invoice endpoints: paginated list and invoice detail."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from api.dependencies import SessionDep
from api.errors import ResourceNotFound
from api.middleware.rbac import Permission, require_permission
from api.schemas import ErrorResponse, InvoiceDetailResponse, InvoiceListResponse
from api.services.access_gate import Membership
from api.services.invoice_service import InvoiceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenant/invoices", tags=["invoices"])


@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    session: SessionDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    membership: Membership = Depends(require_permission(Permission.VIEW_BILLING)),
) -> dict[str, Any]:
    """List the tenant's invoices, newest first."""
    service = InvoiceService(session, membership.tenant_id)
    return await service.list_invoices(limit=limit, offset=offset)


@router.get(
    "/{invoice_id}",
    response_model=InvoiceDetailResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_invoice(
    invoice_id: str,
    session: SessionDep,
    membership: Membership = Depends(require_permission(Permission.VIEW_BILLING)),
) -> dict[str, Any]:
    """Return one invoice with its items and payment attempts."""
    service = InvoiceService(session, membership.tenant_id)
    invoice = await service.get_invoice(invoice_id)
    if invoice is None:
        raise ResourceNotFound("Invoice not found")
    return invoice
