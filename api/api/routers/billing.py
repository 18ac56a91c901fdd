"""Tenant billing endpoints: plan changes, Stripe portal/checkout, plan status."""

from __future__ import annotations

import logging
from typing import Any, Literal

from carwash_core.billing.plan_status import is_expiring_soon
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from api.dependencies import IdentityDep, MemberDep, SessionDep, SettingsDep
from api.errors import InvalidRequest
from api.middleware.edge_routing import PLAN_EXEMPT_PATHS
from api.middleware.rbac import Permission, require_permission
from api.schemas import BillingActionResponse, BillingInfoResponse, ErrorResponse, PlanStatusResponse
from api.services.access_gate import Membership, load_plan_status
from api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenant", tags=["billing"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class BillingActionRequest(BaseModel):
    """Request body for ``POST /api/tenant/billing``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: Literal["change-plan", "portal", "checkout"] = Field(
        ...,
        description="change-plan drives the plan state machine; portal/checkout are Stripe redirects.",
    )
    plan_id: str | None = Field(default=None, description="Target plan; null disconnects on change-plan.")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/billing", response_model=BillingInfoResponse)
async def get_billing(
    session: SessionDep,
    settings: SettingsDep,
    membership: Membership = Depends(require_permission(Permission.VIEW_BILLING)),
) -> dict[str, Any]:
    """Return the tenant's plan and legacy Stripe references."""
    service = BillingService(session, settings, tenant_id=membership.tenant_id)
    return await service.get_billing_info()


@router.post(
    "/billing",
    response_model=BillingActionResponse,
    response_model_exclude_none=True,
    responses={409: {"model": ErrorResponse}},
)
async def billing_action(
    body: BillingActionRequest,
    session: SessionDep,
    settings: SettingsDep,
    identity: IdentityDep,
    membership: Membership = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Change plan, or open a Stripe portal/checkout session.

    Requires ``ADMIN`` or ``OWNER``.
    """
    service = BillingService(session, settings, tenant_id=membership.tenant_id)

    if body.action == "change-plan":
        return await service.change_plan(body.plan_id)
    if body.action == "portal":
        return await service.create_portal_session()
    if body.plan_id:
        return await service.create_checkout_session(body.plan_id, customer_email=identity.email)
    raise InvalidRequest("Invalid action")


@router.get("/plan-status", response_model=PlanStatusResponse)
async def plan_status(session: SessionDep, membership: MemberDep) -> dict[str, Any]:
    """Return whether the tenant is blocked and why.

    Super-admins always see an unrestricted status.
    """
    if membership.is_super_admin:
        return {"isBlocked": False, "exemptPaths": list(PLAN_EXEMPT_PATHS)}

    status = await load_plan_status(session, membership.tenant_id)
    payload = status.model_dump(by_alias=True, mode="json")
    payload["expiringSoon"] = is_expiring_soon(status)
    payload["exemptPaths"] = list(PLAN_EXEMPT_PATHS)
    return payload
