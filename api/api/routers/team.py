"""Team management endpoints: list members, change roles, remove members.

Listing is open to every member.  Role changes require ``OWNER``; removal
requires ``ADMIN`` or above.  Mutations are refused while the tenant is
plan-blocked.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import ActivePlanDep, SessionDep
from api.middleware.rbac import Permission, require_permission
from api.schemas import ErrorResponse, MessageResponse, RoleUpdateResponse, TeamListResponse
from api.services.access_gate import Membership
from api.services.team_service import TeamService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenant/team", tags=["team"])


class RoleUpdateRequest(BaseModel):
    """Request body for ``PATCH /api/tenant/team/{member_id}``."""

    role: str = Field(..., description="ADMIN or EMPLOYEE.")


@router.get("", response_model=TeamListResponse)
async def list_members(
    session: SessionDep,
    membership: Membership = Depends(require_permission(Permission.VIEW_TEAM)),
) -> dict[str, Any]:
    """List the tenant's active members."""
    service = TeamService(session, tenant_id=membership.tenant_id)
    return await service.list_members()


@router.patch(
    "/{member_id}",
    response_model=RoleUpdateResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_role(
    member_id: str,
    body: RoleUpdateRequest,
    session: SessionDep,
    _plan: ActivePlanDep,
    membership: Membership = Depends(require_permission(Permission.CHANGE_ROLES)),
) -> dict[str, Any]:
    """Change a member's role.  Only the owner may do this."""
    service = TeamService(session, tenant_id=membership.tenant_id)
    return await service.update_role(member_id, body.role)


@router.delete(
    "/{member_id}",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def remove_member(
    member_id: str,
    session: SessionDep,
    _plan: ActivePlanDep,
    membership: Membership = Depends(require_permission(Permission.REMOVE_MEMBERS)),
) -> dict[str, Any]:
    """Deactivate a member.  The owner and the caller themselves are protected."""
    service = TeamService(session, tenant_id=membership.tenant_id)
    return await service.remove_member(member_id, acting_user_id=membership.user_id)
