"""Platform administration: tenant onboarding, editing and deactivation.

Every route requires a ``SUPER_ADMIN`` identity.  The edge middleware
already turns other callers away from ``/api/admin``; the dependency below
repeats the check so the routes stay safe when mounted without the edge.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from api.dependencies import SessionDep, SuperAdminDep
from api.schemas import (
    AdminTenantDetailResponse,
    AdminTenantListResponse,
    AdminTenantResponse,
    ErrorResponse,
    MessageResponse,
)
from api.services.tenant_admin_service import TenantAdminService

router = APIRouter(prefix="/admin/tenants", tags=["admin"])


class TenantCreateRequest(BaseModel):
    """Request body for ``POST /api/admin/tenants``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=256)
    slug: str
    email: str | None = None
    phone: str | None = None
    plan_id: str | None = None
    owner_email: str | None = None


class TenantUpdateRequest(BaseModel):
    """Request body for ``PUT /api/admin/tenants/{tenant_id}``.

    Only the fields present in the body are applied; ``"planId": null``
    disconnects the plan.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str | None = Field(default=None, min_length=1, max_length=256)
    email: str | None = None
    phone: str | None = None
    is_active: bool | None = None
    plan_id: str | None = None

    def changes(self) -> dict[str, Any]:
        values = self.model_dump(include=self.model_fields_set)
        # Non-nullable columns ignore an explicit null.
        return {k: v for k, v in values.items() if v is not None or k in ("email", "phone", "plan_id")}


@router.get("", response_model=AdminTenantListResponse)
async def list_tenants(
    session: SessionDep,
    _admin: SuperAdminDep,
    search: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
) -> dict[str, Any]:
    """Page through tenants, newest first."""
    return await TenantAdminService(session).list_tenants(search=search, page=page)


@router.post(
    "",
    response_model=AdminTenantResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def create_tenant(body: TenantCreateRequest, session: SessionDep, _admin: SuperAdminDep) -> dict[str, Any]:
    """Onboard a tenant.  A free plan starts a 30-day trial."""
    return await TenantAdminService(session).create_tenant(
        name=body.name,
        slug=body.slug,
        email=body.email,
        phone=body.phone,
        plan_id=body.plan_id,
        owner_email=body.owner_email,
    )


@router.get("/{tenant_id}", response_model=AdminTenantDetailResponse, responses={404: {"model": ErrorResponse}})
async def get_tenant(tenant_id: str, session: SessionDep, _admin: SuperAdminDep) -> dict[str, Any]:
    return await TenantAdminService(session).get_tenant(tenant_id)


@router.put(
    "/{tenant_id}",
    response_model=AdminTenantResponse,
    responses={404: {"model": ErrorResponse}},
)
async def update_tenant(
    tenant_id: str,
    body: TenantUpdateRequest,
    session: SessionDep,
    _admin: SuperAdminDep,
) -> dict[str, Any]:
    """Edit contact data, flip ``isActive`` or connect/clear the plan."""
    return await TenantAdminService(session).update_tenant(tenant_id, body.changes())


@router.delete("/{tenant_id}", response_model=MessageResponse, responses={404: {"model": ErrorResponse}})
async def deactivate_tenant(tenant_id: str, session: SessionDep, _admin: SuperAdminDep) -> dict[str, Any]:
    """Deactivate a tenant; nothing is deleted."""
    return await TenantAdminService(session).deactivate_tenant(tenant_id)
