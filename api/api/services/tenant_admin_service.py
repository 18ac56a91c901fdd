"""Platform-administrator tenant lifecycle: onboard, edit, deactivate.

Only reachable through the ``/api/admin`` routes, which the edge and the
:func:`~api.dependencies.get_super_admin` dependency both restrict to
``SUPER_ADMIN`` identities.  Tenants are never deleted; deactivation flips
``is_active`` so the access gate blocks them with reason ``inactive``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from carwash_core.domain import validate_slug
from carwash_core.state import PlanRepository, TenantRepository, TenantUserRepository, UserRepository
from carwash_core.state.tables import PlanTable, TenantTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import InvalidRequest, ResourceNotFound
from api.middleware.rbac import TenantRole
from api.services.access_gate import load_plan_status
from api.services.billing_service import plan_to_dict

logger = logging.getLogger(__name__)

# Trial granted when a tenant is onboarded onto a free plan.
FREE_TRIAL_DAYS = 30

ADMIN_PAGE_SIZE = 20

# Columns an administrator may edit directly.
_EDITABLE_FIELDS: frozenset[str] = frozenset({"name", "email", "phone", "is_active"})


def tenant_to_dict(tenant: TenantTable, plan: PlanTable | None = None) -> dict[str, Any]:
    return {
        "id": tenant.id,
        "slug": tenant.slug,
        "name": tenant.name,
        "email": tenant.email,
        "phone": tenant.phone,
        "isActive": tenant.is_active,
        "planId": tenant.plan_id,
        "plan": plan_to_dict(plan),
        "trialEndsAt": tenant.trial_ends_at.isoformat() if tenant.trial_ends_at else None,
        "createdAt": tenant.created_at.isoformat() if tenant.created_at else None,
    }


class TenantAdminService:
    """Tenant CRUD for platform administrators.

    Parameters
    ----------
    session:
        Active database session; the caller's request transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._tenants = TenantRepository(session)
        self._plans = PlanRepository(session)

    async def _plan_or_404(self, plan_id: str) -> PlanTable:
        plan = await self._plans.get(plan_id)
        if plan is None:
            raise ResourceNotFound("Plan not found")
        return plan

    async def list_tenants(self, *, search: str | None = None, page: int = 1) -> dict[str, Any]:
        """Return one page of tenants, newest first."""
        page = max(page, 1)
        rows, total = await self._tenants.search(search, offset=(page - 1) * ADMIN_PAGE_SIZE, limit=ADMIN_PAGE_SIZE)
        plans = {p.id: p for p in await self._plans.list_all()}
        return {
            "tenants": [tenant_to_dict(t, plans.get(t.plan_id or "")) for t in rows],
            "total": total,
            "pages": -(-total // ADMIN_PAGE_SIZE),
        }

    async def get_tenant(self, tenant_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Return a tenant with its plan, members and current plan status."""
        loaded = await self._tenants.get_with_plan(tenant_id)
        if loaded is None:
            raise ResourceNotFound("Tenant not found")
        tenant, plan = loaded

        members = await TenantUserRepository(self._session, tenant_id).list_members()
        status = await load_plan_status(self._session, tenant_id, now=now)

        result = tenant_to_dict(tenant, plan)
        result["members"] = [
            {"id": m.id, "userId": u.id, "email": u.email, "name": u.name, "role": m.role} for m, u in members
        ]
        result["planStatus"] = status.model_dump(by_alias=True, mode="json")
        return result

    async def create_tenant(
        self,
        *,
        name: str,
        slug: str,
        email: str | None = None,
        phone: str | None = None,
        plan_id: str | None = None,
        owner_email: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Onboard a tenant, optionally on a plan and with an owner.

        A free plan starts a trial of :data:`FREE_TRIAL_DAYS`; a paid plan
        is connected without a period end until its first invoice is paid.
        An unknown *owner_email* creates the user.

        Raises
        ------
        InvalidRequest
            The slug is malformed, reserved or taken.
        ResourceNotFound
            *plan_id* does not exist.
        """
        now = now or datetime.now(UTC)
        slug = slug.strip().lower()
        reason = validate_slug(slug)
        if reason is not None:
            raise InvalidRequest(f"Invalid slug: {reason}")
        if await self._tenants.slug_exists(slug):
            raise InvalidRequest("Slug already in use")

        plan = await self._plan_or_404(plan_id) if plan_id else None
        trial_ends_at = now + timedelta(days=FREE_TRIAL_DAYS) if plan is not None and plan.price == 0 else None

        tenant = await self._tenants.create(
            slug=slug,
            name=name,
            email=email,
            phone=phone,
            plan_id=plan.id if plan is not None else None,
            trial_ends_at=trial_ends_at,
        )

        if owner_email:
            users = UserRepository(self._session)
            owner = await users.get_by_email(owner_email)
            if owner is None:
                owner = await users.create(email=owner_email, name=owner_email.split("@")[0])
            await TenantUserRepository(self._session, tenant.id).add_member(owner.id, TenantRole.OWNER.name)

        logger.info("Tenant %s (%s) created by platform admin", tenant.id, slug)
        return tenant_to_dict(tenant, plan)

    async def update_tenant(self, tenant_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply the supplied *changes*; keys absent from it stay untouched.

        ``plan_id`` set to a plan id connects that plan, set to ``None``
        disconnects the current one.
        """
        tenant = await self._tenants.get(tenant_id)
        if tenant is None:
            raise ResourceNotFound("Tenant not found")

        values = {k: v for k, v in changes.items() if k in _EDITABLE_FIELDS}
        if "plan_id" in changes:
            plan_id = changes["plan_id"]
            values["plan_id"] = (await self._plan_or_404(plan_id)).id if plan_id else None

        if values:
            await self._tenants.update_fields(tenant_id, **values)
            await self._session.refresh(tenant)
            logger.info("Tenant %s updated by platform admin: %s", tenant_id, sorted(values))

        plan = await self._plans.get(tenant.plan_id) if tenant.plan_id else None
        return tenant_to_dict(tenant, plan)

    async def deactivate_tenant(self, tenant_id: str) -> dict[str, Any]:
        """Flip ``is_active`` off.  Data and memberships are kept."""
        if not await self._tenants.update_fields(tenant_id, is_active=False):
            raise ResourceNotFound("Tenant not found")
        logger.info("Tenant %s deactivated by platform admin", tenant_id)
        return {"message": "Tenant deactivated"}
