"""Tenant context loading and the per-request access gate.

Three independent checks that API handlers compose as needed:

* :func:`require_tenant` -- is there a tenant for this request?
* :func:`require_tenant_member` -- is the caller a member of it?
* :func:`require_active_plan` -- is the tenant allowed to operate?

Every check raises a typed :class:`~api.errors.CarwashError`; the
application-level handler renders those as ``{"error": ...}`` JSON.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from carwash_core.billing import TenantBillingSnapshot, TenantPlanStatus, get_tenant_plan_status
from carwash_core.domain import TENANT_SLUG_HEADER, extract_tenant_slug_from_host
from carwash_core.state import InvoiceRepository, TenantRepository, TenantUserRepository
from carwash_core.state.tables import TenantTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import NotAMember, PlanBlocked, TenantNotFound, TenantNotSpecified
from api.middleware.rbac import TenantRole, parse_role
from api.security import GlobalRole

logger = logging.getLogger(__name__)

# Membership id reported for the implicit super-admin membership.
SUPER_ADMIN_MEMBER_ID = "super-admin"


@dataclass(frozen=True)
class TenantContext:
    """The tenant a request operates on, resolved once per request."""

    tenant_id: str
    slug: str
    tenant: TenantTable


@dataclass(frozen=True)
class Membership:
    """The caller's role inside a tenant."""

    member_id: str
    user_id: str
    tenant_id: str
    role: TenantRole
    is_super_admin: bool = False


def resolve_tenant_slug(headers: Mapping[str, str], base_domain: str) -> str | None:
    """Return the slug injected by the edge, falling back to the ``Host`` header."""
    slug = headers.get(TENANT_SLUG_HEADER)
    if slug:
        return slug.strip().lower()
    return extract_tenant_slug_from_host(headers.get("host", ""), base_domain)


async def require_tenant(
    session: AsyncSession,
    headers: Mapping[str, str],
    base_domain: str,
) -> TenantContext:
    """Resolve the active tenant of the current request.

    Raises
    ------
    TenantNotSpecified
        When neither the injected header nor the host yields a slug.
    TenantNotFound
        When the slug does not match an active tenant.
    """
    slug = resolve_tenant_slug(headers, base_domain)
    if not slug:
        raise TenantNotSpecified()

    tenant = await TenantRepository(session).get_active_by_slug(slug)
    if tenant is None:
        raise TenantNotFound()
    return TenantContext(tenant_id=tenant.id, slug=tenant.slug, tenant=tenant)


async def require_tenant_member(
    session: AsyncSession,
    user_id: str,
    tenant_id: str,
    global_role: GlobalRole | str,
) -> Membership:
    """Authorise *user_id* inside *tenant_id*.

    Super-admins receive an implicit ``OWNER`` membership of every tenant
    without a lookup.

    Raises
    ------
    NotAMember
        When no active membership exists.
    """
    if GlobalRole(global_role) is GlobalRole.SUPER_ADMIN:
        return Membership(
            member_id=SUPER_ADMIN_MEMBER_ID,
            user_id=user_id,
            tenant_id=tenant_id,
            role=TenantRole.OWNER,
            is_super_admin=True,
        )

    row = await TenantUserRepository(session, tenant_id).get_active_membership(user_id)
    if row is None:
        raise NotAMember()
    return Membership(member_id=row.id, user_id=user_id, tenant_id=tenant_id, role=parse_role(row.role))


async def load_plan_status(
    session: AsyncSession,
    tenant_id: str,
    *,
    now: datetime | None = None,
) -> TenantPlanStatus:
    """Load tenant, plan and oldest open invoice, then compute the status.

    Raises
    ------
    TenantNotFound
        When the tenant row no longer exists.
    """
    loaded = await TenantRepository(session).get_with_plan(tenant_id)
    if loaded is None:
        raise TenantNotFound()
    tenant, plan = loaded

    pending = await InvoiceRepository(session, tenant_id).get_oldest_open()
    snapshot = TenantBillingSnapshot(
        is_active=tenant.is_active,
        plan_id=tenant.plan_id,
        plan_price=plan.price if plan is not None else None,
        plan_name=plan.name if plan is not None else None,
        trial_ends_at=tenant.trial_ends_at,
        stripe_subscription_id=tenant.stripe_subscription_id,
    )
    return get_tenant_plan_status(snapshot, pending.id if pending is not None else None, now=now or datetime.now(UTC))


async def require_active_plan(
    session: AsyncSession,
    tenant_id: str,
    global_role: GlobalRole | str,
    *,
    now: datetime | None = None,
) -> TenantPlanStatus:
    """Fail unless the tenant's billing state lets it operate.

    Raises
    ------
    PlanBlocked
        Carrying the block reason and, where applicable, the invoice the
        caller should pay to lift the block.
    """
    if GlobalRole(global_role) is GlobalRole.SUPER_ADMIN:
        return TenantPlanStatus.unrestricted()

    status = await load_plan_status(session, tenant_id, now=now)
    if status.is_blocked and status.reason is not None:
        logger.info("Tenant %s blocked: %s", tenant_id, status.reason.value)
        raise PlanBlocked(status.reason.value, status.pending_invoice_id)
    return status
