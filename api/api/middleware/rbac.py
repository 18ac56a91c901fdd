"""Tenant role model and permission guards.

Defines the three-tier tenant role hierarchy (EMPLOYEE, ADMIN, OWNER).
Each role inherits all permissions from the roles below it.  The global
``SUPER_ADMIN`` role never reaches these guards as a role of its own: the
access gate hands super-admins a synthetic ``OWNER`` membership.

Usage in routers::

    from api.middleware.rbac import Permission, require_permission

    @router.post("/billing")
    async def change_plan(
        ...,
        membership: Membership = Depends(require_permission(Permission.MANAGE_BILLING)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum
from typing import Any

from fastapi import Depends

from api.errors import InsufficientRole

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class TenantRole(IntEnum):
    """Tenant-scoped roles ordered by privilege level."""

    EMPLOYEE = 0
    ADMIN = 1
    OWNER = 2


_ROLE_LOOKUP: dict[str, TenantRole] = {r.name: r for r in TenantRole}


def parse_role(raw: str) -> TenantRole:
    """Convert a stored ``tenant_users.role`` value into a :class:`TenantRole`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens checked by endpoint guards."""

    # Billing
    VIEW_BILLING = "view:billing"
    MANAGE_BILLING = "manage:billing"
    MAKE_PAYMENTS = "make:payments"

    # Team
    VIEW_TEAM = "view:team"
    REMOVE_MEMBERS = "remove:members"
    CHANGE_ROLES = "change:roles"


_EMPLOYEE_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.VIEW_BILLING,
        Permission.VIEW_TEAM,
    }
)

_ADMIN_PERMS: frozenset[Permission] = _EMPLOYEE_PERMS | frozenset(
    {
        Permission.MANAGE_BILLING,
        Permission.MAKE_PAYMENTS,
        Permission.REMOVE_MEMBERS,
    }
)

_OWNER_PERMS: frozenset[Permission] = _ADMIN_PERMS | frozenset(
    {
        Permission.CHANGE_ROLES,
    }
)

ROLE_PERMISSIONS: dict[TenantRole, frozenset[Permission]] = {
    TenantRole.EMPLOYEE: _EMPLOYEE_PERMS,
    TenantRole.ADMIN: _ADMIN_PERMS,
    TenantRole.OWNER: _OWNER_PERMS,
}


def role_has_permission(role: TenantRole, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependency: permission guard on the resolved membership
# ---------------------------------------------------------------------------


def require_permission(permission: Permission) -> Callable[..., Any]:
    """Return a FastAPI dependency that enforces a specific permission.

    The guard runs the full access gate first (tenant resolution and
    membership) and returns the resolved :class:`Membership` so handlers
    can inspect the caller's role and user id.

    Raises
    ------
    InsufficientRole
        When the member's role does not grant *permission*.
    """
    from api.dependencies import get_membership

    def _guard(membership: Any = Depends(get_membership)) -> Any:
        if not role_has_permission(membership.role, permission):
            logger.info(
                "Permission denied: role=%s requires %s",
                membership.role.name,
                permission.value,
            )
            raise InsufficientRole()
        return membership

    return _guard
