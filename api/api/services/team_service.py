"""Team management: list members, change roles, deactivate members.

Permission to call each operation is checked by the router through
:func:`~api.middleware.rbac.require_permission`.  This service enforces the
rules that depend on the target member: the single ``OWNER`` of a tenant can
be neither assigned, changed nor removed here, and nobody removes themselves.
"""

from __future__ import annotations

import logging
from typing import Any

from carwash_core.state import TenantUserRepository
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import InvalidRequest, ResourceNotFound
from api.middleware.rbac import TenantRole, parse_role

logger = logging.getLogger(__name__)


class TeamService:
    """Membership operations inside one tenant.

    Parameters
    ----------
    session:
        Active database session.
    tenant_id:
        The tenant whose team is managed.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._members = TenantUserRepository(session, tenant_id)

    async def list_members(self) -> dict[str, Any]:
        """Return the active members of the tenant."""
        rows = await self._members.list_members()
        members = [
            {
                "id": membership.id,
                "userId": user.id,
                "name": user.name,
                "email": user.email,
                "role": membership.role,
                "isActive": membership.is_active,
                "createdAt": membership.created_at.isoformat() if membership.created_at else None,
            }
            for membership, user in rows
        ]
        return {"members": members, "total": len(members)}

    async def update_role(self, member_id: str, new_role: str) -> dict[str, Any]:
        """Change a member's role to ``ADMIN`` or ``EMPLOYEE``.

        Raises
        ------
        InvalidRequest
            The role is unknown, is ``OWNER``, or the target is the owner.
        ResourceNotFound
            No such member in this tenant.
        """
        try:
            role = parse_role(new_role)
        except ValueError as exc:
            raise InvalidRequest(f"Invalid role: {new_role}") from exc
        if role is TenantRole.OWNER:
            raise InvalidRequest("The owner role cannot be assigned")

        target = await self._members.get(member_id)
        if target is None:
            raise ResourceNotFound("Member not found")
        if target.role == TenantRole.OWNER.name:
            raise InvalidRequest("The owner's role cannot be changed")

        await self._members.update_role(member_id, role.name)
        logger.info("Member %s of tenant %s is now %s", member_id, self._tenant_id, role.name)
        return {"id": member_id, "role": role.name}

    async def remove_member(self, member_id: str, *, acting_user_id: str) -> dict[str, Any]:
        """Deactivate a member of the tenant.

        Raises
        ------
        InvalidRequest
            The target is the owner or the caller themselves.
        ResourceNotFound
            No such active member in this tenant.
        """
        target = await self._members.get(member_id)
        if target is None or not target.is_active:
            raise ResourceNotFound("Member not found")
        if target.role == TenantRole.OWNER.name:
            raise InvalidRequest("The owner cannot be removed")
        if target.user_id == acting_user_id:
            raise InvalidRequest("You cannot remove yourself")

        await self._members.deactivate(member_id)
        logger.info("Member %s removed from tenant %s", member_id, self._tenant_id)
        return {"message": "Member removed"}
