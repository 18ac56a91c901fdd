"""Tests for the tenant role model.

Covers:
- Role ordering and parsing
- Permission mapping per role, each role inheriting the one below
- require_permission guard on a resolved membership
"""

from __future__ import annotations

import pytest

from api.errors import InsufficientRole
from api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    TenantRole,
    parse_role,
    require_permission,
    role_has_permission,
)
from api.services.access_gate import Membership


class TestRoles:
    def test_ordering(self) -> None:
        assert TenantRole.EMPLOYEE < TenantRole.ADMIN < TenantRole.OWNER

    @pytest.mark.parametrize(("raw", "expected"), [("owner", TenantRole.OWNER), (" Admin ", TenantRole.ADMIN)])
    def test_parse_role(self, raw: str, expected: TenantRole) -> None:
        assert parse_role(raw) is expected

    def test_parse_unknown_role(self) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("MANAGER")


class TestPermissions:
    def test_employee(self) -> None:
        assert ROLE_PERMISSIONS[TenantRole.EMPLOYEE] == {Permission.VIEW_BILLING, Permission.VIEW_TEAM}

    def test_admin_adds_billing_and_removal(self) -> None:
        assert ROLE_PERMISSIONS[TenantRole.ADMIN] - ROLE_PERMISSIONS[TenantRole.EMPLOYEE] == {
            Permission.MANAGE_BILLING,
            Permission.MAKE_PAYMENTS,
            Permission.REMOVE_MEMBERS,
        }

    def test_only_owner_changes_roles(self) -> None:
        assert role_has_permission(TenantRole.OWNER, Permission.CHANGE_ROLES)
        assert not role_has_permission(TenantRole.ADMIN, Permission.CHANGE_ROLES)

    @pytest.mark.parametrize("permission", list(Permission))
    def test_owner_has_everything(self, permission: Permission) -> None:
        assert role_has_permission(TenantRole.OWNER, permission)


def _membership(role: TenantRole) -> Membership:
    return Membership(tenant_id="t-1", user_id="u-1", member_id="m-1", role=role)


class TestRequirePermission:
    def test_guard_returns_membership(self) -> None:
        guard = require_permission(Permission.MAKE_PAYMENTS)
        membership = _membership(TenantRole.ADMIN)
        assert guard(membership) is membership

    def test_guard_rejects_insufficient_role(self) -> None:
        guard = require_permission(Permission.MAKE_PAYMENTS)
        with pytest.raises(InsufficientRole):
            guard(_membership(TenantRole.EMPLOYEE))
