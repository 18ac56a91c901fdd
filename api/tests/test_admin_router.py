"""Tests for the platform-administration tenant routes under ``/api/admin``.

Covers:
- Onboarding: free plan starts a 30-day trial, paid plan has no period end,
  owner user created or reused
- Slug validation and uniqueness, unknown plans
- Editing contact data, isActive and the connected plan
- Deactivation keeps the row and blocks the tenant
- Listing with search, tenant detail with members and plan status
- Non-administrators are turned away
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from carwash_core.state import TenantRepository, TenantUserRepository, UserRepository

from api.dependencies import get_super_admin
from api.errors import SuperAdminRequired
from api.security import GlobalRole, SessionClaims


@pytest.fixture()
def admin_headers(auth_headers):
    return auth_headers("platform-admin", global_role=GlobalRole.SUPER_ADMIN, tenant_slug=None)


class TestCreateTenant:
    @pytest.mark.asyncio
    async def test_free_plan_starts_trial_with_new_owner(
        self, apex_client, world, admin_headers, session_factory
    ) -> None:
        before = datetime.now(UTC)
        resp = await apex_client.post(
            "/api/admin/tenants",
            json={"name": "Splash", "slug": "Splash-Wash", "planId": world.free_plan_id, "ownerEmail": "new@splash.test"},
            headers=admin_headers,
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["slug"] == "splash-wash"
        assert body["isActive"] is True
        assert body["plan"]["name"] == "Trial"
        trial_ends = datetime.fromisoformat(body["trialEndsAt"])
        assert before + timedelta(days=30) <= trial_ends <= datetime.now(UTC) + timedelta(days=30)

        async with session_factory() as session:
            owner = await UserRepository(session).get_by_email("new@splash.test")
            assert owner is not None
            membership = await TenantUserRepository(session, body["id"]).get_active_membership(owner.id)
        assert membership.role == "OWNER"

    @pytest.mark.asyncio
    async def test_paid_plan_reuses_existing_user(self, apex_client, world, admin_headers, session_factory) -> None:
        resp = await apex_client.post(
            "/api/admin/tenants",
            json={"name": "Second", "slug": "second", "planId": world.basic_plan_id, "ownerEmail": "Owner@Demo.test"},
            headers=admin_headers,
        )

        assert resp.status_code == 201
        assert resp.json()["trialEndsAt"] is None
        async with session_factory() as session:
            membership = await TenantUserRepository(session, resp.json()["id"]).get_active_membership(
                world.owner_user_id
            )
        assert membership is not None

    @pytest.mark.asyncio
    async def test_without_plan(self, apex_client, world, admin_headers) -> None:
        resp = await apex_client.post("/api/admin/tenants", json={"name": "Bare", "slug": "bare"}, headers=admin_headers)

        assert resp.status_code == 201
        assert resp.json()["planId"] is None
        assert resp.json()["plan"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("slug", ["demo", "admin", "no_underscores", "ab"])
    async def test_bad_or_taken_slug(self, apex_client, world, admin_headers, slug: str) -> None:
        resp = await apex_client.post("/api/admin/tenants", json={"name": "X", "slug": slug}, headers=admin_headers)

        assert resp.status_code == 400
        assert "slug" in resp.json()["error"].lower()

    @pytest.mark.asyncio
    async def test_unknown_plan(self, apex_client, world, admin_headers) -> None:
        resp = await apex_client.post(
            "/api/admin/tenants", json={"name": "X", "slug": "xwash", "planId": "missing"}, headers=admin_headers
        )

        assert resp.status_code == 404
        assert resp.json() == {"error": "Plan not found"}


class TestUpdateTenant:
    @pytest.mark.asyncio
    async def test_partial_update_leaves_other_fields(self, apex_client, world, admin_headers) -> None:
        resp = await apex_client.put(
            f"/api/admin/tenants/{world.tenant_id}", json={"phone": "+57 300 000 0000"}, headers=admin_headers
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["phone"] == "+57 300 000 0000"
        assert body["name"] == "Demo Car Wash"
        assert body["planId"] == world.free_plan_id

    @pytest.mark.asyncio
    async def test_connect_and_clear_plan(self, apex_client, world, admin_headers, session_factory) -> None:
        resp = await apex_client.put(
            f"/api/admin/tenants/{world.tenant_id}", json={"planId": world.pro_plan_id}, headers=admin_headers
        )
        assert resp.json()["plan"]["name"] == "Pro"

        resp = await apex_client.put(f"/api/admin/tenants/{world.tenant_id}", json={"planId": None}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["planId"] is None

        async with session_factory() as session:
            tenant = await TenantRepository(session).get(world.tenant_id)
        assert tenant.plan_id is None

    @pytest.mark.asyncio
    async def test_null_name_is_ignored(self, apex_client, world, admin_headers) -> None:
        resp = await apex_client.put(f"/api/admin/tenants/{world.tenant_id}", json={"name": None}, headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json()["name"] == "Demo Car Wash"

    @pytest.mark.asyncio
    async def test_reactivate(self, apex_client, world, admin_headers) -> None:
        await apex_client.delete(f"/api/admin/tenants/{world.tenant_id}", headers=admin_headers)

        resp = await apex_client.put(f"/api/admin/tenants/{world.tenant_id}", json={"isActive": True}, headers=admin_headers)

        assert resp.json()["isActive"] is True

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, apex_client, world, admin_headers) -> None:
        resp = await apex_client.put("/api/admin/tenants/missing", json={"name": "X"}, headers=admin_headers)
        assert resp.status_code == 404


class TestDeactivateTenant:
    @pytest.mark.asyncio
    async def test_deactivation_keeps_row_and_blocks_tenant(
        self, apex_client, client, world, admin_headers, auth_headers, session_factory
    ) -> None:
        resp = await apex_client.delete(f"/api/admin/tenants/{world.tenant_id}", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json() == {"message": "Tenant deactivated"}
        async with session_factory() as session:
            tenant = await TenantRepository(session).get(world.tenant_id)
        assert tenant is not None
        assert tenant.is_active is False

        blocked = await client.get("/api/tenant/team", headers=auth_headers(world.owner_user_id))
        assert blocked.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, apex_client, world, admin_headers) -> None:
        resp = await apex_client.delete("/api/admin/tenants/missing", headers=admin_headers)
        assert resp.status_code == 404


class TestReadTenants:
    @pytest.mark.asyncio
    async def test_list_with_search(self, apex_client, world, admin_headers) -> None:
        await apex_client.post("/api/admin/tenants", json={"name": "Shiny Cars", "slug": "shiny"}, headers=admin_headers)

        everything = (await apex_client.get("/api/admin/tenants", headers=admin_headers)).json()
        assert everything["total"] == 2
        assert everything["pages"] == 1

        found = (await apex_client.get("/api/admin/tenants", params={"search": "SHINY"}, headers=admin_headers)).json()
        assert [t["slug"] for t in found["tenants"]] == ["shiny"]

        nothing = (await apex_client.get("/api/admin/tenants", params={"search": "100%"}, headers=admin_headers)).json()
        assert nothing["total"] == 0

    @pytest.mark.asyncio
    async def test_detail_includes_members_and_status(self, apex_client, world, admin_headers) -> None:
        resp = await apex_client.get(f"/api/admin/tenants/{world.tenant_id}", headers=admin_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert {m["role"] for m in body["members"]} == {"OWNER", "ADMIN", "EMPLOYEE"}
        assert body["planStatus"]["isBlocked"] is False
        assert body["planStatus"]["planName"] == "Trial"


class TestAdminOnly:
    @pytest.mark.asyncio
    async def test_tenant_owner_is_redirected(self, apex_client, world, auth_headers) -> None:
        resp = await apex_client.get("/api/admin/tenants", headers=auth_headers(world.owner_user_id))

        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    @pytest.mark.asyncio
    async def test_anonymous_is_sent_to_login(self, apex_client, world) -> None:
        resp = await apex_client.get("/api/admin/tenants")

        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/login?callbackUrl=")

    def test_dependency_rejects_regular_users(self) -> None:
        with pytest.raises(SuperAdminRequired):
            get_super_admin(SessionClaims(sub="user-1"))

    def test_dependency_admits_super_admin(self) -> None:
        claims = SessionClaims(sub="root", global_role=GlobalRole.SUPER_ADMIN)
        assert get_super_admin(claims) is claims
