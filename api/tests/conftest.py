"""Shared fixtures for the car-wash API tests.

Provides an in-memory SQLite state store seeded with plans, a tenant and
its members, session tokens signed with the test secret, a PayU client
backed by ``httpx.MockTransport``, and an httpx ``AsyncClient`` wired to
the FastAPI app through dependency overrides.
"""

from __future__ import annotations

import json
import os
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import httpx
import pytest
import pytest_asyncio

# Settings are read from the environment by the edge middleware, so the
# test values must be in place BEFORE application modules are imported.
_TEST_AUTH_SECRET = "test-auth-secret-for-carwash-tests"
_TEST_CRON_SECRET = "test-cron-secret"
TEST_APP_DOMAIN = "carwash.test"
TEST_PAYU_API_KEY = "4Vj8eK4rloUd272L48hsrarnUA"
TEST_PAYU_MERCHANT_ID = "508029"

os.environ.setdefault("API_AUTH_SECRET", _TEST_AUTH_SECRET)
os.environ.setdefault("API_CRON_SECRET", _TEST_CRON_SECRET)
os.environ.setdefault("API_APP_DOMAIN", TEST_APP_DOMAIN)
os.environ.setdefault("API_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("API_PAYU_API_KEY", TEST_PAYU_API_KEY)
os.environ.setdefault("API_PAYU_MERCHANT_ID", TEST_PAYU_MERCHANT_ID)
os.environ.setdefault("API_STRIPE_WEBHOOK_SECRET", "whsec_test")

from carwash_core.state import PlanRepository, TenantRepository, TenantUserRepository, UserRepository
from carwash_core.state.sqlite_adapter import create_local_tables, get_local_engine
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings
from api.dependencies import (
    get_db_session,
    get_payu_client,
    get_settings,
    get_token_manager,
)
from api.main import create_app
from api.security import GlobalRole, SessionTokenManager, TokenConfig
from api.services.payu_client import PayUClient

# ---------------------------------------------------------------------------
# Settings and tokens
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return the settings the app under test runs with."""
    return get_settings()


@pytest.fixture()
def token_manager() -> SessionTokenManager:
    """Return a token manager signing with the test secret."""
    return SessionTokenManager(TokenConfig(secret=SecretStr(_TEST_AUTH_SECRET)))


@pytest.fixture()
def make_token(token_manager: SessionTokenManager) -> Callable[..., str]:
    """Return a factory issuing session tokens for arbitrary identities."""

    def _make(
        user_id: str,
        *,
        tenant_slug: str | None = "demo",
        global_role: GlobalRole | str = GlobalRole.USER,
        email: str | None = None,
    ) -> str:
        return token_manager.issue(user_id, email=email, global_role=global_role, tenant_slug=tenant_slug)

    return _make


@pytest.fixture()
def auth_headers(make_token: Callable[..., str]) -> Callable[..., dict[str, str]]:
    """Return a factory building Bearer headers for an identity."""

    def _headers(user_id: str, **kwargs: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}

    return _headers


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Provide an in-memory SQLite engine with every table created."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Provide a session on the test store; tests commit explicitly."""
    async with session_factory() as session:
        yield session


@dataclass
class BillingWorld:
    """Identifiers of the seeded fixture data."""

    free_plan_id: str
    basic_plan_id: str
    pro_plan_id: str
    tenant_id: str
    slug: str
    owner_user_id: str
    owner_member_id: str
    admin_user_id: str
    admin_member_id: str
    employee_user_id: str
    employee_member_id: str
    outsider_user_id: str


@pytest_asyncio.fixture
async def world(session_factory: async_sessionmaker[AsyncSession]) -> BillingWorld:
    """Seed three plans and tenant ``demo`` with an owner, an admin and an employee.

    The tenant is on the free plan with a trial running for ten more days.
    """
    async with session_factory() as session:
        plans = PlanRepository(session)
        free = await plans.create(name="Trial", price=Decimal("0"))
        basic = await plans.create(name="Basic", price=Decimal("50000"), stripe_price_id="price_basic")
        pro = await plans.create(name="Pro", price=Decimal("120000"))

        tenant = await TenantRepository(session).create(
            slug="demo",
            name="Demo Car Wash",
            email="owner@demo.test",
            plan_id=free.id,
            trial_ends_at=datetime.now(UTC) + timedelta(days=10),
        )

        users = UserRepository(session)
        owner = await users.create(email="owner@demo.test", name="Olivia Owner")
        admin = await users.create(email="admin@demo.test", name="Adam Admin")
        employee = await users.create(email="employee@demo.test", name="Eve Employee")
        outsider = await users.create(email="outsider@other.test", name="Oscar Outsider")

        members = TenantUserRepository(session, tenant.id)
        owner_m = await members.add_member(owner.id, "OWNER")
        admin_m = await members.add_member(admin.id, "ADMIN")
        employee_m = await members.add_member(employee.id, "EMPLOYEE")
        await session.commit()

        return BillingWorld(
            free_plan_id=free.id,
            basic_plan_id=basic.id,
            pro_plan_id=pro.id,
            tenant_id=tenant.id,
            slug=tenant.slug,
            owner_user_id=owner.id,
            owner_member_id=owner_m.id,
            admin_user_id=admin.id,
            admin_member_id=admin_m.id,
            employee_user_id=employee.id,
            employee_member_id=employee_m.id,
            outsider_user_id=outsider.id,
        )


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------


@dataclass
class GatewayStub:
    """Canned PayU answers keyed by command, plus a log of requests seen."""

    responses: dict[str, Any]
    requests: list[dict[str, Any]]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        answer = self.responses.get(body.get("command"))
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, httpx.Response):
            return answer
        if answer is None:
            return httpx.Response(200, json={"code": "ERROR", "error": "unexpected command"})
        return httpx.Response(200, json=answer)


@pytest.fixture()
def gateway() -> GatewayStub:
    """Return an empty gateway stub; tests fill ``responses`` per command."""
    return GatewayStub(responses={}, requests=[])


@pytest_asyncio.fixture
async def payu_client(gateway: GatewayStub) -> AsyncGenerator[PayUClient, None]:
    """Provide a sandbox PayU client whose HTTP traffic hits the stub."""
    client = PayUClient(
        api_key=SecretStr(TEST_PAYU_API_KEY),
        api_login=SecretStr("pRRXKOl8ikMmt9u"),
        merchant_id=TEST_PAYU_MERCHANT_ID,
        account_id="512321",
        test_mode=True,
        transport=httpx.MockTransport(gateway.handler),
    )
    yield client
    await client.close()


# ---------------------------------------------------------------------------
# Application client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    token_manager: SessionTokenManager,
    payu_client: PayUClient,
) -> Any:
    """Return the FastAPI app with the store, tokens and gateway overridden."""
    application = create_app()

    async def _session_override() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_db_session] = _session_override
    application.dependency_overrides[get_token_manager] = lambda: token_manager
    application.dependency_overrides[get_payu_client] = lambda: payu_client
    return application


@pytest_asyncio.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx client addressing tenant ``demo`` by subdomain."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=f"http://demo.{TEST_APP_DOMAIN}") as ac:
        yield ac


@pytest_asyncio.fixture
async def apex_client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx client addressing the apex domain."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=f"http://{TEST_APP_DOMAIN}") as ac:
        yield ac
