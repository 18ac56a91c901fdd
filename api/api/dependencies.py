"""FastAPI dependency injection for settings, sessions, tokens, and tenant context."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from carwash_core.billing import TenantPlanStatus
from carwash_core.state.database import get_engine
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.errors import NotAuthenticated, SuperAdminRequired
from api.security import SessionClaims, SessionTokenManager, TokenConfig
from api.services.access_gate import (
    Membership,
    TenantContext,
    require_active_plan,
    require_tenant,
    require_tenant_member,
)
from api.services.payu_client import PayUClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that operate outside FastAPI's dependency injection
    (the reconciliation scheduler) and need direct session access.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` scoped to one request.

    The session commits on clean exit and rolls back on exception, which
    makes every endpoint's writes a single all-or-nothing transaction.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

_token_manager: SessionTokenManager | None = None


def init_token_manager(settings: APISettings) -> SessionTokenManager:
    """Create and cache the global :class:`SessionTokenManager`."""
    global _token_manager  # noqa: PLW0603
    _token_manager = SessionTokenManager(
        TokenConfig(secret=settings.auth_secret, ttl_seconds=settings.session_ttl_seconds)
    )
    return _token_manager


def get_token_manager() -> SessionTokenManager:
    """Return the token manager, building it from settings on first use."""
    if _token_manager is None:
        return init_token_manager(get_settings())
    return _token_manager


TokenManagerDep = Annotated[SessionTokenManager, Depends(get_token_manager)]

# ---------------------------------------------------------------------------
# Payment gateway client
# ---------------------------------------------------------------------------

_payu_client: PayUClient | None = None


def init_payu_client(settings: APISettings) -> PayUClient:
    """Create and cache the global :class:`PayUClient`."""
    global _payu_client  # noqa: PLW0603
    _payu_client = PayUClient.from_settings(settings)
    return _payu_client


async def dispose_payu_client() -> None:
    """Close the gateway client's underlying HTTP pool."""
    global _payu_client  # noqa: PLW0603
    if _payu_client is not None:
        await _payu_client.close()
        _payu_client = None


def get_payu_client() -> PayUClient:
    """Return the cached :class:`PayUClient` singleton."""
    if _payu_client is None:
        raise RuntimeError(
            "Payment gateway client has not been initialised. Ensure init_payu_client() is called during startup."
        )
    return _payu_client


PayUClientDep = Annotated[PayUClient, Depends(get_payu_client)]

# ---------------------------------------------------------------------------
# Identity (populated by EdgeRoutingMiddleware)
# ---------------------------------------------------------------------------


def get_identity(request: Request) -> SessionClaims:
    """Return the verified identity attached to the request."""
    identity: SessionClaims | None = getattr(request.state, "identity", None)
    if identity is None:
        raise NotAuthenticated()
    return identity


IdentityDep = Annotated[SessionClaims, Depends(get_identity)]

# ---------------------------------------------------------------------------
# Tenant context and membership (access gate)
# ---------------------------------------------------------------------------


async def get_tenant_context(request: Request, session: SessionDep, settings: SettingsDep) -> TenantContext:
    """Resolve the tenant of the current request."""
    return await require_tenant(session, request.headers, settings.app_domain)


TenantDep = Annotated[TenantContext, Depends(get_tenant_context)]


async def get_membership(session: SessionDep, identity: IdentityDep, tenant: TenantDep) -> Membership:
    """Authorise the identity against the resolved tenant."""
    return await require_tenant_member(session, identity.sub, tenant.tenant_id, identity.global_role)


MemberDep = Annotated[Membership, Depends(get_membership)]


async def get_active_plan(session: SessionDep, identity: IdentityDep, membership: MemberDep) -> TenantPlanStatus:
    """Refuse the request while the tenant is plan-blocked."""
    return await require_active_plan(session, membership.tenant_id, identity.global_role)


ActivePlanDep = Annotated[TenantPlanStatus, Depends(get_active_plan)]


def get_super_admin(identity: IdentityDep) -> SessionClaims:
    """Admit only platform administrators."""
    if not identity.is_super_admin:
        raise SuperAdminRequired()
    return identity


SuperAdminDep = Annotated[SessionClaims, Depends(get_super_admin)]
