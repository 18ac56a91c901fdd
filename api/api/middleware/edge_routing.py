"""Edge routing: route classification, identity, and tenant header injection.

Runs once per request before any handler.  It never raises the typed
access-gate errors; every decision is either a pass-through, a redirect
or (for tenant API routes without a tenant) a 400 JSON response.

Decision order, first match wins:

1. Public prefixes (auth API, webhooks, cron, plans, landing) pass.
2. ``/login`` and ``/register`` pass for anonymous callers.
3. Admin prefixes require a super-admin identity.
4. Anonymous callers on any other path go to ``/login?callbackUrl=...``.
5. Signed-in callers on ``/login``/``/register`` are sent home.
6. Tenant routes without a resolvable tenant are relayed to the caller's
   home tenant, sent to ``/admin`` or rejected.
7. A resolved slug is injected as ``x-tenant-slug``.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote, urlencode

from carwash_core.domain import (
    TENANT_SLUG_HEADER,
    build_tenant_url,
    extract_tenant_slug_from_host,
    supports_subdomains,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from api.config import APISettings
from api.security import InvalidSessionToken, SessionClaims, SessionTokenManager
from api.services.session_relay import LOGIN_PATH, relay_url

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Route tables
# ---------------------------------------------------------------------------

# Exact paths that never require a session.
_PUBLIC_PATHS: frozenset[str] = frozenset({"/", "/favicon.ico", "/ready"})

# Prefixes that never require a session.  Cron handlers authenticate with
# the shared secret header instead.
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/api/auth",
    "/api/webhooks",
    "/api/cron",
    "/api/plans",
    "/api/public-stats",
    "/api/health",
    "/docs",
    "/redoc",
    "/openapi.json",
)

_AUTH_PAGES: tuple[str, ...] = ("/login", "/register")

_ADMIN_PREFIXES: tuple[str, ...] = ("/admin", "/api/admin")

TENANT_UI_ROUTES: tuple[str, ...] = (
    "/dashboard",
    "/clients",
    "/vehicles",
    "/orders",
    "/services",
    "/reports",
    "/billing",
    "/settings",
    "/team",
)

TENANT_API_ROUTES: tuple[str, ...] = (
    "/api/tenant",
    "/api/clients",
    "/api/vehicles",
    "/api/orders",
    "/api/services",
    "/api/reports",
)

# UI paths a plan-blocked tenant can still reach to resolve the block.
PLAN_EXEMPT_PATHS: tuple[str, ...] = ("/billing", "/settings")

_BEARER_PREFIX = "bearer "


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    """Return ``True`` if *path* equals a prefix or lies beneath it."""
    return any(path == p or path.startswith(f"{p}/") for p in prefixes)


def is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS or _matches(path, _PUBLIC_PREFIXES)


def is_auth_page(path: str) -> bool:
    return _matches(path, _AUTH_PAGES)


def is_admin_path(path: str) -> bool:
    return _matches(path, _ADMIN_PREFIXES)


def is_tenant_api_route(path: str) -> bool:
    return _matches(path, TENANT_API_ROUTES)


def requires_tenant(path: str) -> bool:
    return is_tenant_api_route(path) or _matches(path, TENANT_UI_ROUTES)


def _login_redirect(callback: str) -> RedirectResponse:
    query = urlencode({"callbackUrl": callback}, quote_via=quote, safe="/")
    return RedirectResponse(f"{LOGIN_PATH}?{query}", status_code=302)


def _original_path(request: Request) -> str:
    path = request.url.path
    if request.url.query:
        return f"{path}?{request.url.query}"
    return path


def _set_tenant_header(scope: dict[str, Any], slug: str | None) -> None:
    """Replace any client-supplied tenant header with *slug* (or drop it)."""
    name = TENANT_SLUG_HEADER.encode("latin-1")
    headers = [(k, v) for k, v in scope.get("headers", []) if k.lower() != name]
    if slug:
        headers.append((name, slug.encode("latin-1")))
    scope["headers"] = headers


class EdgeRoutingMiddleware(BaseHTTPMiddleware):
    """Starlette middleware applying the per-request routing decisions.

    On each request the middleware:

    1. Strips any client-supplied ``x-tenant-slug`` header.
    2. Verifies the session token from the cookie or a Bearer header and
       stores the identity on ``request.state.identity`` (``None`` when
       absent or invalid).
    3. Classifies the path and passes, redirects or rejects.

    Parameters
    ----------
    app:
        The wrapped ASGI application.
    settings:
        Application settings; loaded lazily from the environment when
        omitted.
    token_manager:
        Session token verifier; built from *settings* when omitted.
    """

    def __init__(
        self,
        app: Any,
        settings: APISettings | None = None,
        token_manager: SessionTokenManager | None = None,
    ) -> None:
        super().__init__(app)
        self._settings = settings
        self._token_manager = token_manager

    # -- Lazy collaborators --------------------------------------------------

    def _get_settings(self) -> APISettings:
        if self._settings is None:
            from api.dependencies import get_settings

            self._settings = get_settings()
        return self._settings

    def _get_token_manager(self) -> SessionTokenManager:
        if self._token_manager is None:
            from api.dependencies import get_token_manager

            self._token_manager = get_token_manager()
        return self._token_manager

    # -- Identity ------------------------------------------------------------

    def _read_identity(self, request: Request) -> SessionClaims | None:
        token = request.cookies.get(self._get_settings().session_cookie_name)
        if not token:
            auth_header = request.headers.get("authorization", "")
            if auth_header.lower().startswith(_BEARER_PREFIX):
                token = auth_header[len(_BEARER_PREFIX) :].strip()
        if not token:
            return None
        try:
            return self._get_token_manager().validate(token)
        except InvalidSessionToken:
            logger.debug("Ignoring invalid session token on %s", request.url.path)
            return None

    # -- Dispatch ------------------------------------------------------------

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        settings = self._get_settings()
        path = request.url.path
        _set_tenant_header(request.scope, None)

        identity = self._read_identity(request)
        request.state.identity = identity

        if is_public_path(path):
            return await call_next(request)

        if is_auth_page(path):
            if identity is None:
                return await call_next(request)
            return await self._redirect_signed_in(request, identity, call_next)

        if is_admin_path(path):
            if identity is None:
                return _login_redirect(_original_path(request))
            if not identity.is_super_admin:
                return RedirectResponse("/", status_code=302)
            return await call_next(request)

        if identity is None:
            return _login_redirect(_original_path(request))

        slug = extract_tenant_slug_from_host(request.headers.get("host", ""), settings.app_domain)
        if slug is None and requires_tenant(path):
            rejected = self._handle_missing_tenant(request, identity)
            if rejected is not None:
                return rejected
            return await call_next(request)

        if slug is not None:
            _set_tenant_header(request.scope, slug)
            request.state.tenant_slug = slug
        return await call_next(request)

    async def _redirect_signed_in(
        self,
        request: Request,
        identity: SessionClaims,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Send an authenticated caller away from the login/register pages."""
        if identity.is_super_admin:
            return RedirectResponse("/admin", status_code=302)
        if identity.tenant_slug:
            return self._relay_to_tenant(identity.tenant_slug, "/dashboard")
        return await call_next(request)

    def _handle_missing_tenant(self, request: Request, identity: SessionClaims) -> Response | None:
        """Answer a tenant route hit without a tenant; ``None`` lets it pass."""
        settings = self._get_settings()
        path = request.url.path
        is_api = is_tenant_api_route(path)

        if identity.is_super_admin:
            if is_api:
                return JSONResponse(
                    status_code=400,
                    content={"error": "Tenant not specified; open this route on a tenant subdomain"},
                )
            return RedirectResponse("/admin", status_code=302)

        if identity.tenant_slug:
            if not supports_subdomains(settings.app_domain):
                # IP and shared-platform hosts cannot carry a subdomain; the
                # home tenant travels in the injected header instead.
                _set_tenant_header(request.scope, identity.tenant_slug)
                request.state.tenant_slug = identity.tenant_slug
                return None
            return self._relay_to_tenant(identity.tenant_slug, _original_path(request))

        if is_api:
            return JSONResponse(status_code=400, content={"error": "Tenant not specified"})
        return RedirectResponse(LOGIN_PATH, status_code=302)

    def _relay_to_tenant(self, slug: str, path: str) -> RedirectResponse:
        settings = self._get_settings()
        target = build_tenant_url(slug, path, settings.app_domain, production=settings.is_production)
        logger.info("Relaying session to tenant %s", slug)
        return RedirectResponse(relay_url(target), status_code=302)
