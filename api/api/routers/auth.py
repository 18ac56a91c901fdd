"""Authentication endpoints: cross-subdomain session relay and slug availability.

Credential verification lives outside this service; sessions arrive as signed
tokens.  The relay endpoint moves an existing session from the apex domain to
a tenant subdomain (see :mod:`api.services.session_relay`).

Security model:
- The relayed cookie is HttpOnly, SameSite=Lax, scoped to ``/`` on the
  receiving host, and Secure in production.
- A token that fails verification leads to ``/login`` without detail and no
  cookie is written.
"""

from __future__ import annotations

import logging

from carwash_core.domain import validate_slug
from carwash_core.state import TenantRepository
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.dependencies import SessionDep, SettingsDep, TokenManagerDep
from api.schemas import ErrorResponse, SlugCheckResponse
from api.services.session_relay import SessionRelay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _request_scheme(request: Request) -> str:
    """Return the scheme the browser used, honouring a reverse proxy."""
    forwarded = request.headers.get("x-forwarded-proto")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.url.scheme


async def _relay(
    request: Request,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    callback_url: str | None,
    token: str | None,
) -> Response:
    relay = SessionRelay(tokens, settings.app_domain)
    decision = relay.handle(
        callback_url=callback_url,
        token=token,
        session_cookie=request.cookies.get(settings.session_cookie_name),
        scheme=_request_scheme(request),
        host=request.headers.get("host", request.url.netloc),
    )
    if decision.error is not None:
        return JSONResponse(status_code=400, content={"error": decision.error})

    response = RedirectResponse(decision.location or "/login", status_code=302)
    if decision.cookie_token is not None:
        response.set_cookie(
            key=settings.session_cookie_name,
            value=decision.cookie_token,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            max_age=settings.session_ttl_seconds,
            path="/",
        )
    return response


@router.get(
    "/session-relay",
    response_class=RedirectResponse,
    status_code=302,
    responses={400: {"model": ErrorResponse}},
)
async def session_relay(
    request: Request,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    callback_url: str | None = Query(default=None, alias="callbackUrl"),
    token: str | None = Query(default=None),
) -> Response:
    """Run one hop of the session relay and redirect."""
    return await _relay(request, settings, tokens, callback_url, token)


@router.post(
    "/session-relay",
    response_class=RedirectResponse,
    status_code=302,
    responses={400: {"model": ErrorResponse}},
)
async def session_relay_post(
    request: Request,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    callback_url: str | None = Query(default=None, alias="callbackUrl"),
    token: str | None = Query(default=None),
) -> Response:
    """Same as the GET variant; some login forms post to the relay."""
    return await _relay(request, settings, tokens, callback_url, token)


@router.get("/check-slug", response_model=SlugCheckResponse)
async def check_slug(
    session: SessionDep,
    slug: str = Query(default=""),
) -> SlugCheckResponse:
    """Report whether *slug* can be used for a new tenant."""
    normalized = slug.strip().lower()
    reason = validate_slug(normalized)
    if reason is not None:
        return SlugCheckResponse(available=False, reason=reason)
    if await TenantRepository(session).slug_exists(normalized):
        return SlugCheckResponse(available=False, reason="slug is already taken")
    return SlugCheckResponse(available=True)
