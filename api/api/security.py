"""Session token issuing and verification.

Session tokens are HS256 JWTs signed with ``API_AUTH_SECRET``.  They are
carried in the session cookie (or an ``Authorization: Bearer`` header for
API clients) and relayed verbatim across subdomains by the session relay.

Claims::

    sub          user id
    email        user email (informational)
    global_role  "SUPER_ADMIN" | "USER"
    tenant_slug  home tenant, absent until the user belongs to one
    iat / exp    issue and expiry timestamps
"""

from __future__ import annotations

import logging
import time
import uuid
from enum import Enum

import jwt
from pydantic import BaseModel, Field, SecretStr

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_ISSUER = "carwash"


class GlobalRole(str, Enum):
    """Platform-wide role carried in the session token."""

    SUPER_ADMIN = "SUPER_ADMIN"
    USER = "USER"


class InvalidSessionToken(PermissionError):
    """Raised when a token is malformed, tampered with, or expired."""


class TokenConfig(BaseModel):
    """Signing configuration for :class:`SessionTokenManager`."""

    secret: SecretStr
    ttl_seconds: int = 30 * 24 * 3600
    leeway_seconds: int = 30


class SessionClaims(BaseModel):
    """Verified identity extracted from a session token."""

    sub: str
    email: str | None = None
    global_role: GlobalRole = GlobalRole.USER
    tenant_slug: str | None = None
    iat: int = Field(default_factory=lambda: int(time.time()))
    exp: int | None = None
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_super_admin(self) -> bool:
        return self.global_role == GlobalRole.SUPER_ADMIN


class SessionTokenManager:
    """Issue and verify session tokens.

    Parameters
    ----------
    config:
        Signing secret and lifetime.  An empty secret is rejected so a
        misconfigured deployment can never verify unsigned tokens.
    """

    def __init__(self, config: TokenConfig) -> None:
        if not config.secret.get_secret_value():
            raise ValueError("Session token secret must not be empty")
        self._config = config

    def issue(
        self,
        user_id: str,
        *,
        email: str | None = None,
        global_role: GlobalRole | str = GlobalRole.USER,
        tenant_slug: str | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        """Return a signed token for *user_id*."""
        now = int(time.time())
        claims = SessionClaims(
            sub=user_id,
            email=email,
            global_role=GlobalRole(global_role),
            tenant_slug=tenant_slug,
            iat=now,
            exp=now + (ttl_seconds or self._config.ttl_seconds),
        )
        payload = claims.model_dump(mode="json", exclude_none=True)
        payload["iss"] = _ISSUER
        return jwt.encode(payload, self._config.secret.get_secret_value(), algorithm=_ALGORITHM)

    def validate(self, token: str) -> SessionClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        InvalidSessionToken
            On a bad signature, wrong algorithm, missing claims, or expiry.
            The token value itself is never logged.
        """
        try:
            payload = jwt.decode(
                token,
                self._config.secret.get_secret_value(),
                algorithms=[_ALGORITHM],
                issuer=_ISSUER,
                leeway=self._config.leeway_seconds,
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidSessionToken("Session token has expired") from exc
        except jwt.PyJWTError as exc:
            logger.debug("Session token rejected: %s", type(exc).__name__)
            raise InvalidSessionToken("Invalid session token") from exc

        payload.pop("iss", None)
        try:
            return SessionClaims.model_validate(payload)
        except ValueError as exc:
            raise InvalidSessionToken("Invalid session claims") from exc
