"""Two-hop session relay across the apex domain / tenant subdomain boundary.

Some browsers refuse to share a cookie between ``localhost`` and
``demo.localhost`` even with ``Domain=.localhost``.  The relay moves the
session over a redirect chain instead:

1. ``AWAITING_TOKEN`` (apex): read the session cookie and redirect to
   ``<target origin>/api/auth/session-relay?token=...&callbackUrl=<path>``.
2. ``TOKEN_RECEIVED`` (subdomain): verify the token, set the cookie on
   this host and redirect to ``<this host><callbackUrl>``.

The token value is never logged.  Hop 1 never sets a cookie and hop 2
only sets one after verification succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote, urlencode, urlsplit

from carwash_core.domain import is_same_site_host, split_callback_url

from api.errors import InvalidRelayToken
from api.security import InvalidSessionToken, SessionTokenManager

logger = logging.getLogger(__name__)

RELAY_PATH = "/api/auth/session-relay"
LOGIN_PATH = "/login"


class RelayState(str, Enum):
    """Which hop of the relay a request represents."""

    AWAITING_TOKEN = "awaiting_token"
    TOKEN_RECEIVED = "token_received"


@dataclass(frozen=True)
class RelayDecision:
    """What the relay endpoint should answer.

    Exactly one of ``location`` and ``error`` is set.  ``cookie_token``
    is only ever set together with a ``location`` on hop 2.
    """

    location: str | None = None
    cookie_token: str | None = None
    error: str | None = None

    @classmethod
    def redirect(cls, location: str, cookie_token: str | None = None) -> RelayDecision:
        return cls(location=location, cookie_token=cookie_token)

    @classmethod
    def reject(cls, error: str) -> RelayDecision:
        return cls(error=error)


def relay_url(callback_url: str, origin: str = "") -> str:
    """Return the hop 1 URL that relays towards *callback_url*.

    With an empty *origin* the URL is relative to the current host.
    """
    query = urlencode({"callbackUrl": callback_url}, quote_via=quote, safe="/:")
    return f"{origin}{RELAY_PATH}?{query}"


def _is_local_path(path: str) -> bool:
    return path.startswith("/") and not path.startswith("//") and "\\" not in path


class SessionRelay:
    """Stateless two-hop relay driven by the request's query parameters.

    Parameters
    ----------
    token_manager:
        Verifies relayed tokens with the same secret used to issue them.
    base_domain:
        Configured application domain; hop 1 only forwards to hosts that
        belong to it.
    """

    def __init__(self, token_manager: SessionTokenManager, base_domain: str) -> None:
        self._tokens = token_manager
        self._base_domain = base_domain

    @staticmethod
    def state_for(token: str | None) -> RelayState:
        return RelayState.TOKEN_RECEIVED if token else RelayState.AWAITING_TOKEN

    def handle(
        self,
        *,
        callback_url: str | None,
        token: str | None,
        session_cookie: str | None,
        scheme: str,
        host: str,
    ) -> RelayDecision:
        """Run one hop of the relay for the current request."""
        if not callback_url:
            return RelayDecision.reject("Missing callbackUrl")

        if self.state_for(token) is RelayState.TOKEN_RECEIVED:
            return self._accept(callback_url, token or "", scheme, host)
        return self._forward(callback_url, session_cookie, scheme, host)

    # -- Hop 1 ---------------------------------------------------------------

    def _forward(self, callback_url: str, session_cookie: str | None, scheme: str, host: str) -> RelayDecision:
        target_netloc, target_path = split_callback_url(callback_url)
        if target_netloc is None:
            if not _is_local_path(callback_url):
                return RelayDecision.reject("Invalid callbackUrl")
            target_origin = f"{scheme}://{host}"
        else:
            target_scheme = urlsplit(callback_url).scheme or scheme
            if target_scheme not in ("http", "https") or not is_same_site_host(target_netloc, self._base_domain):
                logger.warning("Session relay refused foreign callback host %s", target_netloc)
                return RelayDecision.reject("Invalid callbackUrl")
            target_origin = f"{target_scheme}://{target_netloc}"

        if not session_cookie:
            return RelayDecision.redirect(LOGIN_PATH)

        query = urlencode({"token": session_cookie, "callbackUrl": target_path}, quote_via=quote, safe="/")
        logger.info("Session relay forwarding to %s", target_origin)
        return RelayDecision.redirect(f"{target_origin}{RELAY_PATH}?{query}")

    # -- Hop 2 ---------------------------------------------------------------

    def _accept(self, callback_url: str, token: str, scheme: str, host: str) -> RelayDecision:
        if not _is_local_path(callback_url):
            return RelayDecision.reject("Invalid callbackUrl")
        try:
            self._verify(token)
        except InvalidRelayToken:
            logger.info("Session relay token rejected on %s", host)
            return RelayDecision.redirect(LOGIN_PATH)
        return RelayDecision.redirect(f"{scheme}://{host}{callback_url}", cookie_token=token)

    def _verify(self, token: str) -> None:
        try:
            self._tokens.validate(token)
        except InvalidSessionToken as exc:
            raise InvalidRelayToken(str(exc)) from exc
