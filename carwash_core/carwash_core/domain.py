"""Host-header based tenant resolution, cookie scoping, and tenant URLs.

Everything in this module is a pure function of its arguments: no I/O,
no environment reads, no clock.  Callers pass the configured base
application domain (``host[:port]``, e.g. ``localhost:3000`` or
``carwash.com``) explicitly.

Examples::

    >>> extract_tenant_slug_from_host("demo.localhost:3000", "localhost:3000")
    'demo'
    >>> extract_tenant_slug_from_host("192.168.1.8:3000", "192.168.1.8:3000") is None
    True
    >>> get_cookie_domain("demo.carwash.com")
    '.carwash.com'
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

# A raw IPv4 literal cannot carry subdomains.
_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
_PORT_RE = re.compile(r":\d+$")
_LOCALHOST_SUBDOMAIN_RE = re.compile(r"^([^.]+)\.localhost$")

# Request header the edge uses to hand the resolved tenant slug to handlers.
TENANT_SLUG_HEADER = "x-tenant-slug"

# Shared hosting platforms where wildcard subdomains are unavailable.
SHARED_PLATFORMS: tuple[str, ...] = (
    "vercel.app",
    "netlify.app",
    "herokuapp.com",
    "railway.app",
    "fly.dev",
    "render.com",
)

# ---------------------------------------------------------------------------
# Slug rules
# ---------------------------------------------------------------------------

SLUG_RE = re.compile(r"^[a-z0-9-]+$")
SLUG_MIN_LENGTH = 3
SLUG_MAX_LENGTH = 100
RESERVED_SLUGS: frozenset[str] = frozenset(
    {"admin", "api", "app", "www", "mail", "ftp", "blog", "help", "support"}
)


def validate_slug(slug: str) -> str | None:
    """Return a rejection reason for *slug*, or ``None`` when it is usable."""
    if not SLUG_MIN_LENGTH <= len(slug) <= SLUG_MAX_LENGTH:
        return f"slug must be between {SLUG_MIN_LENGTH} and {SLUG_MAX_LENGTH} characters"
    if not SLUG_RE.match(slug):
        return "slug may only contain lowercase letters, digits and hyphens"
    if slug in RESERVED_SLUGS:
        return "slug is reserved"
    return None


# ---------------------------------------------------------------------------
# Host helpers
# ---------------------------------------------------------------------------


def strip_port(host: str) -> str:
    """Return *host* without a trailing ``:port``."""
    return _PORT_RE.sub("", host.strip().lower())


def is_ip_address(host: str) -> bool:
    """Return ``True`` when *host* (port allowed) is an IPv4 literal."""
    return bool(_IPV4_RE.match(strip_port(host)))


def supports_subdomains(host: str) -> bool:
    """Whether tenant subdomains can be served under *host*.

    IP literals and shared hosting platforms (``*.vercel.app`` and
    friends) cannot; ``localhost`` and custom domains can.
    """
    bare = strip_port(host)
    if is_ip_address(bare):
        return False
    return not any(bare == p or bare.endswith(f".{p}") for p in SHARED_PLATFORMS)


def get_protocol(host: str, *, production: bool = False) -> str:
    """Return ``"https"`` or ``"http"`` for URLs built against *host*."""
    if production:
        return "https"
    bare = strip_port(host)
    if bare == "localhost" or is_ip_address(bare):
        return "http"
    return "https"


# ---------------------------------------------------------------------------
# Domain resolver
# ---------------------------------------------------------------------------


def extract_tenant_slug_from_host(host: str, base_domain: str) -> str | None:
    """Map a ``Host`` header value to a tenant slug.

    Parameters
    ----------
    host:
        Raw ``Host`` header, port included when present.
    base_domain:
        Configured apex domain, ``host[:port]``.

    Returns
    -------
    str | None
        The first label of a tenant subdomain, or ``None`` for apex
        requests, IP literals, shared platforms and foreign hosts.
    """
    if not host:
        return None
    host_only = strip_port(host)
    base_host = strip_port(base_domain)

    if is_ip_address(host_only):
        return None
    if not supports_subdomains(host_only):
        return None
    if host_only == base_host:
        return None

    match = _LOCALHOST_SUBDOMAIN_RE.match(host_only)
    if match:
        return match.group(1)

    suffix = f".{base_host}"
    if host_only.endswith(suffix):
        subdomain = host_only[: -len(suffix)]
        # Only the first label identifies the tenant.
        return subdomain.split(".", 1)[0] or None

    return None


def build_tenant_url(
    slug: str,
    path: str,
    base_domain: str,
    *,
    production: bool = False,
    protocol: str | None = None,
) -> str:
    """Return an absolute URL for *path* on the tenant's subdomain.

    When the base domain cannot carry subdomains (IP literal or shared
    platform) the URL stays on the base domain; the caller must then rely
    on the injected tenant header instead of the host.
    """
    scheme = protocol or get_protocol(base_domain, production=production)
    if not path.startswith("/"):
        path = f"/{path}"
    if not supports_subdomains(base_domain):
        return f"{scheme}://{base_domain}{path}"
    return f"{scheme}://{slug}.{base_domain}{path}"


def get_base_domain_url(path: str, base_domain: str, *, production: bool = False) -> str:
    """Return an absolute URL for *path* on the apex domain."""
    scheme = get_protocol(base_domain, production=production)
    return f"{scheme}://{base_domain}{path}"


def get_cookie_domain(host: str) -> str | None:
    """Return the ``Domain`` attribute that shares a cookie across tenants.

    ``None`` means "omit the attribute" so the browser scopes the cookie
    to the exact origin (the only option for IP hosts).
    """
    bare = strip_port(host)
    if not bare or is_ip_address(bare):
        return None
    if bare == "localhost":
        return ".localhost"
    if not supports_subdomains(bare):
        return f".{bare}"
    parts = bare.split(".")
    if len(parts) <= 2:
        return f".{bare}"
    return "." + ".".join(parts[-2:])


def is_same_site_host(host: str, base_domain: str) -> bool:
    """Return ``True`` when *host* belongs to the application's own origins.

    Accepts the base host itself and any subdomain of it.  The
    ``localhost`` family only counts when the base host is ``localhost``.
    """
    bare = strip_port(host)
    base_host = strip_port(base_domain)
    if not bare:
        return False
    if bare == base_host or bare.endswith(f".{base_host}"):
        return True
    if base_host != "localhost":
        return False
    return bare == "localhost" or bool(_LOCALHOST_SUBDOMAIN_RE.match(bare))


def split_callback_url(callback_url: str) -> tuple[str | None, str]:
    """Split *callback_url* into ``(netloc, path_and_query)``.

    Relative callbacks yield ``None`` for the netloc.  Scheme-relative
    (``//host/...``) values are treated as absolute so they cannot slip
    past host validation.
    """
    parts = urlsplit(callback_url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    if parts.netloc:
        return parts.netloc, path
    return None, path
