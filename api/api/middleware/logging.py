"""Structured request logging and the JSON log formatter.

Set ``API_STRUCTURED_LOGGING=true`` to switch the root logger to
single-line JSON via :func:`configure_json_logging`.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "x-cron-secret", "stripe-signature"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"

# Query parameters whose values must be masked (relay tokens).
_SENSITIVE_PARAMS: frozenset[str] = frozenset({"token"})


def _safe_headers(request: Request) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    out: dict[str, str] = {}
    for key, value in request.headers.items():
        if key.lower() in _SENSITIVE_HEADERS:
            out[key] = _MASK
        else:
            out[key] = value
    return out


def _safe_query(request: Request) -> str | None:
    """Return the query string with sensitive parameter values masked."""
    if not request.url.query:
        return None
    parts = []
    for key, value in request.query_params.multi_items():
        parts.append(f"{key}={_MASK if key in _SENSITIVE_PARAMS else value}")
    return "&".join(parts)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration.

    Each request is tagged with a ``correlation_id`` (taken from the
    incoming ``X-Correlation-ID`` header or generated as a UUID-4) and
    the tenant slug resolved by the edge middleware (if any) and the
    caller's user id.  The correlation ID is also set as a response
    header for end-to-end tracing.

    Output is emitted as a structured JSON-compatible dictionary so that
    downstream log aggregators (Datadog, CloudWatch, etc.) can index
    individual fields without regex parsing.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # Derive or generate a correlation ID for this request.
        correlation_id = request.headers.get(
            _CORRELATION_HEADER.lower(),
            request.headers.get(_CORRELATION_HEADER, ""),
        )
        if not correlation_id:
            correlation_id = str(uuid.uuid4())

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            # Attach the correlation ID to the response for tracing.
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            status_code = response.status_code if response is not None else 500

            tenant_slug = getattr(request.state, "tenant_slug", None)
            identity = getattr(request.state, "identity", None)

            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": _safe_query(request),
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "tenant_slug": tenant_slug,
                "user_id": identity.sub if identity is not None else None,
                "headers": _safe_headers(request),
            }
            if status_code >= 500:
                logger.error("request completed", extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning("request completed", extra={"request": log_payload})
            else:
                logger.info("request completed", extra={"request": log_payload})


# ---------------------------------------------------------------------------
# JSON output
# ---------------------------------------------------------------------------

# ``extra=`` keys copied verbatim into the JSON line: ``request`` from the
# middleware above, ``billing`` from invoice/payment/plan transitions.
_CONTEXT_ATTRS: tuple[str, ...] = ("request", "billing")


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON line.

    The tenant a record concerns is lifted to a top-level ``tenant``
    field (the request's slug, or the billing event's ``tenant_id``) so
    aggregators can filter per car wash without digging into context.
    """

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in _CONTEXT_ATTRS:
            context = getattr(record, attr, None)
            if context is not None:
                line[attr] = context

        tenant = (line.get("request") or {}).get("tenant_slug") or (line.get("billing") or {}).get("tenant_id")
        if tenant:
            line["tenant"] = tenant

        if record.exc_info and record.exc_info[0] is not None:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, default=_json_default, ensure_ascii=False)


def configure_json_logging(level: int = logging.INFO) -> logging.Handler:
    """Replace the root handlers with a single JSON ``StreamHandler``."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    return handler
