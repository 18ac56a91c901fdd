"""Health-check and readiness probe endpoints.

``/api/health`` is the liveness probe and always answers 200.  ``/ready``
sits at the application root and answers 503 while the database is
unreachable so orchestrators can hold traffic back.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    """Return service health; ``db`` reports whether the store is reachable."""
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
    }
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside the /api prefix)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    """Kubernetes-style readiness probe gated on database connectivity."""
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "version": __version__, "checks": {"db": "unavailable"}},
        )
    return JSONResponse(
        status_code=200,
        content={"status": "ready", "version": __version__, "checks": {"db": "ok"}},
    )
