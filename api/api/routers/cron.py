"""Reconciliation triggers called by an external scheduler.

The edge lets ``/api/cron`` through without a session; each request must
instead carry the shared secret in ``x-cron-secret``.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from api.config import APISettings
from api.dependencies import SessionDep, SettingsDep
from api.errors import CronUnauthorized
from api.schemas import ErrorResponse, PlanChangeRunResponse, ReminderRunResponse
from api.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "x-cron-secret"

router = APIRouter(prefix="/cron", tags=["cron"])


def check_cron_secret(provided: str | None, settings: APISettings) -> None:
    """Raise :class:`CronUnauthorized` unless *provided* matches the secret.

    Outside production an unset secret disables the check so local cron
    runs work without configuration.
    """
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        if settings.is_production:
            logger.error("Cron secret is not configured; refusing cron request")
            raise CronUnauthorized()
        return
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Cron request with invalid secret")
        raise CronUnauthorized()


async def require_cron_secret(request: Request, settings: SettingsDep) -> None:
    check_cron_secret(request.headers.get(CRON_SECRET_HEADER), settings)


@router.post(
    "/plan-changes",
    response_model=PlanChangeRunResponse,
    responses={401: {"model": ErrorResponse}},
    dependencies=[Depends(require_cron_secret)],
)
async def run_plan_changes(session: SessionDep) -> dict[str, Any]:
    """Apply or cancel due scheduled plan changes."""
    result = await ReconciliationService(session).apply_due_plan_changes()
    logger.info("Cron plan-changes: %s", result)
    return result


@router.post(
    "/reminders",
    response_model=ReminderRunResponse,
    responses={401: {"model": ErrorResponse}},
    dependencies=[Depends(require_cron_secret)],
)
async def run_reminders(session: SessionDep) -> dict[str, Any]:
    """Dispatch due payment reminders."""
    result = await ReconciliationService(session).process_due_reminders()
    logger.info("Cron reminders: %s", result)
    return result
