"""Public plan catalogue."""

from __future__ import annotations

from typing import Any

from carwash_core.state import PlanRepository
from fastapi import APIRouter

from api.dependencies import SessionDep
from api.schemas import PlanResponse
from api.services.billing_service import plan_to_dict

router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("", response_model=list[PlanResponse])
async def list_plans(session: SessionDep) -> list[dict[str, Any]]:
    """Return the active plans, cheapest first."""
    plans = await PlanRepository(session).list_active()
    return [plan_to_dict(p) for p in plans]
