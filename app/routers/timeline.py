from typing import Any

from fastapi import APIRouter, Body, Depends

from app.dependencies import get_actor, get_engine
from app.models.surgical_case import ActorContext
from app.models.timeline import TimelineResponse
from app.services.engine import CaseEngine

router = APIRouter(prefix="/api/surgical-cases", tags=["timeline"])


@router.get("/{case_id}/timeline", response_model=TimelineResponse)
async def get_timeline(case_id: str, engine: CaseEngine = Depends(get_engine)):
    return await engine.timelines.get_timeline(case_id)


@router.patch("/{case_id}/timeline", response_model=TimelineResponse)
async def update_timeline(
    case_id: str,
    body: dict[str, Any] = Body(...),
    actor: ActorContext = Depends(get_actor),
    engine: CaseEngine = Depends(get_engine),
):
    """Partial update, e.g. ``{"wheelsIn": "now", "incisionTime": null}``.

    The whole batch is rejected with per-field errors if any value is invalid.
    """
    return await engine.timelines.update_timeline(case_id, body, actor)
