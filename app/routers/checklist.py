from fastapi import APIRouter, Depends

from app.dependencies import get_actor, get_engine
from app.models.checklist import ChecklistFinalizeRequest, ChecklistItemsRequest, ChecklistStatus
from app.models.surgical_case import ActorContext
from app.services.engine import CaseEngine

router = APIRouter(prefix="/api/surgical-cases", tags=["checklist"])


@router.get("/{case_id}/checklist", response_model=ChecklistStatus)
async def get_checklist(case_id: str, engine: CaseEngine = Depends(get_engine)):
    """WHO Surgical Safety Checklist status for all three phases."""
    return await engine.checklists.get_status(case_id)


@router.put("/{case_id}/checklist/{phase}", response_model=ChecklistStatus)
async def save_checklist_draft(
    case_id: str,
    phase: str,
    body: ChecklistItemsRequest,
    actor: ActorContext = Depends(get_actor),
    engine: CaseEngine = Depends(get_engine),
):
    """Save a draft of one phase; rejected once the phase is finalized."""
    return await engine.checklists.save_draft(case_id, phase, body.items, actor)


@router.post("/{case_id}/checklist/{phase}/finalize", response_model=ChecklistStatus)
async def finalize_checklist_phase(
    case_id: str,
    phase: str,
    body: ChecklistFinalizeRequest,
    actor: ActorContext = Depends(get_actor),
    engine: CaseEngine = Depends(get_engine),
):
    """Finalize one phase; every template item must be confirmed."""
    return await engine.checklists.finalize(case_id, phase, body.items, actor)
