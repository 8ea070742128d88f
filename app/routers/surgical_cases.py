import logging

from fastapi import APIRouter, Depends, Query

from app.database import get_db
from app.dependencies import get_actor, get_engine
from app.models.readiness import ReadinessVerdict
from app.models.surgical_case import (
    ActorContext,
    SurgicalCase,
    SurgicalCaseCreate,
    TransitionAuditEntry,
    TransitionRequest,
    TransitionResult,
)
from app.services.engine import CaseEngine
from app.services.surgical_cases import create_case, load_case

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/surgical-cases", tags=["surgical-cases"])


@router.post("", response_model=SurgicalCase, status_code=201)
async def register_case(body: SurgicalCaseCreate):
    """Register a planned surgical case (called by the planning workflow)."""
    db = await get_db()
    return await create_case(db, body)


@router.get("/{case_id}", response_model=SurgicalCase)
async def get_case(case_id: str):
    db = await get_db()
    return await load_case(db, case_id)


@router.post("/{case_id}/transition", response_model=TransitionResult)
async def transition_case(
    case_id: str,
    body: TransitionRequest,
    actor: ActorContext = Depends(get_actor),
    engine: CaseEngine = Depends(get_engine),
):
    """Move a case to its next status.

    Rejected with 409 when the action is not the next status, 422 with the
    blocking reasons when readiness is BLOCKED.
    """
    return await engine.transitions.transition(case_id, body.action, actor, body.reason)


@router.get("/{case_id}/readiness", response_model=ReadinessVerdict)
async def get_readiness(
    case_id: str,
    action: str | None = Query(None),
    engine: CaseEngine = Depends(get_engine),
):
    """Readiness verdict for ``action``, or for the case's next status."""
    return await engine.readiness.evaluate(case_id, action)


@router.get("/{case_id}/audit", response_model=list[TransitionAuditEntry])
async def get_audit(case_id: str, engine: CaseEngine = Depends(get_engine)):
    return await engine.transitions.list_audit(case_id)
