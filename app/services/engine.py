"""Wiring of the case engine's services around one database adapter."""

from dataclasses import dataclass

from app.database import DatabaseAdapter
from app.services.case_transitions import CaseTransitionService
from app.services.checklist_store import ChecklistStore
from app.services.collaborators import ClinicalCollaborators, get_collaborators
from app.services.dayboard import DayboardService
from app.services.readiness import DEFAULT_POLICY, ReadinessAggregator, ReadinessRule
from app.services.timeline_store import TimelineStore


@dataclass
class CaseEngine:
    checklists: ChecklistStore
    timelines: TimelineStore
    readiness: ReadinessAggregator
    transitions: CaseTransitionService
    dayboard: DayboardService


def build_engine(
    db: DatabaseAdapter,
    events=None,
    collaborators: ClinicalCollaborators | None = None,
    policy: tuple[ReadinessRule, ...] = DEFAULT_POLICY,
    timeline_store: TimelineStore | None = None,
) -> CaseEngine:
    collaborators = collaborators or get_collaborators(db)
    checklists = ChecklistStore(db, events)
    timelines = timeline_store or TimelineStore(db, events)
    readiness = ReadinessAggregator(db, collaborators, checklists, timelines, policy)
    return CaseEngine(
        checklists=checklists,
        timelines=timelines,
        readiness=readiness,
        transitions=CaseTransitionService(db, readiness, collaborators.audit, events),
        dayboard=DayboardService(db, readiness, checklists, timelines),
    )
