"""Readiness aggregation: which blockers stand between a case and its next status.

Each rule reads one source (doctor plan, consents, a nursing document, the
WHO checklist, the operative note or the operative timeline) and states its
severity per target status. The verdict level is the highest severity among
the failing rules.

When a source cannot be fetched, the rules that depend on it are replaced by a
single WARNING "<source> status unavailable"; they never pass silently.

``DEFAULT_POLICY`` is plain data; pass a different tuple of rules to
``ReadinessAggregator`` to adjust which categories block which transition.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.database import DatabaseAdapter
from app.errors import InvalidTransitionError
from app.models.checklist import ChecklistStatus
from app.models.enums import (
    NEXT_STATUS,
    BlockerCategory,
    BlockerLevel,
    CaseStatus,
    ChecklistPhase,
    DocStatus,
    NurseDocPhase,
)
from app.models.readiness import (
    BlockerReason,
    ConsentCounts,
    NurseDocSnapshot,
    PlanStatus,
    ReadinessVerdict,
)
from app.services.checklist_store import ChecklistStore
from app.services.collaborators import ClinicalCollaborators
from app.services.operative_timeline import Timeline, missing_for_status
from app.services.surgical_cases import ensure_case_exists
from app.services.timeline_store import TimelineStore
from app.services.who_checklist import PHASE_TEMPLATES

logger = logging.getLogger(__name__)

BLOCK = BlockerLevel.BLOCKED
WARN = BlockerLevel.WARNING

IN_PREP = CaseStatus.IN_PREP
IN_THEATER = CaseStatus.IN_THEATER
RECOVERY = CaseStatus.RECOVERY
COMPLETED = CaseStatus.COMPLETED

# Source keys and the label used when a source is unavailable.
SOURCE_LABELS = {
    "doctor_plan": "Doctor planning",
    "consents": "Consent",
    "nurse_pre_op": "Nurse pre-op checklist",
    "nurse_intra_op": "Nurse intra-op record",
    "nurse_recovery": "Nurse recovery record",
    "checklist": "WHO checklist",
    "operative_note": "Operative note",
    "timeline": "Operative timeline",
}

_DOC_STATUS_TEXT = {
    DocStatus.NONE: "not started",
    DocStatus.DRAFT: "draft",
    DocStatus.FINAL: "final",
}


@dataclass
class ReadinessSources:
    """Fetched collaborator values, or the exception raised while fetching."""

    values: dict[str, Any] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)

    def get(self, source: str) -> Any:
        return self.values.get(source)

    def failed(self, source: str) -> bool:
        return source in self.failures


# A check receives the source value and the target status and returns the
# blocker message, or None when the rule passes.
Check = Callable[[Any, CaseStatus], str | None]


@dataclass(frozen=True)
class ReadinessRule:
    key: str
    category: BlockerCategory
    source: str
    severities: dict[CaseStatus, BlockerLevel]
    check: Check

    def severity_for(self, action: CaseStatus) -> BlockerLevel | None:
        return self.severities.get(action)


def _check_plan(plan: PlanStatus, _action: CaseStatus) -> str | None:
    if plan.missing_count > 0:
        return f"Doctor planning: {plan.missing_count} item(s) missing"
    if not plan.ready:
        return "Doctor planning: not marked ready for surgery"
    return None


def _check_consents(counts: ConsentCounts, _action: CaseStatus) -> str | None:
    if counts.fully_signed:
        return None
    return f"Consents signed: {counts.signed} of {counts.total}"


def _nurse_doc_final(title: str) -> Check:
    def check(doc: NurseDocSnapshot, _action: CaseStatus) -> str | None:
        if doc.status == DocStatus.FINAL:
            return None
        return f"{title}: {_DOC_STATUS_TEXT[doc.status]}"
    return check


def _check_discrepancy(doc: NurseDocSnapshot, _action: CaseStatus) -> str | None:
    return "Nurse intra-op: count discrepancy flagged" if doc.discrepancy_flag else None


def _check_discharge(doc: NurseDocSnapshot, _action: CaseStatus) -> str | None:
    if doc.status == DocStatus.FINAL and not doc.discharge_ready:
        return "Recovery: discharge criteria not met"
    return None


def _checklist_phase(phase: ChecklistPhase) -> Check:
    template = PHASE_TEMPLATES[phase]
    attr = {
        ChecklistPhase.SIGN_IN: "sign_in",
        ChecklistPhase.TIME_OUT: "time_out",
        ChecklistPhase.SIGN_OUT: "sign_out",
    }[phase]

    def check(status: ChecklistStatus, _action: CaseStatus) -> str | None:
        state = getattr(status, attr)
        if state.completed:
            return None
        message = f"WHO {template.title} not finalized"
        if state.items is not None:
            unconfirmed = sum(1 for i in state.items if not i.confirmed)
            message += f" ({unconfirmed} of {len(template.items)} item(s) unconfirmed)"
        return message
    return check


def _check_operative_note(status: DocStatus, _action: CaseStatus) -> str | None:
    if status == DocStatus.FINAL:
        return None
    return f"Operative note: {_DOC_STATUS_TEXT[status]}"


def _check_timeline(timeline: Timeline, action: CaseStatus) -> str | None:
    missing = missing_for_status(action, timeline)
    if not missing:
        return None
    return "Timeline: missing " + ", ".join(m.label for m in missing)


DEFAULT_POLICY: tuple[ReadinessRule, ...] = (
    ReadinessRule(
        "doctor_planning", BlockerCategory.PLANNING, "doctor_plan",
        {IN_PREP: BLOCK, IN_THEATER: BLOCK, RECOVERY: WARN, COMPLETED: WARN},
        _check_plan,
    ),
    ReadinessRule(
        "consents", BlockerCategory.CONSENT, "consents",
        {IN_PREP: BLOCK, IN_THEATER: BLOCK, RECOVERY: WARN, COMPLETED: WARN},
        _check_consents,
    ),
    ReadinessRule(
        "nurse_pre_op", BlockerCategory.NURSE_DOCUMENTATION, "nurse_pre_op",
        {IN_PREP: WARN, IN_THEATER: BLOCK, RECOVERY: WARN, COMPLETED: WARN},
        _nurse_doc_final("Nurse pre-op checklist"),
    ),
    ReadinessRule(
        "nurse_intra_op", BlockerCategory.NURSE_DOCUMENTATION, "nurse_intra_op",
        {RECOVERY: BLOCK, COMPLETED: WARN},
        _nurse_doc_final("Nurse intra-op record"),
    ),
    ReadinessRule(
        "intra_op_discrepancy", BlockerCategory.NURSE_DOCUMENTATION, "nurse_intra_op",
        {RECOVERY: BLOCK, COMPLETED: BLOCK},
        _check_discrepancy,
    ),
    ReadinessRule(
        "nurse_recovery", BlockerCategory.NURSE_DOCUMENTATION, "nurse_recovery",
        {COMPLETED: BLOCK},
        _nurse_doc_final("Nurse recovery record"),
    ),
    ReadinessRule(
        "discharge_readiness", BlockerCategory.NURSE_DOCUMENTATION, "nurse_recovery",
        {COMPLETED: BLOCK},
        _check_discharge,
    ),
    ReadinessRule(
        "who_sign_in", BlockerCategory.CHECKLIST, "checklist",
        {IN_THEATER: BLOCK, RECOVERY: WARN, COMPLETED: WARN},
        _checklist_phase(ChecklistPhase.SIGN_IN),
    ),
    ReadinessRule(
        "who_time_out", BlockerCategory.CHECKLIST, "checklist",
        {RECOVERY: BLOCK, COMPLETED: WARN},
        _checklist_phase(ChecklistPhase.TIME_OUT),
    ),
    ReadinessRule(
        "who_sign_out", BlockerCategory.CHECKLIST, "checklist",
        {COMPLETED: BLOCK},
        _checklist_phase(ChecklistPhase.SIGN_OUT),
    ),
    ReadinessRule(
        "operative_note", BlockerCategory.OPERATIVE_NOTE, "operative_note",
        {COMPLETED: BLOCK},
        _check_operative_note,
    ),
    ReadinessRule(
        "timeline", BlockerCategory.TIMELINE, "timeline",
        {RECOVERY: WARN, COMPLETED: WARN},
        _check_timeline,
    ),
)

ALL_SOURCES = tuple(SOURCE_LABELS)


def parse_action(action: str | CaseStatus | None) -> CaseStatus | None:
    if action is None or isinstance(action, CaseStatus):
        return action
    try:
        return CaseStatus(action.strip().upper())
    except ValueError:
        raise InvalidTransitionError(
            f"Unknown action: {action}",
            requestedAction=action,
        ) from None


class ReadinessAggregator:
    def __init__(
        self,
        db: DatabaseAdapter,
        collaborators: ClinicalCollaborators,
        checklist_store: ChecklistStore,
        timeline_store: TimelineStore,
        policy: tuple[ReadinessRule, ...] = DEFAULT_POLICY,
    ) -> None:
        self.db = db
        self.collaborators = collaborators
        self.checklist_store = checklist_store
        self.timeline_store = timeline_store
        self.policy = policy

    def _fetchers(self, case_id: str) -> dict[str, Callable]:
        nurse_docs = self.collaborators.nurse_docs
        return {
            "doctor_plan": lambda: self.collaborators.plans.get_plan_status(case_id),
            "consents": lambda: self.collaborators.consents.get_consent_counts(case_id),
            "nurse_pre_op": lambda: nurse_docs.get_status(case_id, NurseDocPhase.PRE_OP),
            "nurse_intra_op": lambda: nurse_docs.get_status(case_id, NurseDocPhase.INTRA_OP),
            "nurse_recovery": lambda: nurse_docs.get_status(case_id, NurseDocPhase.RECOVERY),
            "checklist": lambda: self.checklist_store.get_status(case_id),
            "operative_note": lambda: self.collaborators.operative_notes.get_status(case_id),
            "timeline": lambda: self.timeline_store.load(case_id),
        }

    def sources_for(self, action: CaseStatus | None) -> set[str]:
        if action is None:
            return set()
        return {r.source for r in self.policy if r.severity_for(action) is not None}

    async def gather_sources(self, case_id: str, sources) -> ReadinessSources:
        """Fetch each source; a failure is recorded and logged, never raised."""
        fetchers = self._fetchers(case_id)
        result = ReadinessSources()
        for source in sources:
            try:
                result.values[source] = await fetchers[source]()
            except Exception as exc:
                logger.warning(
                    "Readiness source %s unavailable for case %s: %s", source, case_id, exc,
                )
                result.failures[source] = exc
        return result

    def judge(
        self,
        case_id: str,
        current_status: CaseStatus,
        action: CaseStatus | None,
        sources: ReadinessSources,
    ) -> ReadinessVerdict:
        """Apply the policy to already-fetched sources."""
        reasons: list[BlockerReason] = []
        degraded: set[str] = set()

        if action is not None:
            for rule in self.policy:
                severity = rule.severity_for(action)
                if severity is None:
                    continue
                if sources.failed(rule.source):
                    if rule.source in degraded:
                        continue
                    degraded.add(rule.source)
                    reasons.append(BlockerReason(
                        key=f"{rule.source}_unavailable",
                        category=rule.category,
                        severity=BlockerLevel.WARNING,
                        message=f"{SOURCE_LABELS[rule.source]} status unavailable",
                        unavailable=True,
                    ))
                    continue
                message = rule.check(sources.get(rule.source), action)
                if message:
                    reasons.append(BlockerReason(
                        key=rule.key,
                        category=rule.category,
                        severity=severity,
                        message=message,
                    ))

        level = max((r.severity for r in reasons), key=lambda s: s.rank, default=BlockerLevel.CLEAR)
        return ReadinessVerdict(
            case_id=case_id,
            current_status=current_status,
            action=action,
            level=level,
            reasons=reasons,
        )

    async def evaluate(
        self,
        case_id: str,
        action: str | CaseStatus | None = None,
    ) -> ReadinessVerdict:
        """Verdict for moving ``case_id`` to ``action``.

        Without an action the case's natural next status is evaluated; a
        COMPLETED case has none and is always CLEAR.
        """
        target = parse_action(action)
        current = await ensure_case_exists(self.db, case_id)
        if target is None:
            target = NEXT_STATUS[current]

        sources = await self.gather_sources(case_id, self.sources_for(target))
        return self.judge(case_id, current, target, sources)


def describe_sources(sources: ReadinessSources) -> dict[str, Any]:
    """Flatten fetched sources into dayboard blocker snapshot fields."""
    plan: PlanStatus | None = sources.get("doctor_plan")
    consents: ConsentCounts | None = sources.get("consents")
    pre_op: NurseDocSnapshot | None = sources.get("nurse_pre_op")
    intra_op: NurseDocSnapshot | None = sources.get("nurse_intra_op")
    recovery: NurseDocSnapshot | None = sources.get("nurse_recovery")
    return {
        "doctor_planning_missing_count": plan.missing_count if plan else None,
        "doctor_plan_ready": plan.ready if plan else None,
        "consents_signed_count": consents.signed if consents else None,
        "consents_total_count": consents.total if consents else None,
        "pre_op_photos_count": plan.pre_op_photo_count if plan else None,
        "nurse_preop_status": pre_op.status if pre_op else None,
        "nurse_intra_op_status": intra_op.status if intra_op else None,
        "intra_op_discrepancy": intra_op.discrepancy_flag if intra_op else None,
        "nurse_recovery_status": recovery.status if recovery else None,
        "discharge_ready": recovery.discharge_ready if recovery else None,
        "operative_note_status": sources.get("operative_note"),
    }

