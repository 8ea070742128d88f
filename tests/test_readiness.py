"""Tests for the readiness aggregator and its severity policy."""

import pytest

from app.errors import InvalidTransitionError, NotFoundError
from app.models.checklist import ChecklistItem
from app.models.enums import BlockerCategory, BlockerLevel, CaseStatus, ChecklistPhase, NurseDocPhase
from app.services.collaborators import database_collaborators
from app.services.engine import build_engine
from app.services.readiness import DEFAULT_POLICY, ReadinessRule


class BrokenPlanProvider:
    async def get_plan_status(self, case_id):
        raise ConnectionError("planning service down")


def messages(verdict) -> list[str]:
    return [r.message for r in verdict.reasons]


async def test_ready_case_is_clear(engine, make_case, clinical):
    case_id = await make_case()
    await clinical.ready_for_theatre(case_id)

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.IN_PREP)
    assert verdict.level == BlockerLevel.CLEAR
    assert verdict.reasons == []
    assert verdict.action == CaseStatus.IN_PREP


async def test_planning_and_consent_block_prep(engine, make_case, clinical):
    case_id = await make_case()
    await clinical.plan(case_id, ready=False, procedure_plan="", risk_factors=None)
    await clinical.consents(case_id, signed=0, total=2)

    verdict = await engine.readiness.evaluate(case_id, "IN_PREP")
    assert verdict.level == BlockerLevel.BLOCKED
    assert "Doctor planning: 2 item(s) missing" in messages(verdict)
    assert "Consents signed: 0 of 2" in messages(verdict)
    # pre-op nursing is only a warning at this stage
    pre_op = next(r for r in verdict.reasons if r.key == "nurse_pre_op")
    assert pre_op.severity == BlockerLevel.WARNING
    assert pre_op.message == "Nurse pre-op checklist: not started"


async def test_plan_not_marked_ready(engine, make_case, clinical):
    case_id = await make_case()
    await clinical.plan(case_id, ready=False)
    await clinical.consents(case_id, signed=1, total=1)

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.IN_PREP)
    assert "Doctor planning: not marked ready for surgery" in messages(verdict)


async def test_no_consents_counts_as_incomplete(engine, make_case, clinical):
    case_id = await make_case()
    await clinical.plan(case_id)

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.IN_PREP)
    assert "Consents signed: 0 of 0" in messages(verdict)
    assert verdict.level == BlockerLevel.BLOCKED


async def test_sign_in_draft_reports_unconfirmed_count(engine, make_case, clinical, nurse):
    case_id = await make_case(CaseStatus.IN_PREP)
    await clinical.ready_for_theatre(case_id)
    await engine.checklists.save_draft(
        case_id, ChecklistPhase.SIGN_IN,
        [ChecklistItem(key="patient_identity", confirmed=True), ChecklistItem(key="site_marked", confirmed=True)],
        nurse,
    )

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.IN_THEATER)
    assert verdict.level == BlockerLevel.BLOCKED
    assert messages(verdict) == ["WHO Sign-In not finalized (6 of 8 item(s) unconfirmed)"]
    assert verdict.reasons[0].category == BlockerCategory.CHECKLIST


async def test_recovery_rules(engine, make_case, clinical, nurse, confirmed_items):
    case_id = await make_case(CaseStatus.IN_THEATER)
    await clinical.ready_for_theatre(case_id)
    await engine.checklists.finalize(case_id, "SIGN_IN", confirmed_items(ChecklistPhase.SIGN_IN), nurse)
    await engine.checklists.finalize(case_id, "TIME_OUT", confirmed_items(ChecklistPhase.TIME_OUT), nurse)
    await clinical.nurse_doc(case_id, NurseDocPhase.INTRA_OP, data={"counts": {"countCorrect": False}})

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.RECOVERY)
    assert verdict.level == BlockerLevel.BLOCKED
    assert [r.message for r in verdict.blocking] == ["Nurse intra-op: count discrepancy flagged"]
    timeline_warning = next(r for r in verdict.warnings if r.category == BlockerCategory.TIMELINE)
    assert timeline_warning.message.startswith("Timeline: missing Wheels In")


async def test_completion_rules(engine, make_case, clinical):
    case_id = await make_case(CaseStatus.RECOVERY)
    await clinical.ready_for_theatre(case_id)
    await clinical.nurse_doc(case_id, NurseDocPhase.INTRA_OP)
    await clinical.nurse_doc(case_id, NurseDocPhase.RECOVERY, status="DRAFT")
    await clinical.operative_note(case_id, status="DRAFT")

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.COMPLETED)
    blocking = [r.message for r in verdict.blocking]
    assert "Nurse recovery record: draft" in blocking
    assert "Operative note: draft" in blocking
    assert "WHO Sign-Out not finalized" in blocking
    # discharge is only judged on a final recovery record
    assert "Recovery: discharge criteria not met" not in blocking


async def test_default_action_is_next_status(engine, make_case, clinical):
    case_id = await make_case(CaseStatus.IN_PREP)
    await clinical.ready_for_theatre(case_id)

    verdict = await engine.readiness.evaluate(case_id)
    assert verdict.action == CaseStatus.IN_THEATER
    assert verdict.current_status == CaseStatus.IN_PREP
    assert messages(verdict) == ["WHO Sign-In not finalized"]


async def test_completed_case_is_clear(engine, make_case):
    case_id = await make_case(CaseStatus.COMPLETED)
    verdict = await engine.readiness.evaluate(case_id)
    assert verdict.action is None
    assert verdict.level == BlockerLevel.CLEAR


async def test_unknown_case(engine):
    with pytest.raises(NotFoundError):
        await engine.readiness.evaluate("missing", CaseStatus.IN_PREP)


async def test_unknown_action(engine, make_case):
    case_id = await make_case()
    with pytest.raises(InvalidTransitionError):
        await engine.readiness.evaluate(case_id, "TELEPORT")


async def test_collaborator_failure_degrades_to_warning(db, events, make_case, clinical):
    collaborators = database_collaborators(db)
    collaborators.plans = BrokenPlanProvider()
    engine = build_engine(db, events, collaborators=collaborators)

    case_id = await make_case()
    await clinical.consents(case_id, signed=1, total=1)
    await clinical.nurse_doc(case_id, NurseDocPhase.PRE_OP)

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.IN_PREP)
    assert verdict.level == BlockerLevel.WARNING
    assert len(verdict.reasons) == 1
    reason = verdict.reasons[0]
    assert reason.unavailable is True
    assert reason.severity == BlockerLevel.WARNING
    assert reason.message == "Doctor planning status unavailable"


async def test_injected_policy(db, events, make_case):
    """A deployment can supply its own rule table."""
    relaxed = tuple(
        ReadinessRule(r.key, r.category, r.source, {a: BlockerLevel.WARNING for a in r.severities}, r.check)
        for r in DEFAULT_POLICY
    )
    engine = build_engine(db, events, policy=relaxed)
    case_id = await make_case()

    verdict = await engine.readiness.evaluate(case_id, CaseStatus.IN_PREP)
    assert verdict.level == BlockerLevel.WARNING
    assert verdict.blocking == []
