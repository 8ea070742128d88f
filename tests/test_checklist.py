"""Tests for WHO checklist templates and the draft/finalize store."""

import asyncio

import pytest

from app.errors import (
    AlreadyFinalizedError,
    IncompleteChecklistError,
    InvalidChecklistItemError,
    InvalidPhaseError,
    NotFoundError,
)
from app.models.checklist import ChecklistItem
from app.models.enums import ChecklistPhase
from app.services.who_checklist import (
    PHASE_TEMPLATES,
    merge_items,
    missing_items,
    parse_phase,
)

# --- Templates ---


class TestTemplates:
    def test_every_phase_has_a_template(self):
        assert set(PHASE_TEMPLATES) == set(ChecklistPhase)
        for phase, template in PHASE_TEMPLATES.items():
            assert len(set(template.keys)) == len(template.items), phase

    def test_item_counts(self):
        assert len(PHASE_TEMPLATES[ChecklistPhase.SIGN_IN].items) == 8
        assert len(PHASE_TEMPLATES[ChecklistPhase.TIME_OUT].items) == 8
        assert len(PHASE_TEMPLATES[ChecklistPhase.SIGN_OUT].items) == 5

    def test_parse_phase_spellings(self):
        assert parse_phase("SIGN_IN") == ChecklistPhase.SIGN_IN
        assert parse_phase("sign-in") == ChecklistPhase.SIGN_IN
        assert parse_phase("timeOut") == ChecklistPhase.TIME_OUT
        assert parse_phase("signOut") == ChecklistPhase.SIGN_OUT

    def test_parse_phase_unknown(self):
        with pytest.raises(InvalidPhaseError) as exc_info:
            parse_phase("debrief")
        assert exc_info.value.details["phase"] == "debrief"

    def test_merge_returns_full_template_in_order(self):
        incoming = [
            ChecklistItem(key="allergy_check", confirmed=True, label="whatever"),
            ChecklistItem(key="patient_identity", confirmed=True),
        ]
        merged = merge_items(ChecklistPhase.SIGN_IN, None, incoming)
        assert [i.key for i in merged] == PHASE_TEMPLATES[ChecklistPhase.SIGN_IN].keys
        assert merged[0].confirmed is True
        assert merged[5].label == "Known allergies reviewed"
        assert sum(i.confirmed for i in merged) == 2

    def test_merge_overlays_existing_draft(self):
        existing = merge_items(ChecklistPhase.SIGN_OUT, None, [ChecklistItem(key="procedure_recorded", confirmed=True)])
        merged = merge_items(ChecklistPhase.SIGN_OUT, existing, [ChecklistItem(key="recovery_plan", confirmed=True)])
        assert {i.key for i in merged if i.confirmed} == {"procedure_recorded", "recovery_plan"}

    def test_missing_items_labels_in_template_order(self):
        items = [ChecklistItem(key="team_intro", confirmed=True)]
        missing = missing_items(ChecklistPhase.TIME_OUT, items)
        assert len(missing) == 7
        assert missing[0] == "Patient name, procedure, and incision site confirmed"


# --- Store ---


async def test_status_for_unknown_case_is_unstarted(engine):
    status = await engine.checklists.get_status("no-such-case")
    assert status.sign_in_completed is False
    assert status.sign_in.items is None
    assert status.sign_out.completed_at is None


async def test_save_draft_persists_partial_items(engine, make_case, nurse):
    case_id = await make_case()
    status = await engine.checklists.save_draft(
        case_id, "SIGN_IN", [ChecklistItem(key="site_marked", confirmed=True, note="Left knee")], nurse,
    )
    items = status.sign_in.items
    assert len(items) == 8
    assert items[1].key == "site_marked"
    assert items[1].confirmed is True
    assert items[1].note == "Left knee"
    assert status.sign_in_completed is False
    assert status.sign_in.updated_at is not None


async def test_finalize_all_confirmed(engine, make_case, nurse, confirmed_items):
    """Finalizing with every item confirmed marks the phase completed."""
    case_id = await make_case()
    await engine.checklists.finalize(case_id, ChecklistPhase.SIGN_IN, confirmed_items(ChecklistPhase.SIGN_IN), nurse)

    status = await engine.checklists.get_status(case_id)
    assert status.sign_in_completed is True
    assert status.sign_in.completed_at is not None
    assert status.sign_in.completed_by_role == "NURSE"
    assert status.sign_in.completed_by_user_id == "nurse-1"


async def test_finalize_merges_over_draft(engine, make_case, nurse, confirmed_items):
    case_id = await make_case()
    items = confirmed_items(ChecklistPhase.SIGN_OUT)
    await engine.checklists.save_draft(case_id, "SIGN_OUT", items[:3], nurse)
    status = await engine.checklists.finalize(case_id, "SIGN_OUT", items[3:], nurse)
    assert status.sign_out_completed is True


async def test_finalize_complete_draft_without_items(engine, make_case, nurse, confirmed_items):
    case_id = await make_case()
    await engine.checklists.save_draft(case_id, "TIME_OUT", confirmed_items(ChecklistPhase.TIME_OUT), nurse)
    status = await engine.checklists.finalize(case_id, "TIME_OUT", [], nurse)
    assert status.time_out_completed is True
    assert status.time_out.completed_by_user_id == "nurse-1"


async def test_finalize_incomplete_lists_missing_and_writes_nothing(engine, make_case, nurse, confirmed_items):
    case_id = await make_case()
    items = confirmed_items(ChecklistPhase.TIME_OUT)
    items[2].confirmed = False
    items[7].confirmed = False

    with pytest.raises(IncompleteChecklistError) as exc_info:
        await engine.checklists.finalize(case_id, "TIME_OUT", items, nurse)

    assert exc_info.value.missing_items == [
        "Antibiotic prophylaxis given within last 60 minutes",
        "Equipment sterility confirmed (indicator results)",
    ]
    status = await engine.checklists.get_status(case_id)
    assert status.time_out.items is None
    assert status.time_out_completed is False


async def test_finalized_phase_is_immutable(engine, make_case, nurse, confirmed_items):
    case_id = await make_case()
    items = confirmed_items(ChecklistPhase.SIGN_IN)
    await engine.checklists.finalize(case_id, "SIGN_IN", items, nurse)

    with pytest.raises(AlreadyFinalizedError):
        await engine.checklists.save_draft(case_id, "SIGN_IN", [ChecklistItem(key="site_marked")], nurse)
    with pytest.raises(AlreadyFinalizedError):
        await engine.checklists.finalize(case_id, "SIGN_IN", items, nurse)

    status = await engine.checklists.get_status(case_id)
    assert all(i.confirmed for i in status.sign_in.items)


async def test_already_finalized_is_an_invalid_phase_error(engine, make_case, nurse, confirmed_items):
    case_id = await make_case()
    await engine.checklists.finalize(case_id, "SIGN_OUT", confirmed_items(ChecklistPhase.SIGN_OUT), nurse)
    with pytest.raises(InvalidPhaseError):
        await engine.checklists.finalize(case_id, "SIGN_OUT", confirmed_items(ChecklistPhase.SIGN_OUT), nurse)


async def test_concurrent_finalize_one_wins(engine, make_case, nurse, confirmed_items):
    case_id = await make_case()
    items = confirmed_items(ChecklistPhase.SIGN_IN)

    results = await asyncio.gather(
        engine.checklists.finalize(case_id, "SIGN_IN", items, nurse),
        engine.checklists.finalize(case_id, "SIGN_IN", items, nurse),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], AlreadyFinalizedError)


async def test_unknown_item_key_rejected(engine, make_case, nurse):
    case_id = await make_case()
    with pytest.raises(InvalidChecklistItemError) as exc_info:
        await engine.checklists.save_draft(case_id, "SIGN_IN", [ChecklistItem(key="coffee_ready")], nurse)
    assert exc_info.value.details["unknownKeys"] == ["coffee_ready"]


async def test_unknown_phase_rejected(engine, make_case, nurse):
    case_id = await make_case()
    with pytest.raises(InvalidPhaseError):
        await engine.checklists.save_draft(case_id, "DEBRIEF", [ChecklistItem(key="x")], nurse)


async def test_unknown_case_rejected(engine, nurse):
    with pytest.raises(NotFoundError):
        await engine.checklists.save_draft("missing", "SIGN_IN", [ChecklistItem(key="site_marked")], nurse)


async def test_section_completion_counts(engine, make_case, nurse, confirmed_items):
    case_id = await make_case()
    await engine.checklists.finalize(case_id, "SIGN_IN", confirmed_items(ChecklistPhase.SIGN_IN), nurse)
    await engine.checklists.save_draft(case_id, "TIME_OUT", confirmed_items(ChecklistPhase.TIME_OUT)[:3], nurse)

    sections = await engine.checklists.section_completion(case_id)
    assert sections.sign_in.finalized is True
    assert sections.sign_in.confirmed == 8
    assert sections.time_out.confirmed == 3
    assert sections.time_out.total == 8
    assert sections.sign_out.confirmed == 0
    assert sections.sign_out.finalized is False


async def test_checklist_events_published(engine, events, make_case, nurse, confirmed_items):
    queue = events.subscribe_all()
    case_id = await make_case()
    await engine.checklists.finalize(case_id, "SIGN_IN", confirmed_items(ChecklistPhase.SIGN_IN), nurse)

    event = queue.get_nowait()
    assert event["type"] == "checklist_updated"
    assert event["case_id"] == case_id
    assert event["phase"] == "SIGN_IN"
    assert event["finalized"] is True
