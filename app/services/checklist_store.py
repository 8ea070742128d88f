"""WHO checklist phase storage: draft-save and immutable finalize.

Per phase: EMPTY -> DRAFT (any save) -> FINALIZED (terminal).

Writes are conditional on ``completed_at IS NULL`` so a finalized phase can
never be overwritten, and finalize/draft calls for the same phase are
serialized in-process so two concurrent finalizes yield exactly one success.
"""

import json
import logging

from pydantic import TypeAdapter, ValidationError

from app.database import DatabaseAdapter
from app.errors import AlreadyFinalizedError, IncompleteChecklistError, InvalidChecklistItemError
from app.models.checklist import (
    ChecklistItem,
    ChecklistSectionCompletion,
    ChecklistStatus,
    PhaseState,
    SectionCompletion,
)
from app.models.enums import ChecklistPhase
from app.models.surgical_case import ActorContext
from app.services.locks import KeyedLocks
from app.services.surgical_cases import ensure_case_exists
from app.services.who_checklist import (
    PHASE_TEMPLATES,
    merge_items,
    missing_items,
    parse_phase,
    unknown_keys,
)
from app.timestamps import to_iso, utcnow

logger = logging.getLogger(__name__)

_items_adapter = TypeAdapter(list[ChecklistItem])

_phase_locks = KeyedLocks()

_STATUS_FIELDS = {
    ChecklistPhase.SIGN_IN: "sign_in",
    ChecklistPhase.TIME_OUT: "time_out",
    ChecklistPhase.SIGN_OUT: "sign_out",
}


def _parse_items(raw: str | None, case_id: str, phase: str) -> list[ChecklistItem] | None:
    if not raw:
        return None
    try:
        return _items_adapter.validate_json(raw)
    except ValidationError:
        logger.warning("Unreadable checklist items for case %s phase %s", case_id, phase)
        return None


def _row_to_state(row, case_id: str) -> PhaseState:
    return PhaseState(
        completed=row["completed_at"] is not None,
        completed_at=row["completed_at"],
        completed_by_user_id=row["completed_by_user_id"],
        completed_by_role=row["completed_by_role"],
        updated_at=row["updated_at"],
        items=_parse_items(row["items"], case_id, row["phase"]),
    )


def _dump_items(items: list[ChecklistItem]) -> str:
    return json.dumps([i.model_dump(mode="json") for i in items])


class ChecklistStore:
    def __init__(self, db: DatabaseAdapter, events=None) -> None:
        self.db = db
        self.events = events

    async def _phase_rows(self, case_id: str) -> dict[ChecklistPhase, object]:
        rows = await self.db.fetch_all(
            "SELECT * FROM surgical_checklist_phases WHERE case_id = ?",
            (case_id,),
        )
        result = {}
        for row in rows:
            try:
                result[ChecklistPhase(row["phase"])] = row
            except ValueError:
                logger.warning("Ignoring unknown checklist phase %r for case %s", row["phase"], case_id)
        return result

    async def get_status(self, case_id: str) -> ChecklistStatus:
        """Checklist status for a case; unknown cases get the unstarted shape."""
        rows = await self._phase_rows(case_id)
        states = {
            _STATUS_FIELDS[phase]: _row_to_state(row, case_id)
            for phase, row in rows.items()
        }
        return ChecklistStatus(case_id=case_id, **states)

    async def section_completion(self, case_id: str) -> ChecklistSectionCompletion:
        rows = await self._phase_rows(case_id)
        sections = {}
        for phase, template in PHASE_TEMPLATES.items():
            row = rows.get(phase)
            items = _parse_items(row["items"], case_id, phase.value) if row else None
            total = len(template.items)
            sections[_STATUS_FIELDS[phase]] = SectionCompletion(
                total=total,
                confirmed=total - len(missing_items(phase, items)),
                finalized=bool(row and row["completed_at"] is not None),
            )
        return ChecklistSectionCompletion(**sections)

    async def _load_phase(self, case_id: str, phase: ChecklistPhase):
        return await self.db.fetch_one(
            "SELECT * FROM surgical_checklist_phases WHERE case_id = ? AND phase = ?",
            (case_id, phase.value),
        )

    @staticmethod
    def _check_keys(phase: ChecklistPhase, items: list[ChecklistItem]) -> None:
        unknown = unknown_keys(phase, items)
        if unknown:
            raise InvalidChecklistItemError(
                f"Unknown {PHASE_TEMPLATES[phase].title} item(s): {', '.join(unknown)}",
                phase=phase.value,
                unknownKeys=unknown,
            )

    @staticmethod
    def _already_finalized(case_id: str, phase: ChecklistPhase) -> AlreadyFinalizedError:
        return AlreadyFinalizedError(
            f"{PHASE_TEMPLATES[phase].title} is already finalized and cannot be edited",
            caseId=case_id,
            phase=phase.value,
        )

    async def save_draft(
        self,
        case_id: str,
        phase: str | ChecklistPhase,
        items: list[ChecklistItem],
        actor: ActorContext,
    ) -> ChecklistStatus:
        """Save a partial set of confirmations without finalizing."""
        phase = parse_phase(phase)
        self._check_keys(phase, items)
        await ensure_case_exists(self.db, case_id)

        async with _phase_locks.hold((case_id, phase)):
            row = await self._load_phase(case_id, phase)
            if row and row["completed_at"] is not None:
                raise self._already_finalized(case_id, phase)

            existing = _parse_items(row["items"], case_id, phase.value) if row else None
            merged = merge_items(phase, existing, items)
            now = to_iso(utcnow())

            written = await self.db.execute(
                """INSERT INTO surgical_checklist_phases (case_id, phase, items, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (case_id, phase) DO UPDATE SET
                    items = excluded.items,
                    updated_at = excluded.updated_at
                WHERE surgical_checklist_phases.completed_at IS NULL""",
                (case_id, phase.value, _dump_items(merged), now),
            )
            if not written:
                raise self._already_finalized(case_id, phase)

        logger.info(
            "Checklist draft saved: case=%s phase=%s confirmed=%d/%d by %s",
            case_id, phase.value, sum(i.confirmed for i in merged), len(merged), actor.user_id,
        )
        await self._publish(case_id, phase, finalized=False)
        return await self.get_status(case_id)

    async def finalize(
        self,
        case_id: str,
        phase: str | ChecklistPhase,
        items: list[ChecklistItem],
        actor: ActorContext,
    ) -> ChecklistStatus:
        """Finalize a phase; every template item must be confirmed.

        Items are merged over the saved draft first. Nothing is written when
        validation fails.
        """
        phase = parse_phase(phase)
        self._check_keys(phase, items)
        await ensure_case_exists(self.db, case_id)

        async with _phase_locks.hold((case_id, phase)):
            row = await self._load_phase(case_id, phase)
            if row and row["completed_at"] is not None:
                raise self._already_finalized(case_id, phase)

            existing = _parse_items(row["items"], case_id, phase.value) if row else None
            merged = merge_items(phase, existing, items)
            missing = missing_items(phase, merged)
            if missing:
                raise IncompleteChecklistError(
                    f"Cannot finalize {PHASE_TEMPLATES[phase].title}: "
                    f"{len(missing)} required item(s) not confirmed",
                    missing_items=missing,
                    caseId=case_id,
                    phase=phase.value,
                )

            now = to_iso(utcnow())
            written = await self.db.execute(
                """INSERT INTO surgical_checklist_phases (
                    case_id, phase, items, completed_at, completed_by_user_id, completed_by_role, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (case_id, phase) DO UPDATE SET
                    items = excluded.items,
                    completed_at = excluded.completed_at,
                    completed_by_user_id = excluded.completed_by_user_id,
                    completed_by_role = excluded.completed_by_role,
                    updated_at = excluded.updated_at
                WHERE surgical_checklist_phases.completed_at IS NULL""",
                (case_id, phase.value, _dump_items(merged), now, actor.user_id, actor.role, now),
            )
            if not written:
                raise self._already_finalized(case_id, phase)

        logger.info(
            "Checklist %s finalized for case %s by %s (%s)",
            phase.value, case_id, actor.user_id, actor.role,
        )
        await self._publish(case_id, phase, finalized=True)
        return await self.get_status(case_id)

    async def _publish(self, case_id: str, phase: ChecklistPhase, finalized: bool) -> None:
        if self.events is None:
            return
        await self.events.publish(
            case_id,
            "checklist_updated",
            {"phase": phase.value, "finalized": finalized},
        )
