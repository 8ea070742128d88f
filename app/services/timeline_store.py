"""Operative timeline persistence with all-or-nothing batch validation."""

import logging
from typing import Any

from app.config import TIMELINE_FUTURE_BUFFER_MINUTES, TIMELINE_MAX_AGE_HOURS
from app.database import DatabaseAdapter
from app.errors import TimelineValidationError
from app.models.enums import CaseStatus
from app.models.surgical_case import ActorContext
from app.models.timeline import TimelineResponse
from app.services.locks import KeyedLocks
from app.services.operative_timeline import (
    TIMELINE_FIELD_ORDER,
    Timeline,
    apply_patch,
    compute_durations,
    missing_for_status,
    timeline_from_row,
    to_fields,
    validate_timeline,
)
from app.services.surgical_cases import ensure_case_exists
from app.timestamps import to_iso, utcnow

logger = logging.getLogger(__name__)

_timeline_locks = KeyedLocks()


class TimelineStore:
    def __init__(
        self,
        db: DatabaseAdapter,
        events=None,
        future_buffer_minutes: int = TIMELINE_FUTURE_BUFFER_MINUTES,
        max_age_hours: int = TIMELINE_MAX_AGE_HOURS,
    ) -> None:
        self.db = db
        self.events = events
        self.future_buffer_minutes = future_buffer_minutes
        self.max_age_hours = max_age_hours

    async def load(self, case_id: str) -> Timeline:
        """Raw timeline values; empty for a case that has none recorded."""
        row = await self.db.fetch_one(
            "SELECT * FROM procedure_timelines WHERE case_id = ?",
            (case_id,),
        )
        return timeline_from_row(row)

    @staticmethod
    def _response(case_id: str, status: CaseStatus, timeline: Timeline) -> TimelineResponse:
        return TimelineResponse(
            case_id=case_id,
            case_status=status,
            fields=to_fields(timeline),
            durations=compute_durations(timeline),
            missing_items=missing_for_status(status, timeline),
        )

    async def get_timeline(self, case_id: str) -> TimelineResponse:
        status = await ensure_case_exists(self.db, case_id)
        return self._response(case_id, status, await self.load(case_id))

    async def update_timeline(
        self,
        case_id: str,
        fields: dict[str, Any],
        actor: ActorContext,
    ) -> TimelineResponse:
        """Apply a partial update. The whole batch is rejected on any error."""
        status = await ensure_case_exists(self.db, case_id)

        async with _timeline_locks.hold(case_id):
            current = await self.load(case_id)
            now = utcnow().replace(microsecond=0)
            proposed, touched, errors = apply_patch(current, fields, now)
            errors += validate_timeline(
                proposed,
                touched,
                now,
                self.future_buffer_minutes,
                self.max_age_hours,
            )
            if errors:
                logger.info(
                    "Rejected timeline update for case %s: %d error(s)", case_id, len(errors),
                )
                raise TimelineValidationError(
                    "Timeline update rejected",
                    errors=[e.to_dict() for e in errors],
                    caseId=case_id,
                )

            values = [to_iso(proposed[f]) if proposed[f] else None for f in TIMELINE_FIELD_ORDER]
            columns = ", ".join(TIMELINE_FIELD_ORDER)
            updates = ", ".join(f"{f} = excluded.{f}" for f in TIMELINE_FIELD_ORDER)
            await self.db.execute(
                f"""INSERT INTO procedure_timelines (case_id, {columns}, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (case_id) DO UPDATE SET {updates}, updated_at = excluded.updated_at""",
                (case_id, *values, to_iso(now)),
            )

        logger.info(
            "Timeline updated for case %s by %s: %s", case_id, actor.user_id, ", ".join(touched) or "no fields",
        )
        if self.events is not None:
            await self.events.publish(case_id, "timeline_updated", {"fields": touched})
        return self._response(case_id, status, proposed)
