"""Theatre dayboard: every booked case for one day, grouped by theatre.

Read-only. A failure while assembling one case is logged and that case is
rendered without a verdict; the rest of the board is unaffected.
"""

import logging
from collections import Counter, defaultdict
from datetime import UTC, date, datetime, time, timedelta

from app.config import DAYBOARD_DELAY_THRESHOLD_MINUTES
from app.database import DatabaseAdapter
from app.models.dayboard import (
    BlockerSnapshot,
    Dayboard,
    DayboardBooking,
    DayboardCase,
    DayboardSummary,
    DayboardTheater,
)
from app.models.enums import NEXT_STATUS, BlockerLevel, BookingStatus, CaseStatus
from app.services.checklist_store import ChecklistStore
from app.services.operative_timeline import (
    compute_durations,
    missing_for_status,
    round_half_up,
    to_fields,
)
from app.services.readiness import ALL_SOURCES, ReadinessAggregator, describe_sources
from app.services.timeline_store import TimelineStore
from app.timestamps import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

_DAYBOARD_QUERY = """
    SELECT
        c.id AS case_id, c.status, c.urgency, c.procedure_name, c.side,
        c.patient_id, c.patient_name, c.primary_surgeon_id, c.primary_surgeon_name,
        b.id AS booking_id, b.theater_id, b.theater_name, b.start_time, b.end_time,
        b.status AS booking_status
    FROM theater_bookings b
    JOIN surgical_cases c ON c.id = b.case_id
    WHERE b.start_time >= ? AND b.start_time < ? AND b.status != ?
"""


class DayboardService:
    def __init__(
        self,
        db: DatabaseAdapter,
        aggregator: ReadinessAggregator,
        checklist_store: ChecklistStore,
        timeline_store: TimelineStore,
        delay_threshold_minutes: int = DAYBOARD_DELAY_THRESHOLD_MINUTES,
    ) -> None:
        self.db = db
        self.aggregator = aggregator
        self.checklist_store = checklist_store
        self.timeline_store = timeline_store
        self.delay_threshold = timedelta(minutes=delay_threshold_minutes)

    async def _booked_rows(self, day: date, theater_id: str | None, status: CaseStatus | None):
        start = datetime.combine(day, time.min, tzinfo=UTC)
        query = _DAYBOARD_QUERY
        params: list = [to_iso(start), to_iso(start + timedelta(days=1)), BookingStatus.CANCELLED.value]
        if theater_id:
            query += " AND b.theater_id = ?"
            params.append(theater_id)
        if status:
            query += " AND c.status = ?"
            params.append(status.value)
        query += " ORDER BY b.start_time ASC"
        return await self.db.fetch_all(query, params)

    @staticmethod
    def _base_case(row) -> DayboardCase:
        return DayboardCase(
            id=row["case_id"],
            status=row["status"],
            urgency=row["urgency"],
            procedure_name=row["procedure_name"],
            side=row["side"],
            patient_id=row["patient_id"],
            patient_name=row["patient_name"],
            primary_surgeon_id=row["primary_surgeon_id"],
            primary_surgeon_name=row["primary_surgeon_name"] or "",
            booking=DayboardBooking(
                id=row["booking_id"],
                theater_id=row["theater_id"],
                theater_name=row["theater_name"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                status=row["booking_status"],
            ),
        )

    async def _build_case(self, row) -> DayboardCase:
        entry = self._base_case(row)
        timeline = await self.timeline_store.load(entry.id)
        sources = await self.aggregator.gather_sources(entry.id, ALL_SOURCES)

        entry.checklist = await self.checklist_store.section_completion(entry.id)
        entry.timeline = to_fields(timeline)
        entry.durations = compute_durations(timeline)
        entry.timeline_missing_items = missing_for_status(entry.status, timeline)
        entry.blockers = BlockerSnapshot(**describe_sources(sources))
        entry.readiness = self.aggregator.judge(
            entry.id, entry.status, NEXT_STATUS[entry.status], sources,
        )
        return entry

    async def get_dayboard(
        self,
        day: date | None = None,
        theater_id: str | None = None,
        status: CaseStatus | None = None,
    ) -> Dayboard:
        day = day or utcnow().date()
        rows = await self._booked_rows(day, theater_id, status)

        cases: list[DayboardCase] = []
        for row in rows:
            try:
                cases.append(await self._build_case(row))
            except Exception as exc:
                logger.exception("Dayboard entry failed for case %s", row["case_id"])
                entry = self._base_case(row)
                entry.readiness_error = f"Readiness could not be evaluated: {exc}"
                cases.append(entry)

        theaters: dict[str, DayboardTheater] = {}
        for entry in cases:
            theater = theaters.setdefault(
                entry.booking.theater_id,
                DayboardTheater(id=entry.booking.theater_id, name=entry.booking.theater_name),
            )
            theater.cases.append(entry)

        return Dayboard(
            date=day.isoformat(),
            theaters=sorted(theaters.values(), key=lambda t: (t.name, t.id)),
            summary=self.summarize(cases),
        )

    def summarize(self, cases: list[DayboardCase]) -> DayboardSummary:
        by_status = Counter(c.status.value for c in cases)
        levels = Counter(c.readiness.level for c in cases if c.readiness)
        unavailable = sum(
            1 for c in cases
            if c.readiness is None or any(r.unavailable for r in c.readiness.reasons)
        )

        or_times: list[int] = []
        utilization: dict[str, int] = defaultdict(int)
        delayed = 0
        for c in cases:
            minutes = c.durations.or_time_minutes if c.durations else None
            if minutes and minutes > 0:
                or_times.append(minutes)
                utilization[c.booking.theater_id] += minutes
            wheels_in = c.timeline.wheels_in if c.timeline else None
            if wheels_in and parse_iso(wheels_in) > parse_iso(c.booking.start_time) + self.delay_threshold:
                delayed += 1

        total_or = sum(or_times)
        return DayboardSummary(
            total_cases=len(cases),
            by_status=dict(by_status),
            blocked_count=levels[BlockerLevel.BLOCKED],
            warning_count=levels[BlockerLevel.WARNING],
            readiness_unavailable_count=unavailable,
            total_or_time_minutes=total_or,
            avg_or_time_minutes=round_half_up(total_or / len(or_times)) if or_times else None,
            delayed_start_count=delayed,
            utilization_by_theater=dict(utilization),
        )
