"""Operative timeline: field catalogue, validation and derived durations.

Canonical chronological order:
    wheels_in -> anesthesia_start -> incision_time -> closure_time -> anesthesia_end -> wheels_out

All timestamps are optional; a partial timeline is valid as long as the values
that are present respect this order.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.models.enums import CaseStatus
from app.models.timeline import MissingTimelineItem, TimelineDurations, TimelineFields
from app.timestamps import parse_iso, to_iso

TIMELINE_FIELD_ORDER = (
    "wheels_in",
    "anesthesia_start",
    "incision_time",
    "closure_time",
    "anesthesia_end",
    "wheels_out",
)

TIMELINE_FIELDS_SET = frozenset(TIMELINE_FIELD_ORDER)

TIMELINE_FIELD_LABELS = {
    "wheels_in": "Wheels In",
    "anesthesia_start": "Anesthesia Start",
    "incision_time": "Incision",
    "closure_time": "Closure",
    "anesthesia_end": "Anesthesia End",
    "wheels_out": "Wheels Out",
}

# camelCase wire names -> column names
_CAMEL_NAMES = {
    "wheelsIn": "wheels_in",
    "anesthesiaStart": "anesthesia_start",
    "incisionTime": "incision_time",
    "closureTime": "closure_time",
    "anesthesiaEnd": "anesthesia_end",
    "wheelsOut": "wheels_out",
}

# duration name -> (start field, end field)
DURATIONS = {
    "or_time_minutes": ("wheels_in", "wheels_out"),
    "surgery_time_minutes": ("incision_time", "closure_time"),
    "prep_time_minutes": ("wheels_in", "incision_time"),
    "close_out_time_minutes": ("closure_time", "wheels_out"),
    "anesthesia_time_minutes": ("anesthesia_start", "anesthesia_end"),
}

_EXPECTED_BY_STATUS: dict[CaseStatus, tuple[str, ...]] = {
    CaseStatus.SCHEDULED: (),
    CaseStatus.IN_PREP: (),
    CaseStatus.IN_THEATER: ("wheels_in", "anesthesia_start", "incision_time"),
    CaseStatus.RECOVERY: TIMELINE_FIELD_ORDER,
    CaseStatus.COMPLETED: TIMELINE_FIELD_ORDER,
}

Timeline = dict[str, datetime | None]


@dataclass
class FieldError:
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


def canonical_field(name: str) -> str | None:
    if name in TIMELINE_FIELDS_SET:
        return name
    return _CAMEL_NAMES.get(name)


def empty_timeline() -> Timeline:
    return {f: None for f in TIMELINE_FIELD_ORDER}


def timeline_from_row(row) -> Timeline:
    if row is None:
        return empty_timeline()
    return {f: parse_iso(row[f]) if row[f] else None for f in TIMELINE_FIELD_ORDER}


def to_fields(timeline: Timeline) -> TimelineFields:
    return TimelineFields(**{
        f: to_iso(v) if v is not None else None for f, v in timeline.items()
    })


def round_half_up(value: float) -> int:
    """Nearest integer, with halves rounded up (2.5 -> 3, 3.5 -> 4)."""
    return math.floor(value + 0.5)


def minutes_between(start: datetime, end: datetime) -> int:
    return round_half_up((end - start).total_seconds() / 60)


def compute_durations(timeline: Timeline) -> TimelineDurations:
    values = {}
    for name, (start_field, end_field) in DURATIONS.items():
        start, end = timeline.get(start_field), timeline.get(end_field)
        values[name] = minutes_between(start, end) if start and end else None
    return TimelineDurations(**values)


def missing_for_status(status: CaseStatus, timeline: Timeline) -> list[MissingTimelineItem]:
    """Fields expected by ``status`` that are still empty (advisory only)."""
    return [
        MissingTimelineItem(field=f, label=TIMELINE_FIELD_LABELS[f])
        for f in _EXPECTED_BY_STATUS[status]
        if timeline.get(f) is None
    ]


def apply_patch(
    current: Timeline,
    patch: dict[str, Any],
    now: datetime,
) -> tuple[Timeline, list[str], list[FieldError]]:
    """Resolve a partial update onto ``current``.

    Values may be ISO strings, datetimes, ``"now"`` or None (clear). Returns
    the proposed timeline, the touched fields and any per-field errors.
    """
    proposed = dict(current)
    touched: list[str] = []
    errors: list[FieldError] = []

    for raw_name, raw_value in patch.items():
        field = canonical_field(raw_name)
        if field is None:
            errors.append(FieldError(raw_name, f"Unknown timeline field: {raw_name}"))
            continue

        label = TIMELINE_FIELD_LABELS[field]
        if raw_value is None:
            value = None
        elif isinstance(raw_value, datetime):
            value = parse_iso(raw_value.isoformat())
        elif isinstance(raw_value, str) and raw_value.strip().lower() == "now":
            value = now
        elif isinstance(raw_value, str):
            try:
                value = parse_iso(raw_value)
            except ValueError:
                errors.append(FieldError(field, f"{label} must be a valid ISO 8601 datetime"))
                continue
        else:
            errors.append(FieldError(field, f"{label} must be a valid ISO 8601 datetime"))
            continue

        proposed[field] = value
        touched.append(field)

    return proposed, touched, errors


def validate_timeline(
    timeline: Timeline,
    touched: list[str],
    now: datetime,
    future_buffer_minutes: int,
    max_age_hours: int,
) -> list[FieldError]:
    """Range checks on the touched fields plus chronological order on every pair."""
    errors: list[FieldError] = []
    future_limit = now + timedelta(minutes=future_buffer_minutes)
    past_limit = now - timedelta(hours=max_age_hours) if max_age_hours > 0 else None

    for field in touched:
        value = timeline[field]
        if value is None:
            continue
        label = TIMELINE_FIELD_LABELS[field]
        if value > future_limit:
            errors.append(FieldError(field, f"{label} cannot be in the future"))
        if past_limit is not None and value < past_limit:
            errors.append(FieldError(
                field,
                f"{label} is more than {max_age_hours} hours in the past; possible date error",
            ))

    for i, earlier in enumerate(TIMELINE_FIELD_ORDER):
        for later in TIMELINE_FIELD_ORDER[i + 1:]:
            a, b = timeline[earlier], timeline[later]
            if a is None or b is None:
                continue
            if b < a and (earlier in touched or later in touched):
                offending = later if later in touched else earlier
                errors.append(FieldError(
                    offending,
                    f"{TIMELINE_FIELD_LABELS[later]} must not be before {TIMELINE_FIELD_LABELS[earlier]}",
                ))

    return errors
