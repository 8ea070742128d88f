from app.models.base import ApiModel
from app.models.enums import CaseStatus


class TimelineFields(ApiModel):
    wheels_in: str | None = None
    anesthesia_start: str | None = None
    incision_time: str | None = None
    closure_time: str | None = None
    anesthesia_end: str | None = None
    wheels_out: str | None = None


class TimelineDurations(ApiModel):
    """Derived durations in whole minutes; None when an endpoint is missing."""
    or_time_minutes: int | None = None
    surgery_time_minutes: int | None = None
    prep_time_minutes: int | None = None
    close_out_time_minutes: int | None = None
    anesthesia_time_minutes: int | None = None


class MissingTimelineItem(ApiModel):
    field: str
    label: str


class TimelineResponse(ApiModel):
    case_id: str
    case_status: CaseStatus
    fields: TimelineFields
    durations: TimelineDurations
    missing_items: list[MissingTimelineItem] = []
