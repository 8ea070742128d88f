from app.models.base import ApiModel
from app.models.checklist import ChecklistSectionCompletion
from app.models.enums import CaseStatus, DocStatus, Urgency
from app.models.readiness import ReadinessVerdict
from app.models.timeline import MissingTimelineItem, TimelineDurations, TimelineFields


class DayboardBooking(ApiModel):
    id: str
    theater_id: str
    theater_name: str
    start_time: str
    end_time: str
    status: str


class BlockerSnapshot(ApiModel):
    doctor_planning_missing_count: int | None = None
    doctor_plan_ready: bool | None = None
    consents_signed_count: int | None = None
    consents_total_count: int | None = None
    pre_op_photos_count: int | None = None
    nurse_preop_status: DocStatus | None = None
    nurse_intra_op_status: DocStatus | None = None
    intra_op_discrepancy: bool | None = None
    nurse_recovery_status: DocStatus | None = None
    discharge_ready: bool | None = None
    operative_note_status: DocStatus | None = None


class DayboardCase(ApiModel):
    id: str
    status: CaseStatus
    urgency: Urgency
    procedure_name: str
    side: str | None = None
    patient_id: str
    patient_name: str
    primary_surgeon_id: str
    primary_surgeon_name: str = ""
    booking: DayboardBooking
    checklist: ChecklistSectionCompletion | None = None
    timeline: TimelineFields | None = None
    durations: TimelineDurations | None = None
    timeline_missing_items: list[MissingTimelineItem] = []
    blockers: BlockerSnapshot | None = None
    readiness: ReadinessVerdict | None = None
    readiness_error: str | None = None


class DayboardTheater(ApiModel):
    id: str
    name: str
    cases: list[DayboardCase] = []


class DayboardSummary(ApiModel):
    total_cases: int = 0
    by_status: dict[str, int] = {}
    blocked_count: int = 0
    warning_count: int = 0
    readiness_unavailable_count: int = 0
    total_or_time_minutes: int = 0
    avg_or_time_minutes: int | None = None
    delayed_start_count: int = 0
    utilization_by_theater: dict[str, int] = {}


class Dayboard(ApiModel):
    date: str
    theaters: list[DayboardTheater] = []
    summary: DayboardSummary = DayboardSummary()
