from datetime import datetime

from pydantic import Field

from app.models.base import ApiModel
from app.models.enums import BookingStatus, CaseStatus, Urgency
from app.models.readiness import BlockerReason


class ActorContext(ApiModel):
    user_id: str = "anonymous"
    role: str = "UNKNOWN"


class TheaterBookingCreate(ApiModel):
    theater_id: str
    theater_name: str
    start_time: datetime
    end_time: datetime


class TheaterBooking(ApiModel):
    id: str
    case_id: str
    theater_id: str
    theater_name: str
    start_time: str
    end_time: str
    status: BookingStatus = BookingStatus.CONFIRMED


class SurgicalCaseCreate(ApiModel):
    patient_id: str
    patient_name: str
    primary_surgeon_id: str
    primary_surgeon_name: str = ""
    procedure_name: str
    side: str | None = None
    urgency: Urgency = Urgency.ELECTIVE
    booking: TheaterBookingCreate | None = None


class SurgicalCase(ApiModel):
    id: str
    patient_id: str
    patient_name: str
    primary_surgeon_id: str
    primary_surgeon_name: str = ""
    procedure_name: str
    side: str | None = None
    urgency: Urgency = Urgency.ELECTIVE
    status: CaseStatus = CaseStatus.SCHEDULED
    version: int = 0
    created_at: str
    updated_at: str | None = None
    booking: TheaterBooking | None = None


class TransitionRequest(ApiModel):
    action: str
    reason: str | None = Field(None, max_length=1000)


class TransitionResult(ApiModel):
    case_id: str
    previous_status: CaseStatus
    new_status: CaseStatus
    transitioned_at: str
    transitioned_by: str
    warnings: list[BlockerReason] = []


class TransitionAuditEntry(ApiModel):
    id: int | None = None
    case_id: str
    previous_status: CaseStatus
    new_status: CaseStatus
    actor_user_id: str
    actor_role: str
    reason: str | None = None
    created_at: str
