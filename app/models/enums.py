from enum import Enum


class CaseStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PREP = "IN_PREP"
    IN_THEATER = "IN_THEATER"
    RECOVERY = "RECOVERY"
    COMPLETED = "COMPLETED"


# Linear forward-only pipeline; cancellation/hold live outside this service.
NEXT_STATUS: dict[CaseStatus, CaseStatus | None] = {
    CaseStatus.SCHEDULED: CaseStatus.IN_PREP,
    CaseStatus.IN_PREP: CaseStatus.IN_THEATER,
    CaseStatus.IN_THEATER: CaseStatus.RECOVERY,
    CaseStatus.RECOVERY: CaseStatus.COMPLETED,
    CaseStatus.COMPLETED: None,
}


class Urgency(str, Enum):
    ELECTIVE = "ELECTIVE"
    URGENT = "URGENT"
    EMERGENCY = "EMERGENCY"


class BookingStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class ChecklistPhase(str, Enum):
    SIGN_IN = "SIGN_IN"
    TIME_OUT = "TIME_OUT"
    SIGN_OUT = "SIGN_OUT"


class NurseDocPhase(str, Enum):
    PRE_OP = "PRE_OP"
    INTRA_OP = "INTRA_OP"
    RECOVERY = "RECOVERY"


class DocStatus(str, Enum):
    NONE = "NONE"
    DRAFT = "DRAFT"
    FINAL = "FINAL"


class BlockerLevel(str, Enum):
    CLEAR = "CLEAR"
    WARNING = "WARNING"
    BLOCKED = "BLOCKED"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {BlockerLevel.CLEAR: 0, BlockerLevel.WARNING: 1, BlockerLevel.BLOCKED: 2}


class BlockerCategory(str, Enum):
    PLANNING = "planning"
    CONSENT = "consent"
    NURSE_DOCUMENTATION = "nurse-documentation"
    CHECKLIST = "checklist"
    TIMELINE = "timeline"
    OPERATIVE_NOTE = "operative-note"
