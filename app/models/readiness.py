from pydantic import Field

from app.models.base import ApiModel
from app.models.enums import BlockerCategory, BlockerLevel, CaseStatus, DocStatus


class PlanStatus(ApiModel):
    """DoctorPlanProvider result."""
    ready: bool = False
    missing_count: int = Field(0, ge=0)
    pre_op_photo_count: int = Field(0, ge=0)


class ConsentCounts(ApiModel):
    """ConsentProvider result."""
    signed: int = Field(0, ge=0)
    total: int = Field(0, ge=0)

    @property
    def fully_signed(self) -> bool:
        return self.total > 0 and self.signed >= self.total


class NurseDocSnapshot(ApiModel):
    """NurseDocProvider result for one nursing phase."""
    status: DocStatus = DocStatus.NONE
    discrepancy_flag: bool = False
    discharge_ready: bool = False


class BlockerReason(ApiModel):
    key: str
    category: BlockerCategory
    severity: BlockerLevel
    message: str
    unavailable: bool = False


class ReadinessVerdict(ApiModel):
    case_id: str
    current_status: CaseStatus
    action: CaseStatus | None = None
    level: BlockerLevel = BlockerLevel.CLEAR
    reasons: list[BlockerReason] = []

    @property
    def blocking(self) -> list[BlockerReason]:
        return [r for r in self.reasons if r.severity == BlockerLevel.BLOCKED]

    @property
    def warnings(self) -> list[BlockerReason]:
        return [r for r in self.reasons if r.severity == BlockerLevel.WARNING]
