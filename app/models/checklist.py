from pydantic import Field, computed_field

from app.models.base import ApiModel


class ChecklistItem(ApiModel):
    key: str = Field(..., min_length=1)
    label: str = ""
    confirmed: bool = False
    note: str | None = Field(None, max_length=500)


class ChecklistItemsRequest(ApiModel):
    items: list[ChecklistItem] = Field(..., min_length=1)


class ChecklistFinalizeRequest(ApiModel):
    """Items to merge over the saved draft; empty when the draft is already complete."""
    items: list[ChecklistItem] = []


class PhaseState(ApiModel):
    completed: bool = False
    completed_at: str | None = None
    completed_by_user_id: str | None = None
    completed_by_role: str | None = None
    updated_at: str | None = None
    items: list[ChecklistItem] | None = None


class ChecklistStatus(ApiModel):
    case_id: str
    sign_in: PhaseState = PhaseState()
    time_out: PhaseState = PhaseState()
    sign_out: PhaseState = PhaseState()

    @computed_field
    @property
    def sign_in_completed(self) -> bool:
        return self.sign_in.completed

    @computed_field
    @property
    def time_out_completed(self) -> bool:
        return self.time_out.completed

    @computed_field
    @property
    def sign_out_completed(self) -> bool:
        return self.sign_out.completed


class SectionCompletion(ApiModel):
    total: int
    confirmed: int = 0
    finalized: bool = False


class ChecklistSectionCompletion(ApiModel):
    sign_in: SectionCompletion
    time_out: SectionCompletion
    sign_out: SectionCompletion
