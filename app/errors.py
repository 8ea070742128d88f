"""Typed failures raised by the surgical case engine.

Every error carries an HTTP status, a stable machine code and structured
details so the API layer can render it without inspecting message text.
"""

from typing import Any


class SurgicalCaseError(Exception):
    status_code = 400
    code = "surgical_case_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class NotFoundError(SurgicalCaseError):
    status_code = 404
    code = "not_found"


class InvalidTransitionError(SurgicalCaseError):
    status_code = 409
    code = "invalid_transition"


class TransitionBlockedError(SurgicalCaseError):
    """Readiness verdict is BLOCKED; ``reasons`` lists what must be resolved."""

    status_code = 422
    code = "transition_blocked"

    def __init__(self, message: str, reasons: list[dict[str, Any]], **details: Any) -> None:
        super().__init__(
            message,
            reasons=reasons,
            missingItems=[r["message"] for r in reasons],
            **details,
        )
        self.reasons = reasons

    @property
    def missing_items(self) -> list[str]:
        return self.details["missingItems"]


class InvalidPhaseError(SurgicalCaseError):
    status_code = 400
    code = "invalid_phase"


class AlreadyFinalizedError(InvalidPhaseError):
    status_code = 409
    code = "already_finalized"


class IncompleteChecklistError(SurgicalCaseError):
    status_code = 422
    code = "incomplete_checklist"

    def __init__(self, message: str, missing_items: list[str], **details: Any) -> None:
        super().__init__(message, missingItems=missing_items, **details)
        self.missing_items = missing_items


class InvalidChecklistItemError(SurgicalCaseError):
    status_code = 422
    code = "invalid_checklist_item"


class TimelineValidationError(SurgicalCaseError):
    status_code = 422
    code = "timeline_validation_error"

    def __init__(self, message: str, errors: list[dict[str, str]], **details: Any) -> None:
        super().__init__(message, errors=errors, **details)
        self.errors = errors

    @property
    def fields(self) -> list[str]:
        return [e["field"] for e in self.errors]


class ConcurrentModificationError(SurgicalCaseError):
    status_code = 409
    code = "concurrent_modification"
