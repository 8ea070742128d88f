"""WHO Surgical Safety Checklist templates.

Three phases performed at distinct points of a case:
- Sign-In: before induction of anaesthesia
- Time-Out: before skin incision
- Sign-Out: before the patient leaves the operating room

``PHASE_TEMPLATES`` is the single registry the store and the readiness
aggregator look phases up in; every ``ChecklistPhase`` must have an entry.
"""

from dataclasses import dataclass

from app.errors import InvalidPhaseError
from app.models.checklist import ChecklistItem
from app.models.enums import ChecklistPhase


@dataclass(frozen=True)
class ChecklistItemDef:
    key: str
    label: str
    help_text: str | None = None


@dataclass(frozen=True)
class PhaseTemplate:
    phase: ChecklistPhase
    title: str
    items: tuple[ChecklistItemDef, ...]

    @property
    def keys(self) -> list[str]:
        return [d.key for d in self.items]

    def label_for(self, key: str) -> str:
        for d in self.items:
            if d.key == key:
                return d.label
        return key


SIGN_IN = PhaseTemplate(
    ChecklistPhase.SIGN_IN,
    "Sign-In",
    (
        ChecklistItemDef("patient_identity", "Patient identity confirmed (name, DOB, wristband)"),
        ChecklistItemDef("site_marked", "Surgical site marked / not applicable"),
        ChecklistItemDef("consent_verified", "Consent signed and verified"),
        ChecklistItemDef("anesthesia_check", "Anesthesia safety check completed"),
        ChecklistItemDef("pulse_oximeter", "Pulse oximeter on patient and functioning"),
        ChecklistItemDef("allergy_check", "Known allergies reviewed"),
        ChecklistItemDef(
            "airway_risk",
            "Difficult airway / aspiration risk assessed",
            "Equipment and assistance available if needed",
        ),
        ChecklistItemDef(
            "blood_loss_risk",
            "Risk of >500ml blood loss assessed",
            "Adequate IV access and fluids planned",
        ),
    ),
)

TIME_OUT = PhaseTemplate(
    ChecklistPhase.TIME_OUT,
    "Time-Out",
    (
        ChecklistItemDef("team_intro", "All team members introduced by name and role"),
        ChecklistItemDef("patient_confirm", "Patient name, procedure, and incision site confirmed"),
        ChecklistItemDef("antibiotic_prophylaxis", "Antibiotic prophylaxis given within last 60 minutes"),
        ChecklistItemDef(
            "critical_events_surgeon",
            "Anticipated critical events: surgeon reviewed",
            "Critical steps, case duration, anticipated blood loss",
        ),
        ChecklistItemDef(
            "critical_events_anesthesia",
            "Anticipated critical events: anesthesia reviewed",
            "Patient-specific concerns",
        ),
        ChecklistItemDef(
            "critical_events_nursing",
            "Anticipated critical events: nursing reviewed",
            "Sterility confirmed, equipment issues, other concerns",
        ),
        ChecklistItemDef("imaging_displayed", "Essential imaging displayed"),
        ChecklistItemDef("equipment_sterile", "Equipment sterility confirmed (indicator results)"),
    ),
)

SIGN_OUT = PhaseTemplate(
    ChecklistPhase.SIGN_OUT,
    "Sign-Out",
    (
        ChecklistItemDef("procedure_recorded", "Procedure name / description recorded"),
        ChecklistItemDef("instrument_count", "Instrument, sponge, and needle counts correct"),
        ChecklistItemDef("specimen_labeled", "Specimen labeled (including patient name)"),
        ChecklistItemDef("equipment_issues", "Equipment problems addressed"),
        ChecklistItemDef("recovery_plan", "Key concerns for recovery and management reviewed"),
    ),
)

PHASE_TEMPLATES: dict[ChecklistPhase, PhaseTemplate] = {
    ChecklistPhase.SIGN_IN: SIGN_IN,
    ChecklistPhase.TIME_OUT: TIME_OUT,
    ChecklistPhase.SIGN_OUT: SIGN_OUT,
}

if set(PHASE_TEMPLATES) != set(ChecklistPhase):
    raise RuntimeError("every checklist phase needs a template")


def parse_phase(value: str | ChecklistPhase) -> ChecklistPhase:
    """Resolve a phase key, accepting SIGN_IN / sign-in / signIn spellings."""
    if isinstance(value, ChecklistPhase):
        return value
    normalized = str(value).strip().replace("-", "_")
    aliases = {"signin": "SIGN_IN", "timeout": "TIME_OUT", "signout": "SIGN_OUT"}
    normalized = aliases.get(normalized.lower(), normalized.upper())
    try:
        return ChecklistPhase(normalized)
    except ValueError:
        raise InvalidPhaseError(
            f"Unknown checklist phase: {value}",
            phase=str(value),
        ) from None


def blank_items(phase: ChecklistPhase) -> list[ChecklistItem]:
    return [
        ChecklistItem(key=d.key, label=d.label, confirmed=False)
        for d in PHASE_TEMPLATES[phase].items
    ]


def unknown_keys(phase: ChecklistPhase, items: list[ChecklistItem]) -> list[str]:
    known = set(PHASE_TEMPLATES[phase].keys)
    return [i.key for i in items if i.key not in known]


def merge_items(
    phase: ChecklistPhase,
    existing: list[ChecklistItem] | None,
    incoming: list[ChecklistItem],
) -> list[ChecklistItem]:
    """Overlay ``incoming`` onto ``existing`` by key.

    The result is always the full template in template order with canonical
    labels, so partial and re-ordered payloads are accepted.
    """
    by_key = {i.key: i for i in (existing or [])}
    for item in incoming:
        by_key[item.key] = item

    merged = []
    for d in PHASE_TEMPLATES[phase].items:
        current = by_key.get(d.key)
        merged.append(ChecklistItem(
            key=d.key,
            label=d.label,
            confirmed=bool(current and current.confirmed),
            note=current.note if current else None,
        ))
    return merged


def missing_items(phase: ChecklistPhase, items: list[ChecklistItem] | None) -> list[str]:
    """Labels of template items not confirmed, in template order."""
    confirmed = {i.key for i in (items or []) if i.confirmed}
    return [d.label for d in PHASE_TEMPLATES[phase].items if d.key not in confirmed]
