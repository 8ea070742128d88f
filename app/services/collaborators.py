"""Clinical record collaborators consulted by the readiness aggregator.

Doctor planning, consents, nursing documentation and the operative note are
owned by the surrounding clinical application. The engine only needs a
status summary of each, expressed by the provider protocols below.

Two implementations ship:
- Database-backed (default): reads the local ``case_plans``,
  ``case_consents`` and ``clinical_forms`` tables.
- HTTP-backed: queries the clinical records service at
  ``CLINICAL_RECORDS_URL`` with httpx.
"""

import json
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from app.config import CLINICAL_RECORDS_TIMEOUT_SECONDS, CLINICAL_RECORDS_URL
from app.database import DatabaseAdapter
from app.models.enums import DocStatus, NurseDocPhase
from app.models.readiness import ConsentCounts, NurseDocSnapshot, PlanStatus
from app.models.surgical_case import TransitionAuditEntry

logger = logging.getLogger(__name__)

# clinical_forms.template_key per document
NURSE_FORM_TEMPLATES = {
    NurseDocPhase.PRE_OP: "NURSE_PREOP_WARD_CHECKLIST",
    NurseDocPhase.INTRA_OP: "NURSE_INTRAOP_RECORD",
    NurseDocPhase.RECOVERY: "NURSE_RECOVERY_RECORD",
}
OPERATIVE_NOTE_TEMPLATE = "SURGEON_OPERATIVE_NOTE"

DISCHARGE_CRITERIA = (
    "vitalsStable",
    "painControlled",
    "nauseaControlled",
    "bleedingControlled",
    "airwayStable",
)


class DoctorPlanProvider(Protocol):
    async def get_plan_status(self, case_id: str) -> PlanStatus: ...


class ConsentProvider(Protocol):
    async def get_consent_counts(self, case_id: str) -> ConsentCounts: ...


class NurseDocProvider(Protocol):
    async def get_status(self, case_id: str, phase: NurseDocPhase) -> NurseDocSnapshot: ...


class OperativeNoteProvider(Protocol):
    async def get_status(self, case_id: str) -> DocStatus: ...


class AuditSink(Protocol):
    async def record(self, entry: TransitionAuditEntry) -> None: ...


def _blank(value) -> bool:
    return value is None or not str(value).strip()


def _doc_status(value: str | None) -> DocStatus:
    if not value:
        return DocStatus.NONE
    try:
        return DocStatus(value.upper())
    except ValueError:
        logger.warning("Unknown clinical form status %r; treating as draft", value)
        return DocStatus.DRAFT


def _form_data(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def discrepancy_flagged(data: dict) -> bool:
    """Intra-op counts explicitly marked incorrect."""
    counts = data.get("counts") or {}
    return counts.get("countCorrect") is False


def discharge_ready(data: dict) -> bool:
    """Discharge decision other than HOLD with every criterion met."""
    readiness = data.get("dischargeReadiness") or {}
    decision = readiness.get("dischargeDecision")
    if not decision or decision == "HOLD":
        return False
    criteria = readiness.get("dischargeCriteria") or {}
    return all(criteria.get(name) is True for name in DISCHARGE_CRITERIA)


# ---------------------------------------------------------------------------
# Database-backed providers
# ---------------------------------------------------------------------------

class DatabasePlanProvider:
    def __init__(self, db: DatabaseAdapter) -> None:
        self.db = db

    async def get_plan_status(self, case_id: str) -> PlanStatus:
        row = await self.db.fetch_one("SELECT * FROM case_plans WHERE case_id = ?", (case_id,))
        if not row:
            # No plan at all: procedure plan, risk factors, anaesthesia and photos.
            return PlanStatus(ready=False, missing_count=4, pre_op_photo_count=0)

        photos = row["pre_op_photo_count"] or 0
        missing = sum([
            _blank(row["procedure_plan"]),
            _blank(row["risk_factors"]),
            _blank(row["planned_anesthesia"]),
            photos == 0,
        ])
        return PlanStatus(
            ready=bool(row["ready_for_surgery"]),
            missing_count=missing,
            pre_op_photo_count=photos,
        )


class DatabaseConsentProvider:
    def __init__(self, db: DatabaseAdapter) -> None:
        self.db = db

    async def get_consent_counts(self, case_id: str) -> ConsentCounts:
        rows = await self.db.fetch_all(
            "SELECT signed_at FROM case_consents WHERE case_id = ?",
            (case_id,),
        )
        return ConsentCounts(
            signed=sum(1 for r in rows if r["signed_at"]),
            total=len(rows),
        )


class DatabaseNurseDocProvider:
    def __init__(self, db: DatabaseAdapter) -> None:
        self.db = db

    async def get_status(self, case_id: str, phase: NurseDocPhase) -> NurseDocSnapshot:
        row = await self.db.fetch_one(
            "SELECT status, data_json FROM clinical_forms WHERE case_id = ? AND template_key = ?",
            (case_id, NURSE_FORM_TEMPLATES[phase]),
        )
        if not row:
            return NurseDocSnapshot()

        status = _doc_status(row["status"])
        data = _form_data(row["data_json"])
        final = status == DocStatus.FINAL
        return NurseDocSnapshot(
            status=status,
            discrepancy_flag=final and phase == NurseDocPhase.INTRA_OP and discrepancy_flagged(data),
            discharge_ready=final and phase == NurseDocPhase.RECOVERY and discharge_ready(data),
        )


class DatabaseOperativeNoteProvider:
    def __init__(self, db: DatabaseAdapter) -> None:
        self.db = db

    async def get_status(self, case_id: str) -> DocStatus:
        row = await self.db.fetch_one(
            "SELECT status FROM clinical_forms WHERE case_id = ? AND template_key = ?",
            (case_id, OPERATIVE_NOTE_TEMPLATE),
        )
        return _doc_status(row["status"]) if row else DocStatus.NONE


class DatabaseAuditSink:
    """Append-only writer for case_transition_audit.

    Inside the caller's ``db.transaction()`` the row commits with the status
    change it records.
    """

    def __init__(self, db: DatabaseAdapter) -> None:
        self.db = db

    async def record(self, entry: TransitionAuditEntry) -> None:
        await self.db.execute(
            """INSERT INTO case_transition_audit (
                case_id, previous_status, new_status, actor_user_id, actor_role, reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.case_id,
                entry.previous_status.value,
                entry.new_status.value,
                entry.actor_user_id,
                entry.actor_role,
                entry.reason,
                entry.created_at,
            ),
        )


# ---------------------------------------------------------------------------
# HTTP-backed providers
# ---------------------------------------------------------------------------

class ClinicalRecordsClient:
    """Thin JSON client for the clinical records service.

    Endpoints (relative to the base URL):
        GET /cases/{id}/plan-status       -> {ready, missingCount, preOpPhotoCount}
        GET /cases/{id}/consents/summary  -> {signed, total}
        GET /cases/{id}/nurse-docs/{phase} -> {status, discrepancyFlag, dischargeReady}
        GET /cases/{id}/operative-note    -> {status}
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def get_json(self, path: str) -> dict:
        resp = await self.client.get(path)
        resp.raise_for_status()
        return resp.json()


class HttpPlanProvider:
    def __init__(self, records: ClinicalRecordsClient) -> None:
        self.records = records

    async def get_plan_status(self, case_id: str) -> PlanStatus:
        return PlanStatus.model_validate(await self.records.get_json(f"/cases/{case_id}/plan-status"))


class HttpConsentProvider:
    def __init__(self, records: ClinicalRecordsClient) -> None:
        self.records = records

    async def get_consent_counts(self, case_id: str) -> ConsentCounts:
        return ConsentCounts.model_validate(await self.records.get_json(f"/cases/{case_id}/consents/summary"))


class HttpNurseDocProvider:
    def __init__(self, records: ClinicalRecordsClient) -> None:
        self.records = records

    async def get_status(self, case_id: str, phase: NurseDocPhase) -> NurseDocSnapshot:
        data = await self.records.get_json(f"/cases/{case_id}/nurse-docs/{phase.value}")
        return NurseDocSnapshot.model_validate(data)


class HttpOperativeNoteProvider:
    def __init__(self, records: ClinicalRecordsClient) -> None:
        self.records = records

    async def get_status(self, case_id: str) -> DocStatus:
        data = await self.records.get_json(f"/cases/{case_id}/operative-note")
        return _doc_status(data.get("status"))


@dataclass
class ClinicalCollaborators:
    plans: DoctorPlanProvider
    consents: ConsentProvider
    nurse_docs: NurseDocProvider
    operative_notes: OperativeNoteProvider
    audit: AuditSink


def database_collaborators(db: DatabaseAdapter) -> ClinicalCollaborators:
    return ClinicalCollaborators(
        plans=DatabasePlanProvider(db),
        consents=DatabaseConsentProvider(db),
        nurse_docs=DatabaseNurseDocProvider(db),
        operative_notes=DatabaseOperativeNoteProvider(db),
        audit=DatabaseAuditSink(db),
    )


def http_collaborators(db: DatabaseAdapter, client: httpx.AsyncClient) -> ClinicalCollaborators:
    """Clinical status from the records service; audit entries stay local."""
    records = ClinicalRecordsClient(client)
    return ClinicalCollaborators(
        plans=HttpPlanProvider(records),
        consents=HttpConsentProvider(records),
        nurse_docs=HttpNurseDocProvider(records),
        operative_notes=HttpOperativeNoteProvider(records),
        audit=DatabaseAuditSink(db),
    )


_http_client: httpx.AsyncClient | None = None


def get_collaborators(db: DatabaseAdapter) -> ClinicalCollaborators:
    global _http_client
    if not CLINICAL_RECORDS_URL:
        return database_collaborators(db)
    if _http_client is None:
        _http_client = httpx.AsyncClient(
            base_url=CLINICAL_RECORDS_URL.rstrip("/"),
            timeout=CLINICAL_RECORDS_TIMEOUT_SECONDS,
        )
        logger.info("Using clinical records service at %s", CLINICAL_RECORDS_URL)
    return http_collaborators(db, _http_client)


async def close_collaborators() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
