import json
import os
import uuid
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB and no external services for tests
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_CASES"] = "false"
os.environ["CLINICAL_RECORDS_URL"] = ""
os.environ["GCP_PROJECT_ID"] = ""
os.environ["GCP_PUBSUB_TOPIC"] = ""

from app.database import close_db, init_db
from app.main import app
from app.models.checklist import ChecklistItem
from app.models.enums import CaseStatus, ChecklistPhase, NurseDocPhase
from app.models.surgical_case import ActorContext, SurgicalCaseCreate, TheaterBookingCreate
from app.services.collaborators import NURSE_FORM_TEMPLATES, OPERATIVE_NOTE_TEMPLATE
from app.services.engine import build_engine
from app.services.event_bus import CaseEventBus
from app.services.surgical_cases import create_case
from app.services.timeline_store import TimelineStore
from app.services.who_checklist import PHASE_TEMPLATES
from app.timestamps import to_iso


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import app.database as db_mod

    # Close any existing connection
    if db_mod._db is not None:
        try:
            await db_mod._db.close()
        except Exception:
            pass
    db_mod._db = None

    # Override module-level config directly (avoids fragile importlib.reload)
    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""
    db_mod.SEED_DEMO_CASES = False

    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()


@pytest.fixture
def client(db):
    """Provide a synchronous TestClient for HTTP endpoint tests."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(db):
    """Provide an async httpx client for async HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def events():
    return CaseEventBus()


@pytest.fixture
def engine(db, events):
    """Engine wired to the test database; timeline max-age check disabled."""
    return build_engine(db, events, timeline_store=TimelineStore(db, events, max_age_hours=0))


@pytest.fixture
def nurse():
    return ActorContext(user_id="nurse-1", role="NURSE")


@pytest.fixture
def today_at():
    """UTC datetime today at the given hour/minute."""
    def _at(hour: int, minute: int = 0) -> datetime:
        return datetime.now(UTC).replace(hour=hour, minute=minute, second=0, microsecond=0)
    return _at


@pytest.fixture
def make_case(db, today_at):
    """Create a case booked today, optionally already in a later status."""
    async def _make(
        status: CaseStatus = CaseStatus.SCHEDULED,
        start: datetime | None = None,
        theater_id: str = "th-1",
        theater_name: str = "Theatre 1",
        procedure_name: str = "Laparoscopic cholecystectomy",
        booked: bool = True,
    ) -> str:
        start = start or today_at(9)
        booking = TheaterBookingCreate(
            theater_id=theater_id,
            theater_name=theater_name,
            start_time=start,
            end_time=start + timedelta(hours=2),
        ) if booked else None
        case = await create_case(db, SurgicalCaseCreate(
            patient_id=f"pat-{uuid.uuid4().hex[:6]}",
            patient_name="Jane Wanjiru",
            primary_surgeon_id="doc-1",
            primary_surgeon_name="Dr. Otieno",
            procedure_name=procedure_name,
            side="LEFT",
            booking=booking,
        ))
        if status != CaseStatus.SCHEDULED:
            await db.execute("UPDATE surgical_cases SET status = ? WHERE id = ?", (status.value, case.id))
        return case.id
    return _make


class ClinicalRecords:
    """Writes collaborator-owned rows (plans, consents, forms) for a case."""

    def __init__(self, db) -> None:
        self.db = db

    async def plan(
        self,
        case_id: str,
        ready: bool = True,
        procedure_plan: str | None = "Standard approach",
        risk_factors: str | None = "ASA II",
        planned_anesthesia: str | None = "General",
        photos: int = 1,
    ) -> None:
        await self.db.execute(
            """INSERT INTO case_plans (
                case_id, ready_for_surgery, procedure_plan, risk_factors, planned_anesthesia, pre_op_photo_count
            ) VALUES (?, ?, ?, ?, ?, ?)""",
            (case_id, 1 if ready else 0, procedure_plan, risk_factors, planned_anesthesia, photos),
        )

    async def consents(self, case_id: str, signed: int, total: int) -> None:
        now = to_iso(datetime.now(UTC))
        for i in range(total):
            await self.db.execute(
                "INSERT INTO case_consents (id, case_id, title, signed_at) VALUES (?, ?, ?, ?)",
                (str(uuid.uuid4()), case_id, f"Consent {i + 1}", now if i < signed else None),
            )

    async def form(self, case_id: str, template_key: str, status: str = "FINAL", data: dict | None = None) -> None:
        await self.db.execute(
            """INSERT INTO clinical_forms (case_id, template_key, status, data_json, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (case_id, template_key) DO UPDATE SET
                status = excluded.status, data_json = excluded.data_json""",
            (case_id, template_key, status, json.dumps(data or {}), to_iso(datetime.now(UTC))),
        )

    async def nurse_doc(self, case_id: str, phase, status: str = "FINAL", data: dict | None = None) -> None:
        await self.form(case_id, NURSE_FORM_TEMPLATES[phase], status, data)

    async def operative_note(self, case_id: str, status: str = "FINAL") -> None:
        await self.form(case_id, OPERATIVE_NOTE_TEMPLATE, status)

    async def ready_for_theatre(self, case_id: str) -> None:
        """Plan complete, consents signed, pre-op nursing checklist final."""
        await self.plan(case_id)
        await self.consents(case_id, signed=1, total=1)
        await self.nurse_doc(case_id, NurseDocPhase.PRE_OP)


@pytest.fixture
def clinical(db):
    return ClinicalRecords(db)


def all_confirmed(phase: ChecklistPhase) -> list[ChecklistItem]:
    return [ChecklistItem(key=k, confirmed=True) for k in PHASE_TEMPLATES[phase].keys]


@pytest.fixture
def confirmed_items():
    """Every template item of a phase, confirmed."""
    return all_confirmed
