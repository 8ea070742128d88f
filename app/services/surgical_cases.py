"""Surgical case records: creation (from the planning workflow) and lookup."""

import logging
import uuid

from app.database import DatabaseAdapter
from app.errors import NotFoundError
from app.models.enums import BookingStatus, CaseStatus
from app.models.surgical_case import SurgicalCase, SurgicalCaseCreate, TheaterBooking
from app.timestamps import to_iso, utcnow

logger = logging.getLogger(__name__)


def _row_to_case(row, booking: TheaterBooking | None = None) -> SurgicalCase:
    return SurgicalCase(
        id=row["id"],
        patient_id=row["patient_id"],
        patient_name=row["patient_name"],
        primary_surgeon_id=row["primary_surgeon_id"],
        primary_surgeon_name=row["primary_surgeon_name"] or "",
        procedure_name=row["procedure_name"],
        side=row["side"],
        urgency=row["urgency"],
        status=row["status"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        booking=booking,
    )


def _row_to_booking(row) -> TheaterBooking:
    return TheaterBooking(
        id=row["id"],
        case_id=row["case_id"],
        theater_id=row["theater_id"],
        theater_name=row["theater_name"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=row["status"],
    )


async def load_case(db: DatabaseAdapter, case_id: str) -> SurgicalCase:
    """Load a case with its active booking; raises NotFoundError."""
    row = await db.fetch_one("SELECT * FROM surgical_cases WHERE id = ?", (case_id,))
    if not row:
        raise NotFoundError("Surgical case not found", caseId=case_id)

    booking_row = await db.fetch_one(
        "SELECT * FROM theater_bookings WHERE case_id = ? AND status != ? ORDER BY start_time ASC",
        (case_id, BookingStatus.CANCELLED.value),
    )
    booking = _row_to_booking(booking_row) if booking_row else None
    return _row_to_case(row, booking)


async def ensure_case_exists(db: DatabaseAdapter, case_id: str) -> CaseStatus:
    row = await db.fetch_one("SELECT status FROM surgical_cases WHERE id = ?", (case_id,))
    if not row:
        raise NotFoundError("Surgical case not found", caseId=case_id)
    return CaseStatus(row["status"])


async def create_case(db: DatabaseAdapter, body: SurgicalCaseCreate) -> SurgicalCase:
    """Register a planned case in SCHEDULED, optionally with its theatre booking."""
    case_id = str(uuid.uuid4())
    now = to_iso(utcnow())

    async with db.transaction():
        await db.execute(
            """INSERT INTO surgical_cases (
                id, patient_id, patient_name, primary_surgeon_id, primary_surgeon_name,
                procedure_name, side, urgency, status, version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
            (
                case_id,
                body.patient_id,
                body.patient_name,
                body.primary_surgeon_id,
                body.primary_surgeon_name,
                body.procedure_name,
                body.side,
                body.urgency.value,
                CaseStatus.SCHEDULED.value,
                now,
                now,
            ),
        )

        if body.booking:
            await db.execute(
                """INSERT INTO theater_bookings (id, case_id, theater_id, theater_name, start_time, end_time, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(uuid.uuid4()),
                    case_id,
                    body.booking.theater_id,
                    body.booking.theater_name,
                    to_iso(body.booking.start_time),
                    to_iso(body.booking.end_time),
                    BookingStatus.CONFIRMED.value,
                ),
            )

    logger.info("Registered surgical case %s (%s)", case_id, body.procedure_name)
    return await load_case(db, case_id)
