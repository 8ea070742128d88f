"""Guarded, forward-only status transitions with an append-only audit trail.

SCHEDULED -> IN_PREP -> IN_THEATER -> RECOVERY -> COMPLETED

A transition succeeds only when ``action`` is the single legal next status
and the readiness verdict for it is not BLOCKED. Warnings are returned to the
caller with the result.
"""

import logging

from app.database import DatabaseAdapter
from app.errors import ConcurrentModificationError, InvalidTransitionError, TransitionBlockedError
from app.models.enums import NEXT_STATUS, BlockerLevel, CaseStatus
from app.models.surgical_case import ActorContext, TransitionAuditEntry, TransitionResult
from app.services.collaborators import AuditSink
from app.services.locks import InFlightGuard
from app.services.readiness import ReadinessAggregator, parse_action
from app.services.surgical_cases import ensure_case_exists, load_case
from app.timestamps import to_iso, utcnow

logger = logging.getLogger(__name__)

_in_flight = InFlightGuard()


class CaseTransitionService:
    def __init__(
        self,
        db: DatabaseAdapter,
        aggregator: ReadinessAggregator,
        audit: AuditSink,
        events=None,
        guard: InFlightGuard | None = None,
    ) -> None:
        self.db = db
        self.aggregator = aggregator
        self.audit = audit
        self.events = events
        self.guard = guard or _in_flight

    async def transition(
        self,
        case_id: str,
        action: str | CaseStatus,
        actor: ActorContext,
        reason: str | None = None,
    ) -> TransitionResult:
        target = parse_action(action)
        if target is None:
            raise InvalidTransitionError("An action is required", caseId=case_id)

        with self.guard.claim(case_id):
            case = await load_case(self.db, case_id)
            allowed = NEXT_STATUS[case.status]
            if target != allowed:
                if allowed is None:
                    message = f"Case is {case.status.value}; no further transitions are allowed"
                else:
                    message = (
                        f"Cannot move case from {case.status.value} to {target.value}; "
                        f"next allowed status is {allowed.value}"
                    )
                raise InvalidTransitionError(
                    message,
                    caseId=case_id,
                    currentStatus=case.status.value,
                    requestedAction=target.value,
                    allowedAction=allowed.value if allowed else None,
                )

            verdict = await self.aggregator.evaluate(case_id, target)
            if verdict.level == BlockerLevel.BLOCKED:
                blocking = verdict.blocking
                logger.warning(
                    "Blocked transition %s -> %s for case %s by %s: %s",
                    case.status.value, target.value, case_id, actor.user_id,
                    "; ".join(r.message for r in blocking),
                )
                raise TransitionBlockedError(
                    f"Case cannot move to {target.value}: {len(blocking)} blocking item(s)",
                    reasons=[r.model_dump(mode="json", by_alias=True) for r in blocking],
                    warnings=[r.model_dump(mode="json", by_alias=True) for r in verdict.warnings],
                    caseId=case_id,
                    currentStatus=case.status.value,
                    requestedAction=target.value,
                )

            now = to_iso(utcnow())
            entry = TransitionAuditEntry(
                case_id=case_id,
                previous_status=case.status,
                new_status=target,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                reason=reason,
                created_at=now,
            )
            # Status change and audit entry commit together or not at all.
            async with self.db.transaction():
                updated = await self.db.execute(
                    """UPDATE surgical_cases SET status = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND status = ? AND version = ?""",
                    (target.value, now, case_id, case.status.value, case.version),
                )
                if not updated:
                    raise ConcurrentModificationError(
                        "Case was modified by another request; refresh and retry",
                        caseId=case_id,
                    )
                await self.audit.record(entry)

        logger.info(
            "Case %s moved %s -> %s by %s (%s)%s",
            case_id, case.status.value, target.value, actor.user_id, actor.role,
            f" with {len(verdict.warnings)} warning(s)" if verdict.warnings else "",
        )
        if self.events is not None:
            await self.events.publish(case_id, "case_transition", {
                "previous_status": case.status.value,
                "new_status": target.value,
                "actor": actor.user_id,
            })

        return TransitionResult(
            case_id=case_id,
            previous_status=case.status,
            new_status=target,
            transitioned_at=now,
            transitioned_by=actor.user_id,
            warnings=verdict.warnings,
        )

    async def list_audit(self, case_id: str) -> list[TransitionAuditEntry]:
        """Transition history for a case, oldest first."""
        await ensure_case_exists(self.db, case_id)
        rows = await self.db.fetch_all(
            "SELECT * FROM case_transition_audit WHERE case_id = ? ORDER BY id ASC",
            (case_id,),
        )
        return [
            TransitionAuditEntry(
                id=row["id"],
                case_id=row["case_id"],
                previous_status=row["previous_status"],
                new_status=row["new_status"],
                actor_user_id=row["actor_user_id"],
                actor_role=row["actor_role"],
                reason=row["reason"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
