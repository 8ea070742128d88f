from fastapi import Header

from app.database import get_db
from app.models.surgical_case import ActorContext
from app.services.engine import CaseEngine, build_engine
from app.services.event_bus import event_bus


async def get_engine() -> CaseEngine:
    db = await get_db()
    return build_engine(db, event_bus)


def get_actor(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> ActorContext:
    """Caller identity forwarded by the authenticating gateway."""
    return ActorContext(
        user_id=(x_user_id or "").strip() or "anonymous",
        role=(x_user_role or "").strip().upper() or "UNKNOWN",
    )
