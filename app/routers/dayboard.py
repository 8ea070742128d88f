import asyncio
import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from app.dependencies import get_engine
from app.models.dayboard import Dayboard
from app.models.enums import CaseStatus
from app.services.engine import CaseEngine
from app.services.event_bus import event_bus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dayboard"])

PING_INTERVAL_SECONDS = 10.0


@router.get("/api/theater/dayboard", response_model=Dayboard)
async def get_dayboard(
    day: date | None = Query(None, alias="date"),
    theater_id: str | None = Query(None, alias="theaterId"),
    status: CaseStatus | None = Query(None),
    engine: CaseEngine = Depends(get_engine),
):
    """Theatre dayboard for a UTC calendar day (defaults to today)."""
    return await engine.dayboard.get_dayboard(day, theater_id, status)


@router.websocket("/ws/dayboard")
async def dayboard_ws(websocket: WebSocket):
    """Live feed of case mutations for dayboard clients.

    Events: case_transition, checklist_updated, timeline_updated. A ping is
    sent when nothing happens for a while so idle proxies keep the socket.
    """
    await websocket.accept()
    queue = event_bus.subscribe_all()
    logger.info("Dayboard client connected")

    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=PING_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                event = {"type": "ping"}

            try:
                await websocket.send_json(event)
            except Exception:
                logger.debug("Failed to send event to dayboard client")
                break
    except WebSocketDisconnect:
        logger.info("Dayboard client disconnected")
    except asyncio.CancelledError:
        pass
    finally:
        event_bus.unsubscribe_all(queue)
