import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.database import close_db, init_db
from app.errors import SurgicalCaseError
from app.routers import checklist, dayboard, surgical_cases, timeline
from app.services.collaborators import close_collaborators

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Theatre Readiness...")
    await init_db()
    logger.info("Database initialized")
    yield
    await close_collaborators()
    await close_db()
    logger.info("Theatre Readiness shut down")


app = FastAPI(
    title="Theatre Readiness",
    description="Surgical case readiness, WHO checklist and transition engine",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(SurgicalCaseError)
async def surgical_case_error_handler(request: Request, exc: SurgicalCaseError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(surgical_cases.router)
app.include_router(checklist.router)
app.include_router(timeline.router)
app.include_router(dayboard.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
