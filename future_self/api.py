"""FastAPI application and route handlers."""

import sys
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from .config import settings
from .events import CacheInvalidationListener
from .exceptions import (
    FutureSelfError,
    GenerationError,
    InsufficientDataError,
    StorageError,
    SubjectNotFoundError,
)
from .factory import ServiceFactory
from .jobs import LetterJobs
from .models import (
    EngagementInput,
    EngagementResponse,
    EventBatch,
    EventBatchResponse,
    LetterDetailResponse,
    LetterHistoryItem,
    LetterResponse,
    MarkReadResponse,
    PreferencesInput,
    PreferencesResponse,
    StatisticsResponse,
    SubjectProfileInput,
    TimelineResponse,
)
from .service import FutureSelfService
from .types import JobOutcome, LetterTrigger, Simulation

__version__ = "1.0.0"


def configure_logging() -> None:
    """Configure logging - should be called at startup, not import time."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.log_level,
        serialize=False,
    )
    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            level=settings.log_level,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    configure_logging()

    components = await ServiceFactory.create(settings)
    app.state.components = components
    app.state.service = components.service
    app.state.jobs = components.jobs
    app.state.listener = components.listener
    app.state.repository = components.repository

    if components.scheduler is not None:
        components.scheduler.start()

    logger.info("Application started successfully")

    yield

    await ServiceFactory.shutdown(components)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Future Self API",
    version=__version__,
    description="Letters from your future self with cached financial projections",
    lifespan=lifespan,
)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle validation errors with clean messages."""
    error_messages = []

    for error in exc.errors():
        field = error["loc"][-1] if error["loc"] else "field"
        message = error.get("msg", f"Invalid {field}")

        match error["type"]:
            case "missing":
                message = f"Required field '{field}' is missing"
            case "json_invalid":
                message = "Invalid JSON format"
            case "union_tag_invalid":
                message = "Unknown event kind"

        error_messages.append(message)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Validation failed",
            "message": "; ".join(error_messages),
            "details": error_messages,
        },
    )


app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]


@app.exception_handler(FutureSelfError)
async def future_self_exception_handler(request: Request, exc: FutureSelfError) -> JSONResponse:
    """Handle domain-specific errors."""
    if isinstance(exc, SubjectNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InsufficientDataError):
        status_code = 422
    elif isinstance(exc, GenerationError | StorageError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"Future Self error: {exc}")
    else:
        logger.info(f"Request rejected: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "type": exc.__class__.__name__},
    )


def get_service(request: Request) -> FutureSelfService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise RuntimeError("Service not initialized")
    return service  # type: ignore[no-any-return]


def get_jobs(request: Request) -> LetterJobs:
    jobs = getattr(request.app.state, "jobs", None)
    if jobs is None:
        raise RuntimeError("Jobs not initialized")
    return jobs  # type: ignore[no-any-return]


def get_listener(request: Request) -> CacheInvalidationListener:
    listener = getattr(request.app.state, "listener", None)
    if listener is None:
        raise RuntimeError("Event listener not initialized")
    return listener  # type: ignore[no-any-return]


def validate_subject_id(subject_id: str) -> str:
    if not subject_id.strip() or len(subject_id) > 100:
        raise HTTPException(status_code=400, detail="Invalid subject ID")
    return subject_id


ServiceDep = Annotated[FutureSelfService, Depends(get_service)]
SubjectId = Annotated[str, Depends(validate_subject_id)]


@app.get("/future-self/simulation/{subject_id}", tags=["future-self"])
async def simulation_endpoint(subject_id: SubjectId, service: ServiceDep) -> Simulation:
    """Dual-path projection for a subject."""
    return await service.get_simulation(subject_id)


@app.get("/future-self/timeline/{subject_id}/{years}", tags=["future-self"])
async def timeline_endpoint(
    subject_id: SubjectId,
    service: ServiceDep,
    years: int = Path(..., ge=1, le=100, description="Years ahead; rounded up to a horizon"),
) -> TimelineResponse:
    """Both paths at the projection horizon covering the given years."""
    return TimelineResponse(**await service.get_timeline(subject_id, years))


@app.get("/future-self/letter/{subject_id}", tags=["future-self"])
async def letter_endpoint(
    subject_id: SubjectId,
    service: ServiceDep,
    mode: str | None = Query(None, description="Letter variant; assigned when omitted"),
) -> LetterResponse:
    """Get (or generate) the current letter for a subject."""
    if mode is not None and mode not in settings.letter_variants:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid mode '{mode}', expected one of {settings.letter_variants}",
        )

    letter = await service.get_letter(subject_id, LetterTrigger.USER_REQUEST, mode)
    return LetterResponse(**letter)  # type: ignore[arg-type]


@app.get("/future-self/letters/{subject_id}/history", tags=["future-self"])
async def history_endpoint(
    subject_id: SubjectId,
    service: ServiceDep,
    limit: int = Query(10, ge=1, le=50),
    offset: int = Query(0, ge=0, le=10_000),
) -> list[LetterHistoryItem]:
    """Letters previously generated for a subject, newest first."""
    records = await service.get_letter_history(subject_id, limit, offset)
    return [LetterHistoryItem(**record) for record in records]  # type: ignore[arg-type]


@app.get("/future-self/letters/{subject_id}/{letter_id}", tags=["future-self"])
async def letter_detail_endpoint(
    subject_id: SubjectId, letter_id: str, service: ServiceDep
) -> LetterDetailResponse:
    """A single letter with the figures it was written from."""
    letter = await service.get_letter_by_id(subject_id, letter_id)
    if letter is None:
        raise HTTPException(status_code=404, detail="Letter not found")

    metadata = letter.get("metadata") or {}
    return LetterDetailResponse(
        **{key: value for key, value in letter.items() if key != "metadata"},
        user_age=metadata.get("user_age"),
        future_age=metadata.get("future_age"),
        current_savings_rate=metadata.get("current_savings_rate"),
        optimized_savings_rate=metadata.get("optimized_savings_rate"),
        difference_20yr=metadata.get("difference_20yr"),
    )


@app.post("/future-self/letters/{subject_id}/{letter_id}/read", tags=["future-self"])
async def mark_read_endpoint(
    subject_id: SubjectId, letter_id: str, service: ServiceDep
) -> MarkReadResponse:
    """Mark a letter as read."""
    if not await service.mark_letter_read(subject_id, letter_id):
        raise HTTPException(status_code=404, detail="Letter not found")
    return MarkReadResponse(success=True)


@app.patch("/future-self/letters/{subject_id}/{letter_id}/engagement", tags=["future-self"])
async def engagement_endpoint(
    subject_id: SubjectId, letter_id: str, body: EngagementInput, service: ServiceDep
) -> EngagementResponse:
    """Record that a letter was read and for how long."""
    engagement = await service.update_engagement(subject_id, letter_id, body.read_duration_ms)
    if engagement is None:
        raise HTTPException(status_code=404, detail="Letter not found")
    return EngagementResponse(**engagement)


@app.get("/future-self/stats/{subject_id}", tags=["future-self"])
async def statistics_endpoint(subject_id: SubjectId, service: ServiceDep) -> StatisticsResponse:
    """Letter engagement statistics."""
    return StatisticsResponse(**await service.get_statistics(subject_id))


@app.get("/future-self/preferences/{subject_id}", tags=["future-self"])
async def get_preferences_endpoint(
    subject_id: SubjectId, service: ServiceDep
) -> PreferencesResponse:
    """Weekly letter opt-in for a subject."""
    return PreferencesResponse(**await service.get_preferences(subject_id))


@app.patch("/future-self/preferences/{subject_id}", tags=["future-self"])
async def update_preferences_endpoint(
    subject_id: SubjectId, body: PreferencesInput, service: ServiceDep
) -> PreferencesResponse:
    """Opt a subject in to or out of weekly letters."""
    return PreferencesResponse(
        **await service.update_preferences(subject_id, body.weekly_letters_enabled)
    )


@app.put("/future-self/subjects/{subject_id}", tags=["future-self"])
async def subject_endpoint(
    request: Request,
    subject_id: SubjectId,
    profile: SubjectProfileInput,
    service: ServiceDep,
) -> dict[str, Any]:
    """Store a subject profile and drop its cached projections."""
    try:
        data = profile.model_dump()
        if data["weekly_letters_enabled"] is None:
            del data["weekly_letters_enabled"]
        await request.app.state.repository.save_subject(subject_id, **data)
    except Exception as e:
        logger.error(f"Failed to save subject {subject_id}: {e}")
        raise StorageError(f"Failed to save subject: {e}") from e

    await service.invalidate_cache(subject_id)
    return {"subject_id": subject_id, "updated": True}


@app.post("/future-self/events", status_code=status.HTTP_202_ACCEPTED, tags=["events"])
async def events_endpoint(
    batch: EventBatch,
    listener: Annotated[CacheInvalidationListener, Depends(get_listener)],
) -> EventBatchResponse:
    """Apply domain events from upstream modules."""
    await listener.handle_many(batch.events)
    return EventBatchResponse(accepted=len(batch.events))


@app.post("/admin/jobs/weekly-letters/run", tags=["admin"])
async def run_weekly_endpoint(jobs: Annotated[LetterJobs, Depends(get_jobs)]) -> JobOutcome:
    """Run the weekly letter job now."""
    return await jobs.trigger_manual_run()


@app.post("/admin/jobs/retry/run", tags=["admin"])
async def run_retry_endpoint(jobs: Annotated[LetterJobs, Depends(get_jobs)]) -> JobOutcome:
    """Run the retry job now."""
    return await jobs.trigger_retry_run()


@app.get("/admin/jobs/status", tags=["admin"])
async def job_status_endpoint(jobs: Annotated[LetterJobs, Depends(get_jobs)]) -> dict[str, Any]:
    """Job configuration, last runs and retry queue contents."""
    return {**jobs.job_status(), "retry_queue": await jobs.retry_queue_status()}


@app.get("/health", tags=["health"])
async def health_endpoint(response: Response, service: ServiceDep) -> dict[str, Any]:
    """Check health status of all components."""
    health = await service.health_check()
    all_healthy = all(health.values())

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "healthy" if all_healthy else "unhealthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "services": health,
    }


@app.get("/", tags=["health"])
async def root_endpoint() -> dict[str, str]:
    """API information endpoint."""
    return {
        "name": "Future Self API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
    }


app.openapi_tags = [
    {"name": "future-self", "description": "Simulations and letters"},
    {"name": "events", "description": "Cache invalidation events"},
    {"name": "admin", "description": "Job triggers and status"},
    {"name": "health", "description": "Health checks"},
]


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    return app
