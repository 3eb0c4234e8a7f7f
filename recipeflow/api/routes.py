"""FastAPI routes for the RecipeFlow job API."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from recipeflow.models.job import ErrorCode, Job, JobStatus, SourceKind
from recipeflow.api.deps import get_job_service, get_owner_id
from recipeflow.services.admission import MAX_LIST_LIMIT, ExtractionJobService
from recipeflow.services.uploads import decode_image
from recipeflow.utils.errors import (
    FetchError,
    InvalidSubmissionError,
    JobNotFoundError,
    RecipeFlowError,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()


# ==================== Error Response Model ====================


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
    error_type: str
    errors: Optional[List[Dict[str, Any]]] = None


# ==================== Exception Handlers ====================


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle request and Pydantic validation errors."""
    errors = exc.errors() if isinstance(exc, (ValidationError, RequestValidationError)) else []
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "error_type": "ValidationError",
            "errors": [{"loc": list(e.get("loc", [])), "msg": e.get("msg", "")} for e in errors],
        },
    )


async def recipeflow_exception_handler(request: Request, exc: RecipeFlowError) -> JSONResponse:
    """Handle application-specific errors."""
    status_code = 500

    if isinstance(exc, JobNotFoundError):
        status_code = 404
    elif isinstance(exc, InvalidSubmissionError):
        status_code = 422
    elif isinstance(exc, FetchError):
        status_code = 502  # Bad Gateway for external source errors

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": type(exc).__name__,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error_type": "HTTPException",
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": "InternalError",
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(RecipeFlowError, recipeflow_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


# ==================== Request/Response Models ====================


class ImagePayload(BaseModel):
    """A base64-encoded image uploaded with a submission."""

    model_config = ConfigDict(populate_by_name=True)

    data: str = Field(min_length=1, description="Base64 image bytes or data URL")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class SubmitJobRequest(BaseModel):
    """Request model for job submission."""

    model_config = ConfigDict(populate_by_name=True)

    source_kind: SourceKind = Field(alias="sourceKind")
    source_locator: Optional[str] = Field(default=None, alias="sourceLocator", max_length=2083)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey", max_length=255)
    images: Optional[List[ImagePayload]] = Field(default=None, max_length=10)


class SubmitJobResponse(BaseModel):
    """Response model for job submission."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: JobStatus


class JobStatusResponse(BaseModel):
    """Client-facing projection of a job record."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    source_kind: SourceKind = Field(alias="sourceKind")
    status: JobStatus
    progress_percent: int = Field(alias="progressPercent")
    status_message: Optional[str] = Field(default=None, alias="statusMessage")
    result_recipe_id: Optional[str] = Field(default=None, alias="resultRecipeId")
    error_code: Optional[ErrorCode] = Field(default=None, alias="errorCode")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    retryable: bool = False
    created_at: datetime = Field(alias="createdAt")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            source_kind=job.source_kind,
            status=job.status,
            progress_percent=job.progress_percent,
            status_message=job.status_message,
            result_recipe_id=job.result_recipe_id,
            error_code=job.error_code,
            error_message=job.error_message,
            retryable=job.retryable,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    jobs: List[JobStatusResponse]


# ==================== Endpoints ====================


@router.post("/jobs", response_model=SubmitJobResponse, status_code=201)
async def submit_job(
    request: SubmitJobRequest,
    response: Response,
    owner_id: str = Depends(get_owner_id),
    service: ExtractionJobService = Depends(get_job_service),
) -> SubmitJobResponse:
    """
    Submit a source for recipe extraction.

    Returns immediately with the job id; poll ``GET /jobs/{job_id}`` for progress.
    A repeated idempotency key returns the existing job with status 200.
    """
    if request.images:
        if request.source_kind != SourceKind.IMAGE:
            raise InvalidSubmissionError("images", "Images can only be sent with sourceKind=image")
        images = [
            decode_image(image.data, image.mime_type, field=f"images[{i}]")
            for i, image in enumerate(request.images)
        ]
        job, created = await service.submit_images(owner_id, images, request.idempotency_key)
    else:
        job, created = await service.submit(
            owner_id,
            request.source_kind,
            request.source_locator or "",
            request.idempotency_key,
        )

    if not created:
        response.status_code = 200
    return SubmitJobResponse(job_id=job.id, status=job.status)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(20, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_owner_id),
    service: ExtractionJobService = Depends(get_job_service),
) -> JobListResponse:
    """List the caller's jobs, most recent first."""
    jobs = await service.list_jobs(owner_id, limit=limit, offset=offset)
    return JobListResponse(jobs=[JobStatusResponse.from_job(job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    service: ExtractionJobService = Depends(get_job_service),
) -> JobStatusResponse:
    """Get the current status of one of the caller's jobs."""
    job = await service.get_status(job_id, owner_id)
    return JobStatusResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", status_code=204)
async def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    service: ExtractionJobService = Depends(get_job_service),
) -> Response:
    """Request cancellation of a running job."""
    await service.cancel(job_id, owner_id)
    return Response(status_code=204)


@router.get("/health")
async def health(service: ExtractionJobService = Depends(get_job_service)) -> Dict[str, Any]:
    limiter = service.runner.limiter
    return {
        "status": "ok",
        "activeJobs": len(service.registry),
        "slotsInUse": limiter.in_use,
        "slotCapacity": limiter.capacity,
        "waiting": limiter.waiting,
        "peakSlotsInUse": limiter.peak,
    }
