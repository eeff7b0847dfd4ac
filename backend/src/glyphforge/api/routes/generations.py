"""SVG generation API endpoints.

This module implements REST endpoints for asynchronous SVG generation:
- POST /api/svg/generate - Submit a generation job (idempotent via X-Idempotency-Key)
- GET /api/svg/generation-jobs/{job_id} - Poll a job owned by the caller
- GET /api/svg/public - Paginated public results (served through the results cache)

Generation itself runs in the background worker; POST only records and enqueues
the job and answers 202 with a Location header pointing to the job resource.
"""

from datetime import datetime
from typing import Annotated
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from glyphforge.api.dependencies import (
    get_cache,
    get_current_user_id,
    get_queue,
    get_settings,
    get_uow_factory,
)
from glyphforge.core.config import Settings
from glyphforge.core.dependencies import get_uow
from glyphforge.models.generation_job import GenerationJob
from glyphforge.queue.durable_queue import DurableQueue
from glyphforge.services.cache import ResultsCache
from glyphforge.services.exceptions import (
    EnqueueError,
    IdempotencyConflictError,
    OwnerNotFoundError,
    RequestValidationError,
)
from glyphforge.services.intake import submit_generation_job
from glyphforge.uow import UnitOfWork

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/svg", tags=["svg"])

MAX_PUBLIC_PAGE_LIMIT = 50


# Request/Response Models


class GenerateSvgRequest(BaseModel):
    """Request model for submitting a generation job.

    Field rules (prompt length, allowed styles and models) are enforced by the
    intake service so that every caller gets the same validation.
    """

    prompt: str = Field(..., description="Description of the icon (10-500 characters)")
    style: str = Field(..., description="Visual style, e.g. outline, flat, line-art")
    model: str | None = Field(default=None, description="Model name (default: gpt-5-mini)")
    privacy: bool = Field(default=False, description="Keep the result out of public listings")


class SvgGenerationDTO(BaseModel):
    """Generated artifact embedded in a job response."""

    id: UUID
    prompt: str
    style: str
    model: str
    privacy: bool
    svg: str
    created_at: datetime


class GenerationJobDTO(BaseModel):
    """Data Transfer Object for generation job information in API responses."""

    id: UUID
    status: str = Field(..., description="QUEUED, RUNNING, SUCCEEDED or FAILED")
    prompt: str
    style: str
    model: str
    privacy: bool
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    result_id: UUID | None = None
    generation: SvgGenerationDTO | None = None


class SubmitJobResponse(BaseModel):
    """Response model for job submission."""

    job: GenerationJobDTO
    duplicate: bool = Field(
        default=False, description="True if an existing job was returned for the idempotency key"
    )


class JobStatusResponse(BaseModel):
    """Response model for job polling."""

    job: GenerationJobDTO
    credits: int | None = Field(
        default=None, description="Owner's remaining credits (only once the job is terminal)"
    )


class PublicGenerationDTO(BaseModel):
    """Public listing entry (no SVG body)."""

    id: UUID
    prompt: str
    style: str
    model: str
    privacy: bool
    credits_used: int
    created_at: datetime


class PaginationDTO(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    limit: int
    has_more: bool


class PublicGenerationsResponse(BaseModel):
    """Response model for the public listing."""

    public_generations: list[PublicGenerationDTO]
    pagination: PaginationDTO


async def _job_view(uow: UnitOfWork, job: GenerationJob) -> GenerationJobDTO:
    generation = None
    if job.result_id is not None:
        artifact = await uow.svg_generations.get_by_id(job.result_id)
        if artifact is not None:
            generation = SvgGenerationDTO.model_validate(artifact, from_attributes=True)

    return GenerationJobDTO(
        id=job.id,
        status=job.status.value,
        prompt=job.prompt,
        style=job.style,
        model=job.model,
        privacy=job.privacy,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        error_code=job.error_code,
        error_message=job.error_message,
        result_id=job.result_id,
        generation=generation,
    )


def _job_location(job_id: UUID) -> str:
    return f"/api/svg/generation-jobs/{job_id}"


# API Endpoints


@router.post(
    "/generate",
    response_model=SubmitJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_svg(
    request: GenerateSvgRequest,
    response: Response,
    x_idempotency_key: Annotated[str | None, Header()] = None,
    owner_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
    queue: DurableQueue = Depends(get_queue),
) -> SubmitJobResponse:
    """Submit an SVG generation job.

    Returns:
        202 with the new job, or the existing job for a repeated idempotency key
        (200 if that job is already SUCCEEDED or FAILED, 202 otherwise)

    Raises:
        HTTPException 400: Invalid prompt, style, model or idempotency key
        HTTPException 404: Unknown user
        HTTPException 409: Idempotency key reused with different parameters
        HTTPException 503: Job recorded but could not be queued
        HTTPException 500: Unexpected error

    Example:
        POST /api/svg/generate
        X-Idempotency-Key: 3f1c...
        {"prompt": "A minimalist rocket ship icon", "style": "outline"}

        Response 202 (Location: /api/svg/generation-jobs/<id>):
        {"job": {"id": "...", "status": "QUEUED", ...}, "duplicate": false}
    """
    try:
        result = await submit_generation_job(
            uow_factory,
            queue,
            owner_id=owner_id,
            prompt=request.prompt,
            style=request.style,
            model=request.model,
            privacy=request.privacy,
            idempotency_key=x_idempotency_key,
        )
    except RequestValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except OwnerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except IdempotencyConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Request already in progress"
        )
    except EnqueueError as e:
        logger.error("generate_svg.enqueue_failed", job_id=str(e.job_id), owner_id=str(owner_id))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to queue SVG generation job. Please try again.",
        )
    except Exception as e:
        logger.error(
            "generate_svg.unexpected_error",
            owner_id=str(owner_id),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error"
        )

    job = result.job
    if result.is_duplicate and job.is_terminal:
        response.status_code = status.HTTP_200_OK
    response.headers["Location"] = _job_location(job.id)

    async with await uow_factory() as uow:
        job_view = await _job_view(uow, job)

    return SubmitJobResponse(job=job_view, duplicate=result.is_duplicate)


@router.get("/generation-jobs/{job_id}", response_model=JobStatusResponse)
async def get_generation_job(
    job_id: UUID,
    owner_id: UUID = Depends(get_current_user_id),
    uow: UnitOfWork = Depends(get_uow),
) -> JobStatusResponse:
    """Get a generation job owned by the caller.

    The owner's remaining credits are included once the job is terminal, so a
    client can refresh its balance after a charge or refund.

    Raises:
        HTTPException 404: Job not found (or owned by someone else)
    """
    job = await uow.generation_jobs.get_for_owner(job_id, owner_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Generation job not found"
        )

    payload = JobStatusResponse(job=await _job_view(uow, job))
    if job.is_terminal:
        payload.credits = await uow.users.get_credits(job.owner_id)
    return payload


@router.get("/public", response_model=PublicGenerationsResponse)
async def list_public_generations(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1, le=MAX_PUBLIC_PAGE_LIMIT),
    uow_factory=Depends(get_uow_factory),
    cache: ResultsCache | None = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> PublicGenerationsResponse:
    """Get public generations, newest first.

    Pages are cached for CACHE_TTL_SECONDS; the first page is invalidated by the
    worker whenever a public generation completes.
    """
    page_limit = limit or settings.public_page_size

    async def fetch_page() -> dict:
        async with await uow_factory() as uow:
            total_count = await uow.svg_generations.count_public()
            generations = await uow.svg_generations.list_public(
                limit=page_limit, offset=(page - 1) * page_limit
            )
        total_pages = -(-total_count // page_limit)
        return PublicGenerationsResponse(
            public_generations=[
                PublicGenerationDTO.model_validate(g, from_attributes=True) for g in generations
            ],
            pagination=PaginationDTO(
                current_page=page,
                total_pages=total_pages,
                total_count=total_count,
                limit=page_limit,
                has_more=page < total_pages,
            ),
        ).model_dump(mode="json")

    if cache is None:
        data = await fetch_page()
    else:
        key = cache.build_key("public", "page", page, "limit", page_limit)
        data = await cache.get_or_set_json(key, fetch_page)

    return PublicGenerationsResponse.model_validate(data)
