"""Job intake: validate, de-duplicate, persist and enqueue generation requests.

The job row is committed before the queue is touched. If the enqueue then
fails, the row stays QUEUED and is picked up later by the re-enqueue sweep
(python -m glyphforge.cli).
"""

from dataclasses import dataclass
from uuid import UUID

import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError

from glyphforge.models.generation_job import GenerationJob
from glyphforge.queue.durable_queue import DurableQueue
from glyphforge.services.exceptions import (
    EnqueueError,
    IdempotencyConflictError,
    OwnerNotFoundError,
)
from glyphforge.services.generation.prompt_validator import (
    normalize_idempotency_key,
    validate_model,
    validate_prompt,
    validate_style,
)
from glyphforge.services.request_hash import compute_request_hash
from glyphforge.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


@dataclass
class SubmitResult:
    """Outcome of submit_generation_job."""

    job: GenerationJob
    is_duplicate: bool


def _resolve_existing(existing: GenerationJob, request_hash: str) -> SubmitResult:
    # Same key + same fingerprint is the same logical request
    if existing.request_hash != request_hash:
        logger.info(
            "generation_job.idempotency_conflict",
            job_id=str(existing.id),
            owner_id=str(existing.owner_id),
        )
        raise IdempotencyConflictError(existing.id)

    logger.info(
        "generation_job.duplicate_submission",
        job_id=str(existing.id),
        owner_id=str(existing.owner_id),
        status=existing.status.value,
    )
    return SubmitResult(job=existing, is_duplicate=True)


async def submit_generation_job(
    uow_factory: UnitOfWorkFactory,
    queue: DurableQueue,
    owner_id: UUID,
    prompt: str,
    style: str,
    model: str | None = None,
    privacy: bool = False,
    idempotency_key: str | None = None,
) -> SubmitResult:
    """Create (or find) the generation job for a request and enqueue it.

    Workflow:
    1. Validate and normalize prompt, style, model and idempotency key
    2. Compute the request fingerprint
    3. With a key: return the existing job on a fingerprint match, raise on mismatch
    4. Insert the row; on a unique-constraint race, re-read the winner's row and
       apply step 3 to it
    5. Commit, then enqueue keyed by the job id

    Args:
        uow_factory: Factory producing UnitOfWork instances
        queue: Work queue the new job is handed to
        owner_id: Submitting user
        prompt: Raw prompt text
        style: Requested style
        model: Requested model (default model when empty)
        privacy: Keep the result out of the public listing
        idempotency_key: Optional caller-supplied key (<= 128 characters)

    Returns:
        SubmitResult with the job and whether it already existed

    Raises:
        RequestValidationError: Invalid request fields
        OwnerNotFoundError: Unknown owner
        IdempotencyConflictError: Key reused with different parameters
        EnqueueError: Row persisted but the queue could not be reached
    """
    clean_prompt = validate_prompt(prompt)
    svg_style = validate_style(style)
    ai_model = validate_model(model)
    key = normalize_idempotency_key(idempotency_key)
    request_hash = compute_request_hash(clean_prompt, svg_style.value, ai_model.value, privacy)

    async with await uow_factory() as uow:
        if not await uow.users.exists(owner_id):
            raise OwnerNotFoundError(f"User {owner_id} not found")

        if key is not None:
            existing = await uow.generation_jobs.get_by_idempotency_key(owner_id, key)
            if existing is not None:
                return _resolve_existing(existing, request_hash)

        job = GenerationJob(
            owner_id=owner_id,
            prompt=clean_prompt,
            style=svg_style.value,
            model=ai_model.value,
            privacy=privacy,
            idempotency_key=key,
            request_hash=request_hash,
        )
        try:
            await uow.generation_jobs.add(job)
        except IntegrityError:
            if key is None:
                raise
            # Lost the insert race: the winner's row is now visible
            await uow.rollback()
            winner = await uow.generation_jobs.get_by_idempotency_key(owner_id, key)
            if winner is None:
                raise
            return _resolve_existing(winner, request_hash)

    try:
        await queue.enqueue(str(job.id))
    except RedisError as e:
        logger.error(
            "generation_job.enqueue_failed",
            job_id=str(job.id),
            owner_id=str(owner_id),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise EnqueueError(job.id) from e

    logger.info(
        "generation_job.submitted",
        job_id=str(job.id),
        owner_id=str(owner_id),
        style=job.style,
        model=job.model,
        privacy=job.privacy,
        has_idempotency_key=key is not None,
    )
    return SubmitResult(job=job, is_duplicate=False)
