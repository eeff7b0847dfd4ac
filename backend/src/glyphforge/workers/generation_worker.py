"""SVG generation worker.

Pulls job ids from the DurableQueue, claims the job row, charges the owner,
calls the generation engine and persists the artifact.

Every step is safe to repeat. The queue delivers at least once, so a job can
be seen again after a crash at any point:

- a job that already has a result is acknowledged without side effects
- the claim (QUEUED -> RUNNING) lets exactly one delivery run the job
- the charge is skipped once credits_charged is set
- the artifact insert and the SUCCEEDED transition commit together
- a delivery whose lease was taken back, or whose claim was superseded,
  writes nothing to the row

Failures go through handle_job_failure, which either resets the row for the
next queue retry or, on the final attempt, refunds the owner and marks the job
FAILED.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable
from uuid import UUID

import structlog

from glyphforge.core.config import Settings
from glyphforge.core.timezone import utcnow
from glyphforge.models.generation_job import GenerationJobStatus
from glyphforge.models.svg_generation import SvgGeneration
from glyphforge.queue.durable_queue import (
    STALLED_REASON,
    DurableQueue,
    JobOptions,
    Lease,
    StalledJob,
)
from glyphforge.services.cache import ResultsCache
from glyphforge.services.error_classifier import (
    INSUFFICIENT_CREDITS_MESSAGE,
    ClassifiedError,
    ErrorCode,
    classify_error,
)
from glyphforge.services.exceptions import JobNotFoundError, JobStalledError
from glyphforge.services.generation.replicate_client import GenerationError, generate_svg
from glyphforge.services.generation.svg_sanitizer import sanitize_svg
from glyphforge.services.ledger import (
    GENERATION_COST,
    ChargeOutcome,
    charge_for_job,
    refund_for_job,
)
from glyphforge.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

GenerateFn = Callable[..., Awaitable[str]]
SanitizeFn = Callable[[str], str]

# Poll interval when the queue is read without blocking (WORKER_BLOCK_SECONDS=0)
IDLE_POLL_SECONDS = 0.2


class ProcessResult(str, Enum):
    """Outcome of one delivery of a job that did not raise."""

    SUCCEEDED = "succeeded"
    ALREADY_DONE = "already_done"
    NOT_CLAIMED = "not_claimed"
    INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass
class Delivery:
    """Claim made by one delivery of a job.

    claimed_at is the last_started_at value this delivery wrote. Row writes made
    on its behalf are conditioned on it, so they never land on a later claim.
    """

    claimed_at: datetime | None = None


def parse_job_id(raw: str) -> UUID:
    """Parse a queue entry id into a job id.

    Raises:
        JobNotFoundError: If the id is not a UUID (no row can exist for it)
    """
    try:
        return UUID(raw)
    except (TypeError, ValueError):
        raise JobNotFoundError(f"Generation job {raw} not found")


def build_generation_queue(client, settings: Settings) -> DurableQueue:
    """Create the generation queue configured from settings."""
    return DurableQueue(
        client,
        settings.generation_queue_name,
        JobOptions(
            attempts=settings.generation_max_attempts,
            backoff_seconds=settings.generation_backoff_seconds,
            keep_completed_seconds=settings.generation_keep_completed_seconds,
            keep_completed_count=settings.generation_keep_completed_count,
            keep_failed_seconds=settings.generation_keep_failed_seconds,
            lock_seconds=settings.generation_lock_seconds,
            max_stalled_count=settings.generation_max_stalled_count,
        ),
    )


async def process_generation_job(
    job_id: UUID,
    uow_factory: UnitOfWorkFactory,
    cache: ResultsCache | None,
    settings: Settings,
    generate: GenerateFn = generate_svg,
    sanitize: SanitizeFn = sanitize_svg,
    delivery: Delivery | None = None,
) -> ProcessResult:
    """Run one delivery of a generation job.

    Workflow:
    1. Load the job row (missing row is fatal)
    2. Short-circuit if the job already has a result or is terminal
    3. Claim QUEUED -> RUNNING; losing the claim means another worker owns it
    4. Charge the owner unless already charged
    5. Generate and sanitize the SVG
    6. Insert the artifact and mark the job SUCCEEDED in one transaction
    7. Invalidate the cached first public page (failures are logged only)

    Args:
        job_id: Job to process
        uow_factory: Factory producing UnitOfWork instances
        cache: Public results cache (None disables invalidation)
        settings: Application settings (API token, page size)
        generate: Generation engine call
        sanitize: Artifact sanitizer
        delivery: Receives the claim timestamp once the job is claimed

    Returns:
        ProcessResult

    Raises:
        JobNotFoundError: If the row does not exist
        Exception: Any failure in steps 3-6 (handled by handle_job_failure)
    """
    start_time = time.time()

    # Step 1: Load
    async with await uow_factory() as uow:
        job = await uow.generation_jobs.get_by_id(job_id)
    if job is None:
        raise JobNotFoundError(f"Generation job {job_id} not found")

    # Step 2: Already done (duplicate delivery)
    if job.result_id is not None or job.status in (
        GenerationJobStatus.SUCCEEDED,
        GenerationJobStatus.FAILED,
    ):
        logger.info(
            "generation_job.already_done",
            job_id=str(job_id),
            status=job.status.value,
            has_result=job.result_id is not None,
        )
        return ProcessResult.ALREADY_DONE

    # Step 3: Claim
    claimed_at = utcnow()
    async with await uow_factory() as uow:
        claimed = await uow.generation_jobs.claim(job_id, claimed_at=claimed_at)
    if not claimed:
        logger.info("generation_job.claim_lost", job_id=str(job_id), status=job.status.value)
        return ProcessResult.NOT_CLAIMED
    if delivery is not None:
        delivery.claimed_at = claimed_at

    attempt_number = job.attempts_made + 1
    logger.info(
        "generation_job.started",
        job_id=str(job_id),
        owner_id=str(job.owner_id),
        attempt_number=attempt_number,
        model=job.model,
    )

    # Step 4: Charge
    if not job.credits_charged:
        async with await uow_factory() as uow:
            outcome = await charge_for_job(uow, job_id, job.owner_id)
            if outcome is ChargeOutcome.INSUFFICIENT_CREDITS:
                await uow.generation_jobs.mark_insufficient_credits(
                    job_id,
                    ErrorCode.INSUFFICIENT_CREDITS.value,
                    INSUFFICIENT_CREDITS_MESSAGE,
                    claimed_at=claimed_at,
                )
        if outcome is ChargeOutcome.INSUFFICIENT_CREDITS:
            logger.warning(
                "generation_job.insufficient_credits",
                job_id=str(job_id),
                owner_id=str(job.owner_id),
            )
            return ProcessResult.INSUFFICIENT_CREDITS

    # Step 5: Generate
    raw_svg = await generate(
        prompt=job.prompt,
        style=job.style,
        model=job.model,
        api_token=settings.replicate_api_token,
        model_owner=settings.replicate_model_owner,
    )
    svg = sanitize(raw_svg)
    if not svg.strip():
        raise GenerationError("Sanitized SVG is empty")

    # Step 6: Persist artifact + success together
    async with await uow_factory() as uow:
        artifact = SvgGeneration(
            owner_id=job.owner_id,
            prompt=job.prompt,
            svg=svg,
            style=job.style,
            model=job.model,
            privacy=job.privacy,
            credits_used=GENERATION_COST,
        )
        await uow.svg_generations.add(artifact)
        if not await uow.generation_jobs.mark_succeeded(
            job_id, artifact.id, claimed_at=claimed_at
        ):
            # Row is no longer ours (released by stall recovery, claimed again, or has a result)
            await uow.rollback()
            logger.warning("generation_job.success_not_applied", job_id=str(job_id))
            return ProcessResult.ALREADY_DONE

    logger.info(
        "generation_job.succeeded",
        job_id=str(job_id),
        result_id=str(artifact.id),
        duration_seconds=time.time() - start_time,
        attempt_number=attempt_number,
    )

    # Step 7: Cache side effect
    if not job.privacy and cache is not None:
        await invalidate_public_cache(cache, settings.public_page_size, job_id)

    return ProcessResult.SUCCEEDED


async def invalidate_public_cache(cache: ResultsCache, page_size: int, job_id: UUID) -> None:
    """Drop the cached first public page. Never raises."""
    key = cache.public_first_page_key(page_size)
    try:
        await cache.delete(key)
    except Exception as e:
        classified = classify_error(e)
        logger.warning(
            "generation_job.cache_invalidation_failed",
            job_id=str(job_id),
            key=key,
            error_code=classified.code.value,
            error_message=classified.message,
        )


async def handle_job_failure(
    uow_factory: UnitOfWorkFactory,
    job_id: UUID,
    error: BaseException,
    attempts_made: int,
    final: bool,
    claimed_at: datetime | None = None,
) -> ClassifiedError:
    """Record a failed attempt on the job row.

    Not final: the row goes back to QUEUED with the error recorded, so the
    queue's next delivery can claim it again.

    Final: the owner is refunded (at most once, never for a job with a result)
    and the row is marked FAILED, in one transaction.

    With claimed_at, nothing is written unless the row still carries that
    claim: a later delivery has taken the job over and owns its outcome.

    Args:
        uow_factory: Factory producing UnitOfWork instances
        job_id: Failed job
        error: Exception raised by the attempt
        attempts_made: Attempts finished, including this one
        final: Whether the queue will not retry again
        claimed_at: Claim timestamp of the failed delivery, if it claimed the row

    Returns:
        The classification stored on the row
    """
    classified = classify_error(error)

    async with await uow_factory() as uow:
        if not final:
            updated = await uow.generation_jobs.mark_for_retry(
                job_id,
                classified.code.value,
                classified.message,
                attempts_made,
                claimed_at=claimed_at,
            )
            if claimed_at is not None and not updated:
                logger.warning("generation_job.failure_superseded", job_id=str(job_id))
                return classified
            logger.warning(
                "generation_job.retry_scheduled",
                job_id=str(job_id),
                error_code=classified.code.value,
                error_message=classified.message,
                attempts_made=attempts_made,
            )
            return classified

        job = await uow.generation_jobs.get_by_id(job_id)
        if job is None:
            logger.error(
                "generation_job.failed_missing_row",
                job_id=str(job_id),
                error_code=classified.code.value,
            )
            return classified

        marked = await uow.generation_jobs.mark_failed(
            job_id,
            classified.code.value,
            classified.message,
            attempts_made,
            claimed_at=claimed_at,
        )
        if claimed_at is not None and not marked:
            logger.warning("generation_job.failure_superseded", job_id=str(job_id))
            return classified
        refunded = await refund_for_job(uow, job_id, job.owner_id)

    logger.error(
        "generation_job.failed",
        job_id=str(job_id),
        error_code=classified.code.value,
        error_message=classified.message,
        attempts_made=attempts_made,
        refunded=refunded,
    )
    return classified


async def _keep_lease_alive(queue: DurableQueue, lease: Lease) -> None:
    interval = max(queue.options.lock_seconds / 3, 0.1)
    while True:
        await asyncio.sleep(interval)
        try:
            if not await queue.extend(lease):
                logger.warning("generation_job.lease_lost", job_id=lease.job_id)
                return
        except Exception as e:
            logger.warning("generation_job.lease_extend_failed", job_id=lease.job_id, error=str(e))


async def _settle_failure(
    queue: DurableQueue,
    lease: Lease,
    uow_factory: UnitOfWorkFactory,
    error: Exception,
    delivery: Delivery,
) -> None:
    classified = classify_error(error)
    unrecoverable = isinstance(error, JobNotFoundError) or not classified.retryable
    final = unrecoverable or lease.is_final_attempt

    logger.warning(
        "generation_job.attempt_failed",
        job_id=lease.job_id,
        attempt_number=lease.attempt_number,
        error_code=classified.code.value,
        error_message=classified.message,
        final=final,
    )

    # Stall recovery took the job back; the current delivery owns the row now
    if not await queue.owns(lease):
        logger.warning("generation_job.lease_lost", job_id=lease.job_id)
        return

    # Row first: if this fails, the lease is left to expire and stall recovery
    # re-delivers the job instead of the queue forgetting it.
    try:
        job_id = parse_job_id(lease.job_id)
        await handle_job_failure(
            uow_factory,
            job_id,
            error,
            lease.attempts_made + 1,
            final,
            claimed_at=delivery.claimed_at,
        )
    except JobNotFoundError:
        pass
    except Exception as e:
        logger.error(
            "generation_job.failure_handler_failed",
            job_id=lease.job_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return

    await queue.fail(lease, classified.message, unrecoverable=unrecoverable)


async def handle_lease(
    queue: DurableQueue,
    lease: Lease,
    uow_factory: UnitOfWorkFactory,
    cache: ResultsCache | None,
    settings: Settings,
    generate: GenerateFn = generate_svg,
    sanitize: SanitizeFn = sanitize_svg,
) -> ProcessResult | None:
    """Process one leased job and settle the lease.

    Returns:
        ProcessResult, or None if the attempt failed
    """
    delivery = Delivery()
    heartbeat = asyncio.create_task(_keep_lease_alive(queue, lease))
    try:
        job_id = parse_job_id(lease.job_id)
        result = await process_generation_job(
            job_id,
            uow_factory,
            cache,
            settings,
            generate=generate,
            sanitize=sanitize,
            delivery=delivery,
        )
    except Exception as e:
        heartbeat.cancel()
        await _settle_failure(queue, lease, uow_factory, e, delivery)
        return None
    finally:
        heartbeat.cancel()

    if result is ProcessResult.INSUFFICIENT_CREDITS:
        # Nothing was charged, so there is nothing to refund
        await queue.fail(lease, INSUFFICIENT_CREDITS_MESSAGE, unrecoverable=True)
    else:
        await queue.complete(lease)
    return result


async def process_next(
    queue: DurableQueue,
    uow_factory: UnitOfWorkFactory,
    cache: ResultsCache | None,
    settings: Settings,
    generate: GenerateFn = generate_svg,
    sanitize: SanitizeFn = sanitize_svg,
    timeout: float = 0,
) -> bool:
    """Reserve and process a single job.

    Returns:
        False if no job was available
    """
    lease = await queue.reserve(timeout=timeout)
    if lease is None:
        return False
    await handle_lease(queue, lease, uow_factory, cache, settings, generate, sanitize)
    return True


async def recover_stalled_jobs(
    queue: DurableQueue, uow_factory: UnitOfWorkFactory
) -> list[StalledJob]:
    """Take back expired leases.

    Every row is settled before its queue entry moves. Re-delivered jobs have
    their row released (RUNNING -> QUEUED) so the next delivery can claim them;
    the charge flag is kept, so they are not charged again. Jobs that stalled
    too often are refunded and marked FAILED. If the row write fails, the entry
    keeps its expired lease and the next check tries again.
    """

    async def settle_row(entry: StalledJob) -> None:
        try:
            job_id = parse_job_id(entry.job_id)
        except JobNotFoundError:
            return
        if entry.failed:
            await handle_job_failure(
                uow_factory,
                job_id,
                JobStalledError(STALLED_REASON),
                entry.attempts_made + 1,
                final=True,
            )
            return
        async with await uow_factory() as uow:
            released = await uow.generation_jobs.release_stalled(job_id)
        logger.info("generation_job.stalled_released", job_id=entry.job_id, released=released)

    return await queue.recover_stalled(on_stalled=settle_row)


async def _run_stalled_checker(
    queue: DurableQueue, uow_factory: UnitOfWorkFactory, interval: float
) -> None:
    while True:
        try:
            await recover_stalled_jobs(queue, uow_factory)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "worker.stalled_check_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
        await asyncio.sleep(interval)


async def run_generation_worker(
    queue: DurableQueue,
    uow_factory: UnitOfWorkFactory,
    cache: ResultsCache | None,
    settings: Settings,
    generate: GenerateFn = generate_svg,
    sanitize: SanitizeFn = sanitize_svg,
) -> None:
    """Main worker loop for SVG generation.

    Runs up to WORKER_CONCURRENCY jobs at once, and checks for stalled leases
    every STALLED_CHECK_INTERVAL_SECONDS (the first check runs at startup).

    Args:
        queue: Work queue to consume
        uow_factory: Factory producing UnitOfWork instances
        cache: Public results cache
        settings: Application settings
        generate: Generation engine call
        sanitize: Artifact sanitizer
    """
    slots = asyncio.Semaphore(settings.worker_concurrency)
    in_flight: set[asyncio.Task] = set()

    def on_done(task: asyncio.Task) -> None:
        in_flight.discard(task)
        slots.release()
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error(
                "worker.job_task_crashed",
                error_type=type(exc).__name__,
                error_message=str(exc),
            )

    stalled_checker = asyncio.create_task(
        _run_stalled_checker(queue, uow_factory, settings.stalled_check_interval_seconds)
    )

    logger.info(
        "worker.started",
        queue=queue.name,
        concurrency=settings.worker_concurrency,
        max_attempts=queue.options.attempts,
    )

    try:
        while True:
            try:
                await slots.acquire()
                lease = None
                try:
                    lease = await queue.reserve(timeout=settings.worker_block_seconds)
                finally:
                    if lease is None:
                        slots.release()
                if lease is None:
                    if settings.worker_block_seconds <= 0:
                        await asyncio.sleep(IDLE_POLL_SECONDS)
                    continue

                task = asyncio.create_task(
                    handle_lease(queue, lease, uow_factory, cache, settings, generate, sanitize)
                )
                in_flight.add(task)
                task.add_done_callback(on_done)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        # Graceful shutdown: unsettled leases are recovered as stalled
        stalled_checker.cancel()
        for task in list(in_flight):
            task.cancel()
        await asyncio.gather(stalled_checker, *in_flight, return_exceptions=True)
        logger.info("worker.stopped")
        raise
