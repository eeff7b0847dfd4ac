"""Re-enqueue sweep for QUEUED jobs the queue no longer holds.

Intake commits the job row before enqueueing, so a Redis outage between the two
leaves a QUEUED row without a queue entry. The sweep rebuilds those entries.
Rebuilding is keyed by job id, so running it while the job is still waiting or
delayed in the queue changes nothing.
"""

from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from glyphforge.core.timezone import utcnow
from glyphforge.queue.durable_queue import DurableQueue
from glyphforge.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


@dataclass
class RequeueResult:
    """Result of a sweep."""

    scanned_count: int = 0  # QUEUED rows older than the threshold
    requeued_count: int = 0  # Queue entries rebuilt
    skipped_count: int = 0  # Rows whose entry is still live in the queue
    errors: list[str] = field(default_factory=list)


async def requeue_stale_jobs(
    uow_factory: UnitOfWorkFactory,
    queue: DurableQueue,
    older_than_seconds: int,
    limit: int = 100,
    dry_run: bool = False,
) -> RequeueResult:
    """Rebuild queue entries for QUEUED jobs created before a cutoff.

    Args:
        uow_factory: Factory producing UnitOfWork instances
        queue: Generation queue
        older_than_seconds: Only rows at least this old are considered
        limit: Maximum number of rows to scan
        dry_run: Report candidates without touching the queue

    Returns:
        RequeueResult with counts
    """
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    async with await uow_factory() as uow:
        job_ids = await uow.generation_jobs.list_stale_queued(cutoff, limit=limit)

    result = RequeueResult(scanned_count=len(job_ids))
    logger.info("requeue.scan_completed", candidates=len(job_ids), cutoff=cutoff.isoformat())

    for job_id in job_ids:
        if dry_run:
            state = await queue.get_state(str(job_id))
            logger.info(
                "requeue.candidate",
                job_id=str(job_id),
                queue_state=state.value if state else None,
            )
            continue
        try:
            if await queue.requeue(str(job_id)):
                result.requeued_count += 1
            else:
                result.skipped_count += 1
        except Exception as e:
            logger.error(
                "requeue.failed",
                job_id=str(job_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            result.errors.append(f"{job_id}: {e}")

    logger.info(
        "requeue.completed",
        requeued=result.requeued_count,
        skipped=result.skipped_count,
        failed=len(result.errors),
        dry_run=dry_run,
    )
    return result
