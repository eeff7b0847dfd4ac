"""GenerationJob repository for glyphforge.

Every state change is a single conditional UPDATE whose WHERE clause encodes the
precondition of the transition. The affected row count tells the caller whether
it won the transition, so replaying any step is a no-op.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from glyphforge.core.timezone import utcnow
from glyphforge.models.generation_job import GenerationJob, GenerationJobStatus

_RETRYABLE_FROM = (GenerationJobStatus.QUEUED, GenerationJobStatus.RUNNING)


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Methods:
    - add / get_by_id / get_for_owner / get_by_idempotency_key: plain access
    - claim: QUEUED -> RUNNING (exactly one caller wins)
    - mark_credits_charged / claim_refund: ledger flags, each flips at most once
    - mark_succeeded: RUNNING -> SUCCEEDED together with result_id
    - mark_for_retry / release_stalled: RUNNING -> QUEUED
    - mark_failed / mark_insufficient_credits: -> FAILED (never over a result)
    - list_stale_queued: rows for the re-enqueue sweep
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    @staticmethod
    def _claimed_by(statement, claimed_at: datetime | None):
        if claimed_at is None:
            return statement
        return statement.where(GenerationJob.last_started_at == claimed_at)  # type: ignore[arg-type]

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new generation job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job with generated ID

        Raises:
            IntegrityError: If (owner_id, idempotency_key) already exists
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve generation job by UUID, always reading the current row.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_owner(self, job_id: UUID, owner_id: UUID) -> GenerationJob | None:
        """Retrieve generation job by UUID scoped to its owner."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.owner_id == owner_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(
        self, owner_id: UUID, idempotency_key: str
    ) -> GenerationJob | None:
        """Retrieve the job registered under (owner_id, idempotency_key).

        Args:
            owner_id: Owner's unique identifier
            idempotency_key: Caller-supplied idempotency key

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.owner_id == owner_id)  # type: ignore[arg-type]
            .where(GenerationJob.idempotency_key == idempotency_key)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim(self, job_id: UUID, claimed_at: datetime | None = None) -> bool:
        """Transition QUEUED -> RUNNING.

        Query:
            UPDATE generation_jobs
            SET status = 'RUNNING',
                started_at = COALESCE(started_at, :now),
                last_started_at = :now,
                error_code = NULL, error_message = NULL
            WHERE id = :job_id AND status = 'QUEUED'

        Args:
            job_id: Job to claim
            claimed_at: Timestamp stored in last_started_at (defaults to now).
                Later writes by the same delivery pass it back to prove the
                claim is still theirs.

        Returns:
            True if this caller claimed the job, False if another worker holds it
            or it is no longer QUEUED
        """
        now = claimed_at or utcnow()
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.status == GenerationJobStatus.QUEUED)  # type: ignore[arg-type]
            .values(
                status=GenerationJobStatus.RUNNING,
                started_at=func.coalesce(GenerationJob.started_at, now),
                last_started_at=now,
                error_code=None,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_credits_charged(self, job_id: UUID) -> bool:
        """Flip credits_charged false -> true.

        Returns:
            True if the flag was flipped by this call
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.credits_charged.is_(False))  # type: ignore[attr-defined]
            .values(credits_charged=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_succeeded(
        self, job_id: UUID, result_id: UUID, claimed_at: datetime | None = None
    ) -> bool:
        """Transition RUNNING -> SUCCEEDED and attach the produced artifact.

        Must run in the same transaction that inserted the artifact row.

        Args:
            job_id: Job that produced the artifact
            result_id: SvgGeneration row id
            claimed_at: Claim timestamp; when given, the row must still carry it

        Returns:
            True if the job was marked succeeded, False if it already has a
            result, is no longer RUNNING or was claimed again by another
            delivery (caller should roll back)
        """
        statement = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.status == GenerationJobStatus.RUNNING)  # type: ignore[arg-type]
            .where(GenerationJob.result_id.is_(None))  # type: ignore[union-attr]
            .values(
                status=GenerationJobStatus.SUCCEEDED,
                finished_at=utcnow(),
                result_id=result_id,
                error_code=None,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(self._claimed_by(statement, claimed_at))
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_for_retry(
        self,
        job_id: UUID,
        error_code: str,
        error_message: str,
        attempts_made: int,
        claimed_at: datetime | None = None,
    ) -> bool:
        """Move a failed attempt back to QUEUED so the next delivery can re-claim it.

        Only applies while the job has no result and is QUEUED or RUNNING, and,
        when claimed_at is given, only while the row still carries that claim.

        Returns:
            True if the row was updated
        """
        now = utcnow()
        statement = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.status.in_(_RETRYABLE_FROM))  # type: ignore[attr-defined]
            .where(GenerationJob.result_id.is_(None))  # type: ignore[union-attr]
            .values(
                status=GenerationJobStatus.QUEUED,
                error_code=error_code,
                error_message=error_message,
                attempts_made=attempts_made,
                last_failed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(self._claimed_by(statement, claimed_at))
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def release_stalled(self, job_id: UUID) -> bool:
        """Reset a RUNNING job whose worker lost its queue lease back to QUEUED.

        Returns:
            True if the row was released
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.status == GenerationJobStatus.RUNNING)  # type: ignore[arg-type]
            .where(GenerationJob.result_id.is_(None))  # type: ignore[union-attr]
            .values(status=GenerationJobStatus.QUEUED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim_refund(self, job_id: UUID) -> bool:
        """Flip credits_refunded false -> true for a charged job without a result.

        Query:
            UPDATE generation_jobs SET credits_refunded = TRUE
            WHERE id = :job_id AND credits_charged = TRUE
              AND credits_refunded = FALSE AND result_id IS NULL

        Returns:
            True if this call owns the refund (caller must credit the balance
            in the same transaction)
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.credits_charged.is_(True))  # type: ignore[attr-defined]
            .where(GenerationJob.credits_refunded.is_(False))  # type: ignore[attr-defined]
            .where(GenerationJob.result_id.is_(None))  # type: ignore[union-attr]
            .values(credits_refunded=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_failed(
        self,
        job_id: UUID,
        error_code: str,
        error_message: str,
        attempts_made: int | None = None,
        claimed_at: datetime | None = None,
    ) -> bool:
        """Mark a job permanently FAILED. Repeating the call is harmless.

        A job holding a result is never marked failed. With claimed_at, the
        row must still carry that claim.

        Returns:
            True if the row was updated
        """
        now = utcnow()
        values: dict = {
            "status": GenerationJobStatus.FAILED,
            "finished_at": now,
            "last_failed_at": now,
            "error_code": error_code,
            "error_message": error_message,
        }
        if attempts_made is not None:
            values["attempts_made"] = attempts_made

        statement = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.status != GenerationJobStatus.SUCCEEDED)  # type: ignore[arg-type]
            .where(GenerationJob.result_id.is_(None))  # type: ignore[union-attr]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(self._claimed_by(statement, claimed_at))
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_insufficient_credits(
        self,
        job_id: UUID,
        error_code: str,
        error_message: str,
        claimed_at: datetime | None = None,
    ) -> bool:
        """Transition RUNNING -> FAILED when the owner could not be charged."""
        now = utcnow()
        statement = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.status == GenerationJobStatus.RUNNING)  # type: ignore[arg-type]
            .where(GenerationJob.result_id.is_(None))  # type: ignore[union-attr]
            .values(
                status=GenerationJobStatus.FAILED,
                finished_at=now,
                last_failed_at=now,
                error_code=error_code,
                error_message=error_message,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(self._claimed_by(statement, claimed_at))
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_stale_queued(self, older_than: datetime, limit: int = 100) -> list[UUID]:
        """Retrieve ids of QUEUED jobs created before a cutoff (oldest first).

        Args:
            older_than: Only jobs created before this time are returned
            limit: Maximum number of ids to return

        Returns:
            List of job ids
        """
        result = await self.session.execute(
            select(GenerationJob.id)
            .where(GenerationJob.status == GenerationJobStatus.QUEUED)  # type: ignore[arg-type]
            .where(GenerationJob.created_at < older_than)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
