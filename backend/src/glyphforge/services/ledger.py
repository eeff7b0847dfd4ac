"""Credit ledger: charge a job once, refund it at most once.

Both operations run inside the caller's UnitOfWork so the balance change and the
job's ledger flag commit together or not at all.
"""

from enum import Enum
from uuid import UUID

import structlog

from glyphforge.uow import UnitOfWork

logger = structlog.get_logger(__name__)

GENERATION_COST = 1


class ChargeOutcome(str, Enum):
    """Result of charging a job."""

    CHARGED = "charged"
    ALREADY_CHARGED = "already_charged"
    INSUFFICIENT_CREDITS = "insufficient_credits"


async def charge_for_job(
    uow: UnitOfWork, job_id: UUID, owner_id: UUID, amount: int = GENERATION_COST
) -> ChargeOutcome:
    """Debit the owner and flag the job as charged.

    The job flag is flipped first so that it guards the debit: a redelivered
    job that was already charged never reaches the balance. When the owner
    has no credits, the flag change is rolled back.

    Args:
        uow: Active unit of work (commits both writes on exit)
        job_id: Job being charged
        owner_id: Owner whose balance is debited
        amount: Credits to debit

    Returns:
        ChargeOutcome
    """
    if not await uow.generation_jobs.mark_credits_charged(job_id):
        logger.info("ledger.already_charged", job_id=str(job_id))
        return ChargeOutcome.ALREADY_CHARGED

    if not await uow.users.debit_credit(owner_id, amount):
        await uow.rollback()
        logger.info("ledger.insufficient_credits", job_id=str(job_id), owner_id=str(owner_id))
        return ChargeOutcome.INSUFFICIENT_CREDITS

    logger.info("ledger.charged", job_id=str(job_id), owner_id=str(owner_id), amount=amount)
    return ChargeOutcome.CHARGED


async def refund_for_job(
    uow: UnitOfWork, job_id: UUID, owner_id: UUID, amount: int = GENERATION_COST
) -> bool:
    """Refund a charged job that produced no result.

    Returns:
        True if this call refunded the job, False if it was never charged,
        was already refunded or has a result
    """
    if not await uow.generation_jobs.claim_refund(job_id):
        logger.debug("ledger.refund_skipped", job_id=str(job_id))
        return False

    await uow.users.refund_credit(owner_id, amount)
    logger.info("ledger.refunded", job_id=str(job_id), owner_id=str(owner_id), amount=amount)
    return True
