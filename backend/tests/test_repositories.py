"""Repository tests for generation jobs and the credit balance.

Every job transition is a conditional UPDATE; these tests pin down the
preconditions so that replays and races are no-ops.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from glyphforge.core.timezone import utcnow
from glyphforge.models.generation_job import GenerationJob, GenerationJobStatus
from glyphforge.models.svg_generation import SvgGeneration

TEST_SVG = '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 24 24"><path d="M0 0h24v24H0z"/></svg>'


async def create_job(uow_factory, owner_id, **overrides) -> GenerationJob:
    fields = {
        "owner_id": owner_id,
        "prompt": "A minimalist rocket ship",
        "style": "outline",
        "model": "gpt-5-mini",
        "privacy": False,
        "request_hash": "f" * 64,
    }
    fields.update(overrides)
    job = GenerationJob(**fields)
    async with await uow_factory() as uow:
        await uow.generation_jobs.add(job)
    return job


async def create_artifact(uow, owner_id) -> SvgGeneration:
    artifact = SvgGeneration(
        owner_id=owner_id,
        prompt="A minimalist rocket ship",
        svg=TEST_SVG,
        style="outline",
        model="gpt-5-mini",
    )
    await uow.svg_generations.add(artifact)
    return artifact


async def load(uow_factory, job_id) -> GenerationJob:
    async with await uow_factory() as uow:
        return await uow.generation_jobs.get_by_id(job_id)


@pytest.mark.asyncio
async def test_claim_only_from_queued(uow_factory, make_user):
    """claim moves QUEUED -> RUNNING once; a second claim is a no-op."""
    user = await make_user()
    job = await create_job(uow_factory, user.id)

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.claim(job.id) is True
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.claim(job.id) is False

    claimed = await load(uow_factory, job.id)
    assert claimed.status == GenerationJobStatus.RUNNING
    assert claimed.started_at is not None
    assert claimed.last_started_at is not None


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(uow_factory, make_user):
    """Two concurrent claims on the same QUEUED job: exactly one succeeds."""
    user = await make_user()
    job = await create_job(uow_factory, user.id)

    async def attempt() -> bool:
        async with await uow_factory() as uow:
            return await uow.generation_jobs.claim(job.id)

    results = await asyncio.gather(attempt(), attempt())
    assert sorted(results) == [False, True]


@pytest.mark.asyncio
async def test_reclaim_preserves_first_start_and_clears_errors(uow_factory, make_user):
    """started_at is kept across retries, last_started_at and errors are refreshed."""
    user = await make_user()
    job = await create_job(uow_factory, user.id)

    async with await uow_factory() as uow:
        await uow.generation_jobs.claim(job.id)
    first = await load(uow_factory, job.id)

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.mark_for_retry(
            job.id, "UpstreamRateLimited", "429 Too Many Requests", attempts_made=1
        )
    retried = await load(uow_factory, job.id)
    assert retried.status == GenerationJobStatus.QUEUED
    assert retried.error_code == "UpstreamRateLimited"
    assert retried.attempts_made == 1

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.claim(job.id)
    second = await load(uow_factory, job.id)
    assert second.started_at == first.started_at
    assert second.last_started_at >= first.last_started_at
    assert second.error_code is None
    assert second.error_message is None


@pytest.mark.asyncio
async def test_credits_charged_flips_once(uow_factory, make_user):
    user = await make_user()
    job = await create_job(uow_factory, user.id)

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.mark_credits_charged(job.id) is True
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.mark_credits_charged(job.id) is False


@pytest.mark.asyncio
async def test_debit_credit_requires_balance(uow_factory, make_user):
    """The guarded decrement never takes the balance below zero."""
    user = await make_user(credits=1)

    async with await uow_factory() as uow:
        assert await uow.users.debit_credit(user.id) is True
    async with await uow_factory() as uow:
        assert await uow.users.debit_credit(user.id) is False
        assert await uow.users.get_credits(user.id) == 0


@pytest.mark.asyncio
async def test_refund_credit_increments(uow_factory, make_user):
    user = await make_user(credits=0)
    async with await uow_factory() as uow:
        await uow.users.refund_credit(user.id)
    async with await uow_factory() as uow:
        assert await uow.users.get_credits(user.id) == 1


@pytest.mark.asyncio
async def test_claim_refund_guards(uow_factory, make_user):
    """A refund needs a charge, happens once, and never for a job with a result."""
    user = await make_user()
    uncharged = await create_job(uow_factory, user.id)
    charged = await create_job(uow_factory, user.id, credits_charged=True)

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.claim_refund(uncharged.id) is False
        assert await uow.generation_jobs.claim_refund(charged.id) is True
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.claim_refund(charged.id) is False

    with_result = await create_job(uow_factory, user.id, credits_charged=True)
    async with await uow_factory() as uow:
        await uow.generation_jobs.claim(with_result.id)
    async with await uow_factory() as uow:
        artifact = await create_artifact(uow, user.id)
        assert await uow.generation_jobs.mark_succeeded(with_result.id, artifact.id)
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.claim_refund(with_result.id) is False


@pytest.mark.asyncio
async def test_mark_succeeded_requires_running_and_no_result(uow_factory, make_user):
    user = await make_user()
    job = await create_job(uow_factory, user.id)

    async with await uow_factory() as uow:
        artifact = await create_artifact(uow, user.id)
        # Still QUEUED: not applicable
        assert await uow.generation_jobs.mark_succeeded(job.id, artifact.id) is False

    async with await uow_factory() as uow:
        await uow.generation_jobs.claim(job.id)
    async with await uow_factory() as uow:
        artifact = await create_artifact(uow, user.id)
        assert await uow.generation_jobs.mark_succeeded(job.id, artifact.id) is True
    async with await uow_factory() as uow:
        other = await create_artifact(uow, user.id)
        assert await uow.generation_jobs.mark_succeeded(job.id, other.id) is False

    done = await load(uow_factory, job.id)
    assert done.status == GenerationJobStatus.SUCCEEDED
    assert done.result_id == artifact.id
    assert done.finished_at is not None


@pytest.mark.asyncio
async def test_mark_failed_never_overwrites_success(uow_factory, make_user):
    user = await make_user()
    job = await create_job(uow_factory, user.id)
    async with await uow_factory() as uow:
        await uow.generation_jobs.claim(job.id)
    async with await uow_factory() as uow:
        artifact = await create_artifact(uow, user.id)
        await uow.generation_jobs.mark_succeeded(job.id, artifact.id)

    async with await uow_factory() as uow:
        assert (
            await uow.generation_jobs.mark_failed(job.id, "GenerationFailed", "late failure")
            is False
        )
    assert (await load(uow_factory, job.id)).status == GenerationJobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_mark_failed_is_repeatable(uow_factory, make_user):
    user = await make_user()
    job = await create_job(uow_factory, user.id)

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.mark_failed(job.id, "StorageError", "db down", 3)
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.mark_failed(job.id, "StorageError", "db down", 3)

    failed = await load(uow_factory, job.id)
    assert failed.status == GenerationJobStatus.FAILED
    assert failed.attempts_made == 3
    assert failed.finished_at is not None


@pytest.mark.asyncio
async def test_release_stalled_only_running_without_result(uow_factory, make_user):
    user = await make_user()
    job = await create_job(uow_factory, user.id)

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.release_stalled(job.id) is False
        await uow.generation_jobs.claim(job.id)
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.release_stalled(job.id) is True

    assert (await load(uow_factory, job.id)).status == GenerationJobStatus.QUEUED


@pytest.mark.asyncio
async def test_mark_insufficient_credits_requires_running(uow_factory, make_user):
    user = await make_user(credits=0)
    job = await create_job(uow_factory, user.id)

    async with await uow_factory() as uow:
        assert not await uow.generation_jobs.mark_insufficient_credits(
            job.id, "InsufficientCredits", "no credits"
        )
        await uow.generation_jobs.claim(job.id)
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.mark_insufficient_credits(
            job.id, "InsufficientCredits", "no credits"
        )

    failed = await load(uow_factory, job.id)
    assert failed.status == GenerationJobStatus.FAILED
    assert failed.error_code == "InsufficientCredits"


@pytest.mark.asyncio
async def test_get_by_idempotency_key_is_owner_scoped(uow_factory, make_user):
    owner = await make_user()
    other = await make_user()
    job = await create_job(uow_factory, owner.id, idempotency_key="k1")

    async with await uow_factory() as uow:
        found = await uow.generation_jobs.get_by_idempotency_key(owner.id, "k1")
        assert found is not None and found.id == job.id
        assert await uow.generation_jobs.get_by_idempotency_key(other.id, "k1") is None
        assert await uow.generation_jobs.get_for_owner(job.id, other.id) is None
        assert await uow.generation_jobs.get_for_owner(job.id, owner.id) is not None


@pytest.mark.asyncio
async def test_list_stale_queued(uow_factory, make_user):
    user = await make_user()
    old = await create_job(uow_factory, user.id, created_at=utcnow() - timedelta(minutes=30))
    await create_job(uow_factory, user.id)
    running = await create_job(
        uow_factory, user.id, created_at=utcnow() - timedelta(minutes=30)
    )
    async with await uow_factory() as uow:
        await uow.generation_jobs.claim(running.id)

    async with await uow_factory() as uow:
        stale = await uow.generation_jobs.list_stale_queued(utcnow() - timedelta(minutes=5))
    assert stale == [old.id]


@pytest.mark.asyncio
async def test_list_public_excludes_private(uow_factory, make_user):
    user = await make_user()
    async with await uow_factory() as uow:
        public = await create_artifact(uow, user.id)
        private = SvgGeneration(
            owner_id=user.id,
            prompt="Secret icon prompt",
            svg=TEST_SVG,
            style="flat",
            model="gpt-4",
            privacy=True,
        )
        await uow.svg_generations.add(private)

    async with await uow_factory() as uow:
        listed = await uow.svg_generations.list_public()
        assert [g.id for g in listed] == [public.id]
        assert await uow.svg_generations.count_public() == 1


@pytest.mark.asyncio
async def test_unknown_job_transitions_are_noops(uow_factory):
    job_id = uuid4()
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.get_by_id(job_id) is None
        assert await uow.generation_jobs.claim(job_id) is False
        assert await uow.generation_jobs.claim_refund(job_id) is False
