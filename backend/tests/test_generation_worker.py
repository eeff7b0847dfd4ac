"""Generation worker tests.

Covers the claim -> charge -> generate -> persist pipeline under redelivery:
- Success charges exactly once and invalidates the public cache
- Insufficient credits fail the job without retries
- Retries keep the charge; the final failure refunds it
- Duplicate and concurrent deliveries never double-charge
- Stall recovery releases the row and re-delivers (or fails) the job
- A worker whose lease was taken back cannot settle the job it lost
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from glyphforge.core.timezone import utcnow
from glyphforge.models.generation_job import GenerationJobStatus
from glyphforge.queue.durable_queue import QueueState
from glyphforge.services.intake import submit_generation_job
from glyphforge.services.ledger import charge_for_job
from glyphforge.workers.generation_worker import (
    ProcessResult,
    handle_job_failure,
    handle_lease,
    process_generation_job,
    process_next,
    recover_stalled_jobs,
    run_generation_worker,
)

PROMPT = "A minimalist rocket ship icon"
RECT_SVG = '<svg xmlns="http://www.w3.org/2000/svg"><rect width="4" height="4"/></svg>'


async def submit(uow_factory, queue, user, **fields):
    fields.setdefault("style", "outline")
    result = await submit_generation_job(uow_factory, queue, user.id, PROMPT, **fields)
    return result.job


async def load_job(uow_factory, job_id):
    async with await uow_factory() as uow:
        return await uow.generation_jobs.get_by_id(job_id)


async def credits_of(uow_factory, user_id):
    async with await uow_factory() as uow:
        return await uow.users.get_credits(user_id)


def failing_generate(message: str, times: int = 10**6):
    """Generation stand-in that raises `times` times, then returns a valid SVG."""
    calls = []

    async def _generate(**kwargs):
        calls.append(kwargs)
        if len(calls) <= times:
            raise Exception(message)
        return RECT_SVG

    _generate.calls = calls
    return _generate


def gated_generate(error: str | None = None):
    """Generation stand-in that blocks until released, then raises `error` or returns an SVG."""
    entered = asyncio.Event()
    release = asyncio.Event()

    async def _generate(**kwargs):
        entered.set()
        await release.wait()
        if error is not None:
            raise Exception(error)
        return RECT_SVG

    _generate.entered = entered
    _generate.release = release
    return _generate


@pytest.mark.asyncio
async def test_success_charges_once_and_persists_artifact(
    uow_factory, queue, cache, settings, make_user, fake_generate, redis_client
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)
    first_page = cache.public_first_page_key(settings.public_page_size)
    await cache.set_json(first_page, {"stale": True})

    assert await process_next(queue, uow_factory, cache, settings, generate=fake_generate)

    done = await load_job(uow_factory, job.id)
    assert done.status == GenerationJobStatus.SUCCEEDED
    assert done.credits_charged is True
    assert done.credits_refunded is False
    assert done.result_id is not None
    assert done.finished_at is not None
    assert await credits_of(uow_factory, user.id) == 4

    async with await uow_factory() as uow:
        artifact = await uow.svg_generations.get_by_id(done.result_id)
    assert "<circle" in artifact.svg
    assert artifact.owner_id == user.id
    assert artifact.credits_used == 1

    assert fake_generate.calls == [
        {
            "prompt": PROMPT,
            "style": "outline",
            "model": "gpt-5-mini",
            "api_token": "r8_test_token",
            "model_owner": "openai",
        }
    ]
    assert await redis_client.exists(f"test:{first_page}") == 0
    assert await queue.get_state(str(job.id)) == QueueState.COMPLETED


@pytest.mark.asyncio
async def test_insufficient_credits_fails_without_retry(
    uow_factory, queue, cache, settings, make_user, fake_generate, clock
):
    user = await make_user(credits=0)
    job = await submit(uow_factory, queue, user)

    await process_next(queue, uow_factory, cache, settings, generate=fake_generate)

    failed = await load_job(uow_factory, job.id)
    assert failed.status == GenerationJobStatus.FAILED
    assert failed.error_code == "InsufficientCredits"
    assert "enough credits" in failed.error_message
    assert failed.credits_charged is False
    assert fake_generate.calls == []
    assert await credits_of(uow_factory, user.id) == 0
    assert await queue.get_state(str(job.id)) == QueueState.FAILED

    clock.advance(3600)
    assert await process_next(queue, uow_factory, cache, settings, generate=fake_generate) is False


@pytest.mark.asyncio
async def test_retries_keep_charge_and_final_failure_refunds(
    uow_factory, queue, cache, settings, make_user, clock
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)
    generate = failing_generate("Replicate API error (status 429): rate limited")

    await process_next(queue, uow_factory, cache, settings, generate=generate)
    retrying = await load_job(uow_factory, job.id)
    assert retrying.status == GenerationJobStatus.QUEUED
    assert retrying.error_code == "UpstreamRateLimited"
    assert retrying.attempts_made == 1
    assert await credits_of(uow_factory, user.id) == 4
    assert await queue.get_state(str(job.id)) == QueueState.DELAYED

    clock.advance(5)
    await process_next(queue, uow_factory, cache, settings, generate=generate)
    assert (await load_job(uow_factory, job.id)).attempts_made == 2
    assert await credits_of(uow_factory, user.id) == 4

    clock.advance(10)
    await process_next(queue, uow_factory, cache, settings, generate=generate)

    failed = await load_job(uow_factory, job.id)
    assert failed.status == GenerationJobStatus.FAILED
    assert failed.error_code == "UpstreamRateLimited"
    assert failed.attempts_made == 3
    assert failed.credits_refunded is True
    assert failed.result_id is None
    assert await credits_of(uow_factory, user.id) == 5
    assert len(generate.calls) == 3
    assert await queue.get_state(str(job.id)) == QueueState.FAILED


@pytest.mark.asyncio
async def test_retry_after_charge_does_not_charge_again(
    uow_factory, queue, cache, settings, make_user, clock
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)
    generate = failing_generate("Connection error: reset by peer", times=1)

    await process_next(queue, uow_factory, cache, settings, generate=generate)
    clock.advance(5)
    await process_next(queue, uow_factory, cache, settings, generate=generate)

    done = await load_job(uow_factory, job.id)
    assert done.status == GenerationJobStatus.SUCCEEDED
    assert done.error_code is None
    assert await credits_of(uow_factory, user.id) == 4


@pytest.mark.asyncio
async def test_duplicate_delivery_after_success_is_noop(
    uow_factory, queue, cache, settings, make_user, fake_generate
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)
    await process_next(queue, uow_factory, cache, settings, generate=fake_generate)

    result = await process_generation_job(
        job.id, uow_factory, cache, settings, generate=fake_generate
    )

    assert result is ProcessResult.ALREADY_DONE
    assert len(fake_generate.calls) == 1
    assert await credits_of(uow_factory, user.id) == 4


@pytest.mark.asyncio
async def test_concurrent_deliveries_charge_once(
    uow_factory, queue, cache, settings, make_user, fake_generate
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    results = await asyncio.gather(
        process_generation_job(job.id, uow_factory, cache, settings, generate=fake_generate),
        process_generation_job(job.id, uow_factory, cache, settings, generate=fake_generate),
    )

    assert results.count(ProcessResult.SUCCEEDED) == 1
    assert len(fake_generate.calls) == 1
    assert await credits_of(uow_factory, user.id) == 4


@pytest.mark.asyncio
async def test_failed_job_is_not_resurrected(
    uow_factory, queue, cache, settings, make_user, fake_generate
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)
    async with await uow_factory() as uow:
        await uow.generation_jobs.mark_failed(job.id, "GenerationFailed", "gave up", 3)

    result = await process_generation_job(
        job.id, uow_factory, cache, settings, generate=fake_generate
    )

    assert result is ProcessResult.ALREADY_DONE
    assert fake_generate.calls == []
    assert (await load_job(uow_factory, job.id)).status == GenerationJobStatus.FAILED


@pytest.mark.asyncio
async def test_late_success_is_discarded(uow_factory, queue, cache, settings, make_user):
    """A job failed while its generation was in flight keeps no artifact."""
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    async def generate_then_lose_job(**kwargs):
        async with await uow_factory() as uow:
            await uow.generation_jobs.mark_failed(job.id, "GenerationFailed", "timed out", 3)
        return '<svg xmlns="http://www.w3.org/2000/svg"><rect width="4" height="4"/></svg>'

    result = await process_generation_job(
        job.id, uow_factory, cache, settings, generate=generate_then_lose_job
    )

    assert result is ProcessResult.ALREADY_DONE
    assert (await load_job(uow_factory, job.id)).status == GenerationJobStatus.FAILED
    async with await uow_factory() as uow:
        assert await uow.svg_generations.count_public() == 0


@pytest.mark.asyncio
async def test_empty_sanitized_output_is_a_failed_attempt(
    uow_factory, queue, cache, settings, make_user, fake_generate
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    await process_next(
        queue, uow_factory, cache, settings, generate=fake_generate, sanitize=lambda svg: "  "
    )

    retrying = await load_job(uow_factory, job.id)
    assert retrying.status == GenerationJobStatus.QUEUED
    assert retrying.error_code == "GenerationFailed"
    assert retrying.error_message == "Sanitized SVG is empty"


@pytest.mark.asyncio
async def test_cache_failure_does_not_fail_job(
    uow_factory, queue, broken_cache, settings, make_user, fake_generate
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    assert await process_next(queue, uow_factory, broken_cache, settings, generate=fake_generate)

    assert (await load_job(uow_factory, job.id)).status == GenerationJobStatus.SUCCEEDED
    assert await queue.get_state(str(job.id)) == QueueState.COMPLETED


@pytest.mark.asyncio
async def test_private_job_leaves_public_cache_alone(
    uow_factory, queue, cache, settings, make_user, fake_generate, redis_client
):
    user = await make_user(credits=5)
    await submit(uow_factory, queue, user, privacy=True)
    first_page = cache.public_first_page_key(settings.public_page_size)
    await cache.set_json(first_page, {"cached": True})

    await process_next(queue, uow_factory, cache, settings, generate=fake_generate)

    assert await redis_client.exists(f"test:{first_page}") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("job_id", [lambda: str(uuid4()), lambda: "not-a-uuid"])
async def test_unknown_job_fails_without_retry(
    uow_factory, queue, cache, settings, fake_generate, job_id
):
    raw_id = job_id()
    await queue.enqueue(raw_id)

    await process_next(queue, uow_factory, cache, settings, generate=fake_generate)

    assert await queue.get_state(raw_id) == QueueState.FAILED
    assert fake_generate.calls == []


@pytest.mark.asyncio
async def test_stalled_job_is_released_and_redelivered(
    uow_factory, queue, cache, settings, make_user, fake_generate, clock
):
    """A worker that died after claim and charge: the job completes once, charged once."""
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    await queue.reserve()
    async with await uow_factory() as uow:
        await uow.generation_jobs.claim(job.id)
    async with await uow_factory() as uow:
        await charge_for_job(uow, job.id, user.id)

    clock.advance(61)
    stalled = await recover_stalled_jobs(queue, uow_factory)

    assert [s.failed for s in stalled] == [False]
    assert (await load_job(uow_factory, job.id)).status == GenerationJobStatus.QUEUED

    await process_next(queue, uow_factory, cache, settings, generate=fake_generate)

    done = await load_job(uow_factory, job.id)
    assert done.status == GenerationJobStatus.SUCCEEDED
    assert await credits_of(uow_factory, user.id) == 4


@pytest.mark.asyncio
async def test_repeatedly_stalled_job_is_failed_and_refunded(
    uow_factory, queue, make_user, clock
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    for _ in range(2):
        await queue.reserve()
        async with await uow_factory() as uow:
            await uow.generation_jobs.claim(job.id)
        async with await uow_factory() as uow:
            await charge_for_job(uow, job.id, user.id)
        clock.advance(61)
        stalled = await recover_stalled_jobs(queue, uow_factory)

    assert [s.failed for s in stalled] == [True]
    failed = await load_job(uow_factory, job.id)
    assert failed.status == GenerationJobStatus.FAILED
    assert failed.error_message == "job stalled more than allowable limit"
    assert failed.credits_refunded is True
    assert await credits_of(uow_factory, user.id) == 5
    assert await queue.get_state(str(job.id)) == QueueState.FAILED


@pytest.mark.asyncio
async def test_stalled_job_is_refunded_once_database_recovers(
    uow_factory, queue, make_user, clock
):
    """The queue entry is only failed after the row has been refunded and failed."""
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    async def unavailable_uow_factory():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    for attempt in range(2):
        await queue.reserve()
        async with await uow_factory() as uow:
            await uow.generation_jobs.claim(job.id)
        async with await uow_factory() as uow:
            await charge_for_job(uow, job.id, user.id)
        clock.advance(61)
        if attempt == 0:
            await recover_stalled_jobs(queue, uow_factory)

    assert await recover_stalled_jobs(queue, unavailable_uow_factory) == []
    stuck = await load_job(uow_factory, job.id)
    assert stuck.status == GenerationJobStatus.RUNNING
    assert stuck.credits_refunded is False
    assert await queue.get_state(str(job.id)) == QueueState.ACTIVE

    stalled = await recover_stalled_jobs(queue, uow_factory)

    assert [s.failed for s in stalled] == [True]
    failed = await load_job(uow_factory, job.id)
    assert failed.status == GenerationJobStatus.FAILED
    assert failed.credits_refunded is True
    assert await credits_of(uow_factory, user.id) == 5
    assert await queue.get_state(str(job.id)) == QueueState.FAILED


@pytest.mark.asyncio
async def test_stale_worker_cannot_settle_redelivered_job(
    uow_factory, queue, cache, settings, make_user, clock
):
    """Worker 1 hangs past its lease, the job is re-delivered to worker 2, then worker 1
    fails. Worker 2's result must stand."""
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)
    stale_generate = gated_generate(error="Replicate prediction timed out")
    live_generate = gated_generate()

    stale_lease = await queue.reserve()
    stale = asyncio.create_task(
        handle_lease(queue, stale_lease, uow_factory, cache, settings, generate=stale_generate)
    )
    await asyncio.wait_for(stale_generate.entered.wait(), timeout=5)

    clock.advance(120)
    stalled = await recover_stalled_jobs(queue, uow_factory)
    assert [s.failed for s in stalled] == [False]

    live_lease = await queue.reserve()
    live = asyncio.create_task(
        handle_lease(queue, live_lease, uow_factory, cache, settings, generate=live_generate)
    )
    await asyncio.wait_for(live_generate.entered.wait(), timeout=5)

    stale_generate.release.set()
    assert await stale is None
    running = await load_job(uow_factory, job.id)
    assert running.status == GenerationJobStatus.RUNNING
    assert running.attempts_made == 0

    live_generate.release.set()
    assert await live is ProcessResult.SUCCEEDED

    done = await load_job(uow_factory, job.id)
    assert done.status == GenerationJobStatus.SUCCEEDED
    assert done.result_id is not None
    assert done.credits_refunded is False
    assert await credits_of(uow_factory, user.id) == 4
    assert await queue.get_state(str(job.id)) == QueueState.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("final", [False, True])
async def test_failure_of_superseded_claim_leaves_row_alone(
    uow_factory, queue, make_user, final
):
    user = await make_user(credits=5)
    job = await submit(uow_factory, queue, user)

    first_claim = utcnow() - timedelta(minutes=5)
    async with await uow_factory() as uow:
        await uow.generation_jobs.claim(job.id, claimed_at=first_claim)
    async with await uow_factory() as uow:
        await charge_for_job(uow, job.id, user.id)
    async with await uow_factory() as uow:
        await uow.generation_jobs.release_stalled(job.id)
    async with await uow_factory() as uow:
        assert await uow.generation_jobs.claim(job.id)

    await handle_job_failure(
        uow_factory, job.id, Exception("boom"), 1, final=final, claimed_at=first_claim
    )

    current = await load_job(uow_factory, job.id)
    assert current.status == GenerationJobStatus.RUNNING
    assert current.attempts_made == 0
    assert current.error_message is None
    assert current.credits_refunded is False
    assert await credits_of(uow_factory, user.id) == 4


@pytest.mark.asyncio
async def test_worker_loop_processes_jobs_until_cancelled(
    uow_factory, queue, cache, settings, make_user, fake_generate
):
    user = await make_user(credits=5)
    jobs = [await submit(uow_factory, queue, user) for _ in range(3)]

    worker = asyncio.create_task(
        run_generation_worker(queue, uow_factory, cache, settings, generate=fake_generate)
    )

    async def all_done() -> None:
        while True:
            statuses = [(await load_job(uow_factory, j.id)).status for j in jobs]
            if all(s == GenerationJobStatus.SUCCEEDED for s in statuses):
                return
            await asyncio.sleep(0.05)

    try:
        await asyncio.wait_for(all_done(), timeout=10)
    finally:
        worker.cancel()
        with pytest.raises(asyncio.CancelledError):
            await worker

    assert await credits_of(uow_factory, user.id) == 2
    assert len(fake_generate.calls) == 3
