"""Redis-backed work queue for generation jobs.

The queue is a transport only: an entry carries nothing but the job id, and all
authoritative state lives in the job table. Entries can therefore be rebuilt from
the table at any time (see requeue), so the queue tolerates weaker durability.

Redis layout (prefix "queue:<name>"):

    <prefix>:job:<id>   hash   state, attempts_made, max_attempts, stalled_count, lock_token,
                               enqueued_at, started_at, finished_at, failed_reason
    <prefix>:wait       list   job ids ready to run (LPUSH in, RIGHT side out)
    <prefix>:active     list   job ids currently leased to a worker
    <prefix>:leases     zset   job id -> lease deadline (unix seconds)
    <prefix>:delayed    zset   job id -> time the retry becomes due
    <prefix>:completed  zset   job id -> finish time (retention index)
    <prefix>:failed     zset   job id -> finish time (retention index)

Multi-key transitions run in MULTI/EXEC blocks guarded by WATCH, so an entry is
never in two places at once. Each reservation gets a fresh lock token; a lease
is only extended or settled while its token is the one stored on the entry, so
a worker whose job was taken back by stall recovery cannot settle a later delivery.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable
from uuid import uuid4

import redis.asyncio as redis
import structlog
from redis.exceptions import WatchError

logger = structlog.get_logger(__name__)

STALLED_REASON = "job stalled more than allowable limit"


class QueueState(str, Enum):
    """State of a queue entry (not of the job row)."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobOptions:
    """Retry, backoff, retention and lease configuration for a queue."""

    attempts: int = 3
    backoff_seconds: float = 5.0
    keep_completed_seconds: int = 60 * 60
    keep_completed_count: int = 1000
    keep_failed_seconds: int = 24 * 60 * 60
    lock_seconds: float = 60.0
    max_stalled_count: int = 1

    def backoff_for(self, attempts_made: int) -> float:
        """Exponential backoff: backoff_seconds * 2^(attempts_made - 1)."""
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))


@dataclass(frozen=True)
class Lease:
    """A job handed to one worker until it completes, fails or the lease expires."""

    job_id: str
    attempts_made: int
    max_attempts: int
    stalled_count: int = 0
    token: str = ""

    @property
    def attempt_number(self) -> int:
        return self.attempts_made + 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt_number >= self.max_attempts


@dataclass(frozen=True)
class FailureOutcome:
    """Result of DurableQueue.fail."""

    job_id: str
    attempts_made: int
    final: bool
    retry_in_seconds: float | None = None
    lease_lost: bool = False


@dataclass(frozen=True)
class StalledJob:
    """A lease that expired without being settled, as handled by recover_stalled."""

    job_id: str
    stalled_count: int
    attempts_made: int
    failed: bool


class DurableQueue:
    """FIFO work queue with idempotent enqueue, retry backoff and bounded retention.

    Example:
        queue = DurableQueue(redis_client, "svg-generation", JobOptions(attempts=3))
        await queue.enqueue(str(job.id))

        lease = await queue.reserve(timeout=5)
        if lease:
            try:
                ...
                await queue.complete(lease)
            except Exception as e:
                outcome = await queue.fail(lease, str(e))
    """

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        options: JobOptions | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize queue.

        Args:
            client: asyncio Redis client created with decode_responses=True
            name: Queue name (namespaces all keys)
            options: Retry/backoff/retention configuration
            clock: Time source in unix seconds (injectable for tests)
        """
        self.client = client
        self.name = name
        self.options = options or JobOptions()
        self.clock = clock

        prefix = f"queue:{name}"
        self._prefix = prefix
        self.wait_key = f"{prefix}:wait"
        self.active_key = f"{prefix}:active"
        self.leases_key = f"{prefix}:leases"
        self.delayed_key = f"{prefix}:delayed"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"

    def job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _new_entry(self, now: float) -> dict:
        return {
            "state": QueueState.WAITING.value,
            "attempts_made": 0,
            "max_attempts": self.options.attempts,
            "stalled_count": 0,
            "enqueued_at": now,
        }

    async def enqueue(self, job_id: str) -> bool:
        """Add a job to the queue, keyed by its id.

        A second enqueue of an id that is still known to the queue is a no-op,
        not an error: it is indistinguishable from a benign race between submitters.

        Args:
            job_id: Job id (used as the de-duplication key)

        Returns:
            True if the entry was created, False if it already existed

        Raises:
            RedisError: If Redis is unreachable
        """
        job_key = self.job_key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    if await pipe.exists(job_key):
                        await pipe.reset()
                        logger.debug("queue.enqueue_duplicate", queue=self.name, job_id=job_id)
                        return False

                    pipe.multi()
                    pipe.hset(job_key, mapping=self._new_entry(self.clock()))
                    pipe.lpush(self.wait_key, job_id)
                    await pipe.execute()
                    logger.debug("queue.enqueued", queue=self.name, job_id=job_id)
                    return True
                except WatchError:
                    # Another submitter touched the entry; re-check
                    continue

    async def requeue(self, job_id: str) -> bool:
        """Rebuild the queue entry of a job whose row is still QUEUED.

        Used by the re-enqueue sweep. Entries that are waiting, delayed or active
        are left alone; missing entries and entries the queue already settled
        (completed/failed) are replaced by a fresh waiting entry.

        Returns:
            True if a fresh entry was pushed
        """
        job_key = self.job_key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    state = await pipe.hget(job_key, "state")
                    if state in (
                        QueueState.WAITING.value,
                        QueueState.DELAYED.value,
                        QueueState.ACTIVE.value,
                    ):
                        await pipe.reset()
                        return False

                    pipe.multi()
                    pipe.delete(job_key)
                    pipe.zrem(self.completed_key, job_id)
                    pipe.zrem(self.failed_key, job_id)
                    pipe.hset(job_key, mapping=self._new_entry(self.clock()))
                    pipe.lpush(self.wait_key, job_id)
                    await pipe.execute()
                    logger.info(
                        "queue.requeued", queue=self.name, job_id=job_id, previous_state=state
                    )
                    return True
                except WatchError:
                    continue

    async def promote_delayed(self, limit: int = 100) -> int:
        """Move retries whose backoff has elapsed from delayed to wait.

        Returns:
            Number of entries promoted
        """
        now = self.clock()
        due = await self.client.zrangebyscore(self.delayed_key, "-inf", now, start=0, num=limit)
        promoted = 0
        for job_id in due:
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self.delayed_key)
                    score = await pipe.zscore(self.delayed_key, job_id)
                    if score is None or score > now:
                        await pipe.reset()
                        continue
                    pipe.multi()
                    pipe.zrem(self.delayed_key, job_id)
                    pipe.hset(self.job_key(job_id), "state", QueueState.WAITING.value)
                    pipe.lpush(self.wait_key, job_id)
                    await pipe.execute()
                    promoted += 1
                except WatchError:
                    # Someone else promoted or rescheduled it
                    continue
        return promoted

    async def reserve(self, timeout: float = 0) -> Lease | None:
        """Take the oldest waiting job and lease it to the caller.

        Args:
            timeout: Seconds to block waiting for a job (0 = do not block)

        Returns:
            Lease, or None if no job became available
        """
        await self.promote_delayed()

        while True:
            if timeout > 0:
                job_id = await self.client.blmove(
                    self.wait_key, self.active_key, timeout, "RIGHT", "LEFT"
                )
            else:
                job_id = await self.client.lmove(self.wait_key, self.active_key, "RIGHT", "LEFT")
            if job_id is None:
                return None

            now = self.clock()
            token = uuid4().hex
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zadd(self.leases_key, {job_id: now + self.options.lock_seconds})
                pipe.hset(
                    self.job_key(job_id),
                    mapping={
                        "state": QueueState.ACTIVE.value,
                        "started_at": now,
                        "lock_token": token,
                    },
                )
                pipe.hgetall(self.job_key(job_id))
                _, _, fields = await pipe.execute()

            if "max_attempts" not in fields:
                # Entry data expired or was removed; drop the orphaned id
                logger.warning("queue.orphaned_entry_dropped", queue=self.name, job_id=job_id)
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.lrem(self.active_key, 1, job_id)
                    pipe.zrem(self.leases_key, job_id)
                    pipe.delete(self.job_key(job_id))
                    await pipe.execute()
                continue

            return Lease(
                job_id=job_id,
                attempts_made=int(fields.get("attempts_made", 0)),
                max_attempts=int(fields["max_attempts"]),
                stalled_count=int(fields.get("stalled_count", 0)),
                token=token,
            )

    async def _holds(self, client, lease: Lease) -> bool:
        if await client.lpos(self.active_key, lease.job_id) is None:
            return False
        return await client.hget(self.job_key(lease.job_id), "lock_token") == lease.token

    async def owns(self, lease: Lease) -> bool:
        """Return True while the lease is still the current delivery of its job."""
        return await self._holds(self.client, lease)

    async def extend(self, lease: Lease) -> bool:
        """Push the lease deadline forward while the job is still running.

        Returns:
            False if the lease was lost (stall recovery already took the job back)
        """
        job_key = self.job_key(lease.job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.active_key, job_key)
                    if not await self._holds(pipe, lease):
                        await pipe.reset()
                        return False

                    pipe.multi()
                    pipe.zadd(
                        self.leases_key,
                        {lease.job_id: self.clock() + self.options.lock_seconds},
                    )
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def complete(self, lease: Lease) -> bool:
        """Settle a lease as completed and apply completed-entry retention.

        Returns:
            False if the lease was lost before it could be settled
        """
        job_id = lease.job_id
        job_key = self.job_key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.active_key, job_key)
                    if not await self._holds(pipe, lease):
                        await pipe.reset()
                        logger.warning("queue.lease_lost", queue=self.name, job_id=job_id)
                        return False

                    now = self.clock()
                    keep_seconds = self.options.keep_completed_seconds
                    pipe.multi()
                    pipe.lrem(self.active_key, 1, job_id)
                    pipe.zrem(self.leases_key, job_id)
                    pipe.hdel(job_key, "lock_token")
                    pipe.hset(
                        job_key,
                        mapping={"state": QueueState.COMPLETED.value, "finished_at": now},
                    )
                    pipe.expire(job_key, keep_seconds)
                    pipe.zadd(self.completed_key, {job_id: now})
                    pipe.zremrangebyscore(self.completed_key, "-inf", now - keep_seconds)
                    pipe.zremrangebyrank(
                        self.completed_key, 0, -(self.options.keep_completed_count + 1)
                    )
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def fail(self, lease: Lease, reason: str, unrecoverable: bool = False) -> FailureOutcome:
        """Settle a lease as failed.

        Counts the attempt, then either schedules a retry with exponential
        backoff or, when the attempt budget is spent (or the failure is
        unrecoverable), moves the entry to failed with long retention.

        Args:
            lease: Lease returned by reserve
            reason: Failure description kept on the entry
            unrecoverable: Skip remaining retries

        Returns:
            FailureOutcome describing whether this failure was final
        """
        job_id = lease.job_id
        job_key = self.job_key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.active_key, job_key)
                    if not await self._holds(pipe, lease):
                        await pipe.reset()
                        logger.warning("queue.lease_lost", queue=self.name, job_id=job_id)
                        return FailureOutcome(
                            job_id=job_id,
                            attempts_made=lease.attempts_made,
                            final=False,
                            lease_lost=True,
                        )

                    attempts_made = int(await pipe.hget(job_key, "attempts_made") or 0) + 1
                    max_attempts = int(
                        await pipe.hget(job_key, "max_attempts") or self.options.attempts
                    )
                    final = unrecoverable or attempts_made >= max_attempts
                    now = self.clock()

                    pipe.multi()
                    pipe.lrem(self.active_key, 1, job_id)
                    pipe.zrem(self.leases_key, job_id)
                    pipe.hdel(job_key, "lock_token")
                    pipe.hset(
                        job_key,
                        mapping={"attempts_made": attempts_made, "failed_reason": reason[:500]},
                    )
                    retry_in = None
                    if final:
                        self._queue_move_to_failed(pipe, job_id, now)
                    else:
                        retry_in = self.options.backoff_for(attempts_made)
                        pipe.hset(job_key, "state", QueueState.DELAYED.value)
                        pipe.zadd(self.delayed_key, {job_id: now + retry_in})
                    await pipe.execute()

                    return FailureOutcome(
                        job_id=job_id,
                        attempts_made=attempts_made,
                        final=final,
                        retry_in_seconds=retry_in,
                    )
                except WatchError:
                    continue

    def _queue_move_to_failed(self, pipe, job_id: str, now: float) -> None:
        # Caller has already called pipe.multi()
        job_key = self.job_key(job_id)
        keep_seconds = self.options.keep_failed_seconds
        pipe.hset(job_key, mapping={"state": QueueState.FAILED.value, "finished_at": now})
        pipe.expire(job_key, keep_seconds)
        pipe.zadd(self.failed_key, {job_id: now})
        pipe.zremrangebyscore(self.failed_key, "-inf", now - keep_seconds)

    async def recover_stalled(
        self,
        on_stalled: Callable[[StalledJob], Awaitable[object]] | None = None,
    ) -> list[StalledJob]:
        """Take back active jobs whose lease expired (the worker crashed or hung).

        A stalled job is re-delivered until it has stalled more than
        max_stalled_count times, after which it is moved to failed. on_stalled
        runs before the entry is re-delivered or failed, so the job row can be
        released or settled first; if it raises, the entry keeps its expired
        lease and is handled again on the next check. A recovered entry loses
        its lock token, so the worker that held it can no longer settle it.

        Returns:
            Jobs recovered by this call (re-delivered or failed)
        """
        active_ids = await self.client.lrange(self.active_key, 0, -1)
        recovered: list[StalledJob] = []

        for job_id in active_ids:
            now = self.clock()
            deadline = await self.client.zscore(self.leases_key, job_id)
            if deadline is None:
                # Reserved but lease not written yet (or writer crashed): grant a grace period
                await self.client.zadd(
                    self.leases_key, {job_id: now + self.options.lock_seconds}, nx=True
                )
                continue
            if deadline > now:
                continue

            job_key = self.job_key(job_id)
            fields = await self.client.hgetall(job_key)
            stalled_count = int(fields.get("stalled_count", 0)) + 1
            attempts_made = int(fields.get("attempts_made", 0))
            will_fail = stalled_count > self.options.max_stalled_count
            stalled = StalledJob(
                job_id=job_id,
                stalled_count=stalled_count,
                attempts_made=attempts_made,
                failed=will_fail,
            )

            if on_stalled is not None:
                try:
                    await on_stalled(stalled)
                except Exception as e:
                    logger.error(
                        "queue.stalled_hook_failed",
                        queue=self.name,
                        job_id=job_id,
                        failed=will_fail,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue

            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self.active_key, self.leases_key, job_key)
                    current = await pipe.zscore(self.leases_key, job_id)
                    if (
                        await pipe.lpos(self.active_key, job_id) is None
                        or current is None
                        or current > now
                    ):
                        await pipe.reset()
                        continue

                    pipe.multi()
                    pipe.lrem(self.active_key, 1, job_id)
                    pipe.zrem(self.leases_key, job_id)
                    pipe.hdel(job_key, "lock_token")
                    pipe.hset(job_key, "stalled_count", stalled_count)
                    if will_fail:
                        pipe.hset(job_key, "failed_reason", STALLED_REASON)
                        self._queue_move_to_failed(pipe, job_id, now)
                    else:
                        pipe.hset(job_key, "state", QueueState.WAITING.value)
                        pipe.lpush(self.wait_key, job_id)
                    await pipe.execute()
                except WatchError:
                    continue

            logger.warning(
                "queue.stalled_job_recovered",
                queue=self.name,
                job_id=job_id,
                stalled_count=stalled_count,
                failed=will_fail,
            )
            recovered.append(stalled)

        return recovered

    async def get_state(self, job_id: str) -> QueueState | None:
        """Return the entry's queue state, or None if the queue no longer knows it."""
        state = await self.client.hget(self.job_key(job_id), "state")
        return QueueState(state) if state else None

    async def counts(self) -> dict[str, int]:
        """Return the number of entries per queue state."""
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self.wait_key)
            pipe.llen(self.active_key)
            pipe.zcard(self.delayed_key)
            pipe.zcard(self.completed_key)
            pipe.zcard(self.failed_key)
            waiting, active, delayed, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
        }
