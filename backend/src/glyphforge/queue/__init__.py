"""Redis-backed work queue."""

from glyphforge.queue.durable_queue import (
    DurableQueue,
    FailureOutcome,
    JobOptions,
    Lease,
    QueueState,
    StalledJob,
)

__all__ = [
    "DurableQueue",
    "FailureOutcome",
    "JobOptions",
    "Lease",
    "QueueState",
    "StalledJob",
]
