"""Service error hierarchy for the generation pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (conflicts, missing rows, bad input)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Queue transport unavailable
    - Cache unavailable
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Idempotency key reused with different parameters
    - Job row deleted out from under the worker
    - Invalid request parameters
    """

    pass


# Intake errors
class RequestValidationError(PermanentError):
    """Request parameters failed validation (prompt, style, model, idempotency key)."""

    pass


class OwnerNotFoundError(PermanentError):
    """The submitting owner does not exist."""

    pass


class IdempotencyConflictError(PermanentError):
    """Idempotency key already used by the same owner with different parameters."""

    def __init__(self, job_id, message: str | None = None):
        self.job_id = job_id
        super().__init__(
            message or "Idempotency key already used with different request parameters"
        )


class EnqueueError(TransientError):
    """The job row exists but could not be handed to the work queue."""

    def __init__(self, job_id, message: str | None = None):
        self.job_id = job_id
        super().__init__(message or f"Failed to enqueue generation job {job_id}")


# Worker errors
class JobNotFoundError(PermanentError):
    """The queued job id has no row in the job store."""

    pass


class CacheUnavailableError(TransientError):
    """The results cache could not be reached."""

    pass


class JobStalledError(TransientError):
    """The job's queue lease expired too many times without being settled."""

    pass
