"""Error classification for generation failures.

The upstream generation call does not expose a typed error taxonomy, so failures
are mapped to a closed set of stable codes by exception type first and then by
matching the message against an ordered pattern table. The resulting code drives
the retry decision and is the only error detail persisted on the job row.
"""

import re
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from glyphforge.services.exceptions import (
    CacheUnavailableError,
    JobNotFoundError,
    RequestValidationError,
)

MAX_ERROR_MESSAGE_LENGTH = 500

INSUFFICIENT_CREDITS_MESSAGE = (
    "You do not have enough credits to generate an SVG. "
    "Please purchase more credits and try again."
)


class ErrorCode(str, Enum):
    """Stable error codes stored on failed generation jobs."""

    INSUFFICIENT_CREDITS = "InsufficientCredits"
    UPSTREAM_RATE_LIMITED = "UpstreamRateLimited"
    UPSTREAM_MODEL_UNAVAILABLE = "UpstreamModelUnavailable"
    UPSTREAM_PERMISSION_DENIED = "UpstreamPermissionDenied"
    CACHE_UNAVAILABLE = "CacheUnavailable"
    VALIDATION_ERROR = "ValidationError"
    STORAGE_ERROR = "StorageError"
    GENERATION_FAILED = "GenerationFailed"

    @property
    def retryable(self) -> bool:
        """Whether the queue may schedule another attempt for this code."""
        return self is not ErrorCode.INSUFFICIENT_CREDITS


@dataclass(frozen=True)
class ClassifiedError:
    """Result of classify_error: a stable code plus a bounded message."""

    code: ErrorCode
    message: str

    @property
    def retryable(self) -> bool:
        return self.code.retryable


# Checked in order; the first matching type wins.
_TYPE_RULES: tuple[tuple[type[BaseException] | tuple[type[BaseException], ...], ErrorCode], ...] = (
    ((RedisError, CacheUnavailableError), ErrorCode.CACHE_UNAVAILABLE),
    ((JobNotFoundError, SQLAlchemyError), ErrorCode.STORAGE_ERROR),
    ((RequestValidationError, PydanticValidationError), ErrorCode.VALIDATION_ERROR),
)


def _any(*patterns: str) -> re.Pattern[str]:
    return re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)


# Checked in order against the error message; the first match wins.
ERROR_PATTERNS: tuple[tuple[re.Pattern[str], ErrorCode], ...] = (
    (_any(r"INSUFFICIENT_CREDITS", r"insufficient credits"), ErrorCode.INSUFFICIENT_CREDITS),
    (_any(r"rate.?limit", r"\b429\b", r"too many requests"), ErrorCode.UPSTREAM_RATE_LIMITED),
    (
        _any(
            r"model\b.*\bnot found",
            r"\b404\b",
            r"model\b.*\bunavailable",
            r"\b503\b",
            r"service unavailable",
        ),
        ErrorCode.UPSTREAM_MODEL_UNAVAILABLE,
    ),
    (
        _any(
            r"permission",
            r"forbidden",
            r"unauthori[sz]ed",
            r"\b401\b",
            r"\b403\b",
            r"invalid api token",
        ),
        ErrorCode.UPSTREAM_PERMISSION_DENIED,
    ),
    (_any(r"redis", r"ECONNREFUSED", r"cache unavailable"), ErrorCode.CACHE_UNAVAILABLE),
    (_any(r"validation", r"invalid"), ErrorCode.VALIDATION_ERROR),
    (_any(r"database", r"storage", r"sqlalchemy", r"psycopg"), ErrorCode.STORAGE_ERROR),
)


def truncate_message(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Bound an error message before it is stored on the job row."""
    return message[:limit]


def classify_error(error: BaseException | object) -> ClassifiedError:
    """Map an arbitrary failure to a stable error code and bounded message.

    Args:
        error: Exception raised anywhere in the generation pipeline (non-exceptions
            are classified as GenerationFailed with a generic message)

    Returns:
        ClassifiedError with code and message truncated to 500 characters

    Classification rules (first match wins):
        - Redis / cache errors → CacheUnavailable
        - Missing job row, SQLAlchemy errors → StorageError
        - Request/pydantic validation errors → ValidationError
        - Message patterns, see ERROR_PATTERNS
        - Anything else → GenerationFailed
    """
    if not isinstance(error, BaseException):
        return ClassifiedError(ErrorCode.GENERATION_FAILED, "Unknown error")

    message = truncate_message(str(error) or type(error).__name__)

    for error_types, code in _TYPE_RULES:
        if isinstance(error, error_types):
            return ClassifiedError(code, message)

    for pattern, code in ERROR_PATTERNS:
        if pattern.search(message):
            return ClassifiedError(code, message)

    return ClassifiedError(ErrorCode.GENERATION_FAILED, message)
