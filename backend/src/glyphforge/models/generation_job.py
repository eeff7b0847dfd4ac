"""GenerationJob entity - one row per SVG generation request."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from glyphforge.core.timezone import utcnow


class GenerationJobStatus(str, Enum):
    """Generation job lifecycle status.

    QUEUED -> RUNNING -> SUCCEEDED | FAILED, with RUNNING -> QUEUED reserved
    for retryable failures.
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({GenerationJobStatus.SUCCEEDED, GenerationJobStatus.FAILED})


class SvgStyle(str, Enum):
    """Visual styles accepted for generation."""

    OUTLINE = "outline"
    FILLED = "filled"
    MINIMAL = "minimal"
    MODERN = "modern"
    FLAT = "flat"
    GRADIENT = "gradient"
    LINE_ART = "line-art"
    THREE_D = "3d"
    CARTOON = "cartoon"


class AiModel(str, Enum):
    """Generation models accepted for generation."""

    GPT_5_MINI = "gpt-5-mini"
    GPT_4 = "gpt-4"


DEFAULT_MODEL = AiModel.GPT_5_MINI


class GenerationJob(SQLModel, table=True):
    """GenerationJob holds the authoritative state of one generation request.

    Rows are only mutated through the conditional updates in
    GenerationJobRepository so that replays (claim, charge, persist, refund)
    are no-ops.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint(
            "owner_id", "idempotency_key", name="uq_generation_jobs_owner_idempotency_key"
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(foreign_key="users.id", index=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    style: str = Field(max_length=32)
    model: str = Field(max_length=64)
    privacy: bool = Field(default=False)
    status: GenerationJobStatus = Field(default=GenerationJobStatus.QUEUED, index=True)

    # Idempotency
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    request_hash: str = Field(max_length=64)

    # Ledger flags
    credits_charged: bool = Field(default=False)
    credits_refunded: bool = Field(default=False)

    # Execution tracking
    attempts_made: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: Optional[datetime] = Field(default=None)
    last_started_at: Optional[datetime] = Field(default=None)
    last_failed_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
    error_code: Optional[str] = Field(default=None, max_length=64)
    error_message: Optional[str] = Field(default=None, max_length=500)

    # Produced artifact (set together with status=SUCCEEDED)
    result_id: Optional[UUID] = Field(default=None, foreign_key="svg_generations.id")

    @property
    def is_terminal(self) -> bool:
        """True once the job has reached SUCCEEDED or FAILED."""
        return self.status in TERMINAL_STATUSES
