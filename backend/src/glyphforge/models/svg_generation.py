"""SvgGeneration entity - the sanitized artifact produced by a generation job."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

from glyphforge.core.timezone import utcnow


class SvgGeneration(SQLModel, table=True):
    """SvgGeneration stores one generated and sanitized SVG document."""

    __tablename__ = "svg_generations"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(foreign_key="users.id", index=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    svg: str = Field(sa_column=Column(Text, nullable=False))
    style: str = Field(max_length=32)
    model: str = Field(max_length=64)
    privacy: bool = Field(default=False, index=True)
    credits_used: int = Field(default=1, ge=0)
    created_at: datetime = Field(default_factory=utcnow, index=True)
