"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from glyphforge.models.generation_job import (
    DEFAULT_MODEL,
    AiModel,
    GenerationJob,
    GenerationJobStatus,
    SvgStyle,
)
from glyphforge.models.svg_generation import SvgGeneration
from glyphforge.models.user import User

__all__ = [
    "User",
    "GenerationJob",
    "GenerationJobStatus",
    "SvgGeneration",
    "SvgStyle",
    "AiModel",
    "DEFAULT_MODEL",
]
