"""Repository layer for glyphforge.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from glyphforge.repositories.generation_job import GenerationJobRepository
from glyphforge.repositories.svg_generation import SvgGenerationRepository
from glyphforge.repositories.user import UserRepository

__all__ = [
    "UserRepository",
    "GenerationJobRepository",
    "SvgGenerationRepository",
]
