"""SvgGeneration repository for glyphforge."""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from glyphforge.models.svg_generation import SvgGeneration


class SvgGenerationRepository:
    """Repository for generated SVG artifacts."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, generation: SvgGeneration) -> SvgGeneration:
        """Persist new artifact to database.

        Args:
            generation: SvgGeneration entity to persist

        Returns:
            Persisted artifact with generated ID
        """
        self.session.add(generation)
        await self.session.flush()
        return generation

    async def get_by_id(self, generation_id: UUID) -> SvgGeneration | None:
        """Retrieve artifact by UUID."""
        result = await self.session.execute(
            select(SvgGeneration).where(SvgGeneration.id == generation_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_public(self, limit: int = 10, offset: int = 0) -> list[SvgGeneration]:
        """Retrieve non-private artifacts, newest first.

        Args:
            limit: Maximum number of artifacts to return (default: 10)
            offset: Number of artifacts to skip (default: 0)

        Returns:
            List of public artifacts ordered by creation time (newest first)
        """
        result = await self.session.execute(
            select(SvgGeneration)
            .where(SvgGeneration.privacy.is_(False))  # type: ignore[attr-defined]
            .order_by(SvgGeneration.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_public(self) -> int:
        """Count non-private artifacts."""
        result = await self.session.execute(
            select(func.count())
            .select_from(SvgGeneration)
            .where(SvgGeneration.privacy.is_(False))  # type: ignore[attr-defined]
        )
        return result.scalar_one()
