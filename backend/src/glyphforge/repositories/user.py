"""User repository for glyphforge.

Holds the credit ledger primitives: a guarded decrement and an unconditional
increment, both expressed as single UPDATE statements.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from glyphforge.models.user import User


class UserRepository:
    """Repository for User entities and their credit balance."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, user: User) -> User:
        """Persist new user to database."""
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_by_id(self, user_id: UUID) -> User | None:
        """Retrieve user by UUID, always reading the current row."""
        result = await self.session.execute(
            select(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def exists(self, user_id: UUID) -> bool:
        """Check whether a user exists."""
        result = await self.session.execute(
            select(User.id).where(User.id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none() is not None

    async def get_credits(self, user_id: UUID) -> int | None:
        """Read the user's current credit balance (None if the user is unknown)."""
        result = await self.session.execute(
            select(User.credits).where(User.id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def debit_credit(self, user_id: UUID, amount: int = 1) -> bool:
        """Conditionally decrement the balance.

        Query:
            UPDATE users SET credits = credits - :amount
            WHERE id = :user_id AND credits >= :amount

        Returns:
            True if the balance was decremented, False if the user has no credits
        """
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .where(User.credits >= amount)  # type: ignore[arg-type]
            .values(credits=User.credits - amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def refund_credit(self, user_id: UUID, amount: int = 1) -> None:
        """Unconditionally increment the balance.

        Callers must only invoke this after winning GenerationJobRepository.claim_refund
        in the same transaction.
        """
        await self.session.execute(
            update(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .values(credits=User.credits + amount)
            .execution_options(synchronize_session=False)
        )
