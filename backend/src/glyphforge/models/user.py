"""User entity - generation owner carrying the credit balance."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from glyphforge.core.timezone import utcnow


class User(SQLModel, table=True):
    """User owns generation jobs and a non-negative credit balance.

    The balance is only changed through UserRepository.debit_credit (guarded by
    credits > 0) and UserRepository.refund_credit.
    """

    __tablename__ = "users"  # type: ignore[assignment]
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: str = Field(max_length=255, unique=True, index=True)
    credits: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
