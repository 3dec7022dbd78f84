"""Account entity - app user with a credit balance and premium standing."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixcraft.core.timezone import utcnow


class Account(SQLModel, table=True):
    """Account owns generations and carries the credit balance they are paid from."""

    __tablename__ = "accounts"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: str = Field(max_length=255, unique=True, index=True)
    username: str = Field(max_length=20, unique=True, index=True)
    credits: int = Field(default=1, ge=0)
    is_premium: bool = Field(default=False)
    premium_expires_at: Optional[datetime] = Field(default=None)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_premium_active(self) -> bool:
        """True when the account is exempt from credit deduction."""
        if not self.is_premium:
            return False
        return self.premium_expires_at is None or self.premium_expires_at > utcnow()
