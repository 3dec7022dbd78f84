"""CreditTransaction entity - append-only record of credit balance changes."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixcraft.core.timezone import utcnow


class CreditTransactionKind(str, Enum):
    """Why an account's balance changed."""

    GENERATION = "generation"
    TOP_UP = "top_up"
    REFUND = "refund"
    BONUS = "bonus"


class CreditTransaction(SQLModel, table=True):
    """One applied debit (negative amount) or credit (positive amount)."""

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    amount: int
    kind: CreditTransactionKind
    generation_id: Optional[UUID] = Field(default=None, index=True)
    description: Optional[str] = Field(default=None, max_length=255)
    balance_after: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow)
