"""Account API endpoints.

- GET /api/accounts/me - Caller's profile and credit balance
- GET /api/accounts/me/transactions - Caller's credit history, newest first
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from pixcraft.api.dependencies import get_current_account
from pixcraft.core.dependencies import get_uow
from pixcraft.models.account import Account
from pixcraft.models.credit_transaction import CreditTransactionKind
from pixcraft.uow import UnitOfWork

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


class AccountResponse(BaseModel):
    id: UUID
    email: str
    username: str
    credits: int = Field(..., description="Current credit balance")
    is_premium: bool = Field(..., description="True while premium standing is active")
    premium_expires_at: datetime | None = None


class CreditTransactionDTO(BaseModel):
    id: UUID
    amount: int = Field(..., description="Negative for debits, positive for credits")
    kind: CreditTransactionKind
    generation_id: UUID | None = None
    description: str | None = None
    balance_after: int
    created_at: datetime


@router.get("/me", response_model=AccountResponse)
async def get_me(account: Account = Depends(get_current_account)) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        username=account.username,
        credits=account.credits,
        is_premium=account.is_premium_active,
        premium_expires_at=account.premium_expires_at,
    )


@router.get("/me/transactions", response_model=list[CreditTransactionDTO])
async def list_my_transactions(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    account: Account = Depends(get_current_account),
    uow: UnitOfWork = Depends(get_uow),
) -> list[CreditTransactionDTO]:
    transactions = await uow.credit_transactions.list_by_account(
        account.id, limit=limit, offset=offset
    )
    return [CreditTransactionDTO.model_validate(t, from_attributes=True) for t in transactions]
