"""CreditTransaction repository for the pixcraft backend."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixcraft.models.credit_transaction import CreditTransaction, CreditTransactionKind


class CreditTransactionRepository:
    """Repository for CreditTransaction entities (append-only)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a transaction."""
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def list_by_account(
        self, account_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[CreditTransaction]:
        """Account's transactions, newest first."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_for_generation(
        self, generation_id: UUID, kind: CreditTransactionKind | None = None
    ) -> list[CreditTransaction]:
        """Transactions tied to one generation, optionally filtered by kind."""
        stmt = select(CreditTransaction).where(
            CreditTransaction.generation_id == generation_id  # type: ignore[arg-type]
        )
        if kind is not None:
            stmt = stmt.where(CreditTransaction.kind == kind)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
