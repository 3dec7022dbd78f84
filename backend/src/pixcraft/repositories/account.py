"""Account repository for the pixcraft backend.

Balance changes are applied in a single UPDATE so a debit can never drive the
balance below zero, even when two debits race.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixcraft.models.account import Account


class AccountRepository:
    """Repository for Account entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, account_id: UUID) -> Account | None:
        """Retrieve account by UUID, bypassing any stale identity-map copy."""
        result = await self.session.execute(
            select(Account)
            .where(Account.id == account_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Account | None:
        """Retrieve account by email (stored lowercase)."""
        result = await self.session.execute(
            select(Account).where(Account.email == email.lower())  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, account: Account) -> Account:
        """Persist new account to database."""
        account.email = account.email.lower()
        self.session.add(account)
        await self.session.flush()
        return account

    async def get_balance(self, account_id: UUID) -> int | None:
        """Current credit balance, None if the account does not exist."""
        result = await self.session.execute(
            select(Account.credits).where(Account.id == account_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def deduct_credits(self, account_id: UUID, amount: int) -> bool:
        """Subtract ``amount`` if and only if the balance covers it.

        Args:
            account_id: Account to debit
            amount: Positive number of credits

        Returns:
            True if the debit was applied, False if balance < amount or the
            account does not exist

        Raises:
            ValueError: If amount is not positive
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id)  # type: ignore[arg-type]
            .where(Account.credits >= amount)  # type: ignore[operator]
            .values(credits=Account.credits - amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def add_credits(self, account_id: UUID, amount: int) -> bool:
        """Add ``amount`` to the balance. No upper bound.

        Returns:
            False if the account does not exist

        Raises:
            ValueError: If amount is not positive
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id)  # type: ignore[arg-type]
            .values(credits=Account.credits + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
