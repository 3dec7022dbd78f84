"""Credit ledger: atomic debits and credits on an account balance.

The ledger has no notion of premium standing; callers decide whether an
account should be charged at all.
"""

from typing import Callable
from uuid import UUID

import structlog

from pixcraft.models.credit_transaction import CreditTransaction, CreditTransactionKind
from pixcraft.services.exceptions import AccountNotFound, InsufficientFunds

logger = structlog.get_logger(__name__)


class CreditLedger:
    """Applies balance changes, one transaction per call."""

    def __init__(self, uow_factory: Callable):
        self._uow_factory = uow_factory

    async def deduct(
        self,
        account_id: UUID,
        amount: int,
        *,
        generation_id: UUID | None = None,
        description: str | None = None,
    ) -> int:
        """Debit ``amount`` credits.

        Args:
            account_id: Account to debit
            amount: Positive number of credits
            generation_id: Generation being paid for, if any
            description: Free-text note stored on the transaction

        Returns:
            Balance after the debit

        Raises:
            InsufficientFunds: If current balance < amount (nothing applied)
            AccountNotFound: If the account does not exist
        """
        async with await self._uow_factory() as uow:
            applied = await uow.accounts.deduct_credits(account_id, amount)
            balance = await uow.accounts.get_balance(account_id)
            if balance is None:
                raise AccountNotFound(f"Account {account_id} not found")
            if not applied:
                raise InsufficientFunds(account_id, required=amount, available=balance)

            await uow.credit_transactions.add(
                CreditTransaction(
                    account_id=account_id,
                    amount=-amount,
                    kind=CreditTransactionKind.GENERATION,
                    generation_id=generation_id,
                    description=description,
                    balance_after=balance,
                )
            )

        logger.info(
            "credits.deducted",
            account_id=str(account_id),
            amount=amount,
            balance_after=balance,
            generation_id=str(generation_id) if generation_id else None,
        )
        return balance

    async def add(
        self,
        account_id: UUID,
        amount: int,
        *,
        kind: CreditTransactionKind = CreditTransactionKind.TOP_UP,
        description: str | None = None,
    ) -> int:
        """Credit ``amount`` credits. Always succeeds for an existing account.

        Returns:
            Balance after the credit

        Raises:
            AccountNotFound: If the account does not exist
        """
        async with await self._uow_factory() as uow:
            if not await uow.accounts.add_credits(account_id, amount):
                raise AccountNotFound(f"Account {account_id} not found")
            balance = await uow.accounts.get_balance(account_id)

            await uow.credit_transactions.add(
                CreditTransaction(
                    account_id=account_id,
                    amount=amount,
                    kind=kind,
                    description=description,
                    balance_after=balance,
                )
            )

        logger.info(
            "credits.added",
            account_id=str(account_id),
            amount=amount,
            kind=kind.value,
            balance_after=balance,
        )
        return balance
