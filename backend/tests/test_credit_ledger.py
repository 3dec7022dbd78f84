"""CreditLedger tests."""

import asyncio
from uuid import uuid4

import pytest

from pixcraft.models.credit_transaction import CreditTransactionKind
from pixcraft.services.credit_ledger import CreditLedger
from pixcraft.services.exceptions import AccountNotFound, InsufficientFunds


@pytest.fixture
def ledger(uow_factory) -> CreditLedger:
    return CreditLedger(uow_factory)


@pytest.mark.asyncio
async def test_deduct_records_transaction(ledger, uow_factory, account):
    generation_id = uuid4()

    balance = await ledger.deduct(account.id, 3, generation_id=generation_id, description="3 images")

    assert balance == 7
    async with await uow_factory() as uow:
        [transaction] = await uow.credit_transactions.list_by_account(account.id)
    assert transaction.amount == -3
    assert transaction.kind == CreditTransactionKind.GENERATION
    assert transaction.generation_id == generation_id
    assert transaction.balance_after == 7


@pytest.mark.asyncio
async def test_deduct_more_than_balance_changes_nothing(ledger, uow_factory, account):
    with pytest.raises(InsufficientFunds) as exc_info:
        await ledger.deduct(account.id, 11)

    assert exc_info.value.required == 11
    assert exc_info.value.available == 10
    async with await uow_factory() as uow:
        assert await uow.accounts.get_balance(account.id) == 10
        assert await uow.credit_transactions.list_by_account(account.id) == []


@pytest.mark.asyncio
async def test_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        await ledger.deduct(uuid4(), 1)
    with pytest.raises(AccountNotFound):
        await ledger.add(uuid4(), 1)


@pytest.mark.asyncio
async def test_add_credits(ledger, account):
    balance = await ledger.add(account.id, 25, kind=CreditTransactionKind.BONUS)

    assert balance == 35


@pytest.mark.asyncio
async def test_concurrent_deductions_never_overdraw(ledger, uow_factory, account):
    """Two debits of 6 against a balance of 10: exactly one applies."""
    results = await asyncio.gather(
        ledger.deduct(account.id, 6), ledger.deduct(account.id, 6), return_exceptions=True
    )

    assert sorted(type(r).__name__ for r in results) == ["InsufficientFunds", "int"]
    async with await uow_factory() as uow:
        assert await uow.accounts.get_balance(account.id) == 4
