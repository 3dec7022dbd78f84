"""FastAPI dependency injection functions."""

from typing import AsyncGenerator

from fastapi import Request

from pixcraft.uow import UnitOfWork


async def get_uow(request: Request) -> AsyncGenerator[UnitOfWork, None]:
    """FastAPI dependency for request-scoped Unit of Work injection.

    Committed when the request handler returns, rolled back if it raises.

    Example:
        @router.get("/api/accounts/me/transactions")
        async def list_transactions(uow: UnitOfWork = Depends(get_uow)):
            return await uow.credit_transactions.list_by_account(account_id)
    """
    uow_factory = request.app.state.uow_factory
    async with await uow_factory() as uow:
        yield uow
