"""FastAPI dependencies for request context and common operations.

This module provides reusable FastAPI dependencies for:
- Settings and Unit of Work access
- Resolving the calling account
- Generation service access
"""

from typing import Annotated, Callable
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from pixcraft.core.config import Settings
from pixcraft.models.account import Account
from pixcraft.services.generation_service import GenerationService
from pixcraft.uow import UnitOfWork


def get_settings(request: Request) -> Settings:
    """Get application settings instance.

    Returns:
        Settings loaded at startup (stored on app.state by the lifespan).
    """
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        UnitOfWork factory function from app lifespan

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.accounts.get_by_id(account_id)
    """
    return request.app.state.uow_factory


def get_generation_service(request: Request) -> GenerationService:
    """Get GenerationService from app state."""
    return request.app.state.generation_service


async def get_current_account(
    x_account_id: Annotated[str | None, Header()] = None,
    uow_factory=Depends(get_uow_factory),
) -> Account:
    """Resolve the calling account from the X-Account-Id header.

    The header is set by the upstream authentication layer after it has
    verified the caller's token.

    Raises:
        HTTPException: 401 if the header is missing, malformed or unknown;
            403 if the account is deactivated
    """
    if not x_account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Account-Id header"
        )

    try:
        account_id = UUID(x_account_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-Account-Id header"
        )

    async with await uow_factory() as uow:
        account = await uow.accounts.get_by_id(account_id)

    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown account")
    if not account.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")

    return account
