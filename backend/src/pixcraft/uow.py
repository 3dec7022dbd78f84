"""Unit of Work for the pixcraft backend.

One UnitOfWork wraps one session: its repositories share that session, and
leaving the ``async with`` block commits (or rolls back on error) and closes it.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixcraft.repositories.account import AccountRepository
from pixcraft.repositories.credit_transaction import CreditTransactionRepository
from pixcraft.repositories.generation import GenerationRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction boundary over the account, generation and ledger repositories.

    Example:
        async with await uow_factory() as uow:
            claimed = await uow.generations.claim_for_processing(generation_id, now)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.accounts = AccountRepository(session)
        self.generations = GenerationRepository(session)
        self.credit_transactions = CreditTransactionRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit on clean exit, roll back on error, always release the session.

        Returns:
            False so exceptions propagate after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Build the ``uow_factory`` passed to services, workers and routes.

    Each call opens a fresh session, so concurrent workers never share one.

    Example:
        uow_factory = create_uow_factory(setup_db_session(settings.database_url))

        async with await uow_factory() as uow:
            await uow.accounts.add(account)
    """

    async def _create_uow():
        return UnitOfWork(session_factory())

    return _create_uow
