"""Unit of Work for the identity, batch and media tables.

One UnitOfWork wraps one session: it commits when the block exits cleanly and
rolls back when it raises.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from idforge.repositories.api_usage_log import ApiUsageLogRepository
from idforge.repositories.generation_batch import GenerationBatchRepository
from idforge.repositories.identity import IdentityRepository
from idforge.repositories.media_item import MediaItemRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction boundary shared by every repository.

    Example:
        async with await uow_factory() as uow:
            await uow.batches.claim(batch)
            await uow.identities.add_many(records)
        # claim and records are committed together, or neither is
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.identities = IdentityRepository(session)
        self.batches = GenerationBatchRepository(session)
        self.media_items = MediaItemRepository(session)
        self.usage_logs = ApiUsageLogRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit or roll back, then close the session.

        Returns:
            False, so an exception raised inside the block propagates
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Build the ``await uow_factory()`` callable stored on app.state.

    Each call opens a fresh session, so concurrent requests and per-record
    writes never share a transaction.
    """

    async def _create_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _create_uow
