"""GenerationBatch repository for idforge backend.

The claim row is what makes "one in-flight batch per username/stage" hold even
when two requests race past the advisory check.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from idforge.core.timezone import utcnow
from idforge.models.generation_batch import GenerationBatch
from idforge.models.identity import GenerationState


class GenerationBatchRepository:
    """Repository for GenerationBatch claim rows."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def claim(self, batch: GenerationBatch) -> GenerationBatch:
        """Insert an in-flight claim row.

        Args:
            batch: Claim row with status 'gen'

        Returns:
            Persisted claim row

        Raises:
            sqlalchemy.exc.IntegrityError: If another batch for the same
                username/src is still in flight
        """
        self.session.add(batch)
        await self.session.flush()
        return batch

    async def get_by_id(self, batch_id: UUID) -> GenerationBatch | None:
        result = await self.session.execute(
            select(GenerationBatch).where(GenerationBatch.id == batch_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def is_claimed(self, username: str | None, src: str) -> bool:
        """Check whether an in-flight claim exists for (username, src)."""
        query = select(GenerationBatch.id).where(
            GenerationBatch.status == GenerationState.GENERATING.value  # type: ignore[arg-type]
        )
        query = query.where(GenerationBatch.src == src)  # type: ignore[arg-type]
        if username is None:
            query = query.where(GenerationBatch.instagram_username.is_(None))  # type: ignore[union-attr]
        else:
            query = query.where(GenerationBatch.instagram_username == username)  # type: ignore[arg-type]
        result = await self.session.execute(query.limit(1))
        return result.first() is not None

    async def list_in_flight(self) -> list[GenerationBatch]:
        """Retrieve every claim still marked 'gen', oldest first."""
        result = await self.session.execute(
            select(GenerationBatch)
            .where(GenerationBatch.status == GenerationState.GENERATING.value)  # type: ignore[arg-type]
            .order_by(GenerationBatch.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def close(self, batch_id: UUID, completed: int, failed: int) -> int:
        """Release the claim and record final counts.

        Args:
            batch_id: Claim row identifier (equals the identities' gen_id)
            completed: Records that ended completed
            failed: Records that ended failed

        Returns:
            Number of rows updated (0 if already closed)
        """
        result = await self.session.execute(
            update(GenerationBatch)
            .where(GenerationBatch.id == batch_id)  # type: ignore[arg-type]
            .where(GenerationBatch.status == GenerationState.GENERATING.value)  # type: ignore[arg-type]
            .values(
                status=GenerationState.DONE.value,
                completed=completed,
                failed=failed,
                finished_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]
