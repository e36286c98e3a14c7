"""Identity repository for idforge backend.

Provides data access methods for Identity entities: batch creation, per-row
status writes, batch-level done signal and the username-scoped primary swap.
"""

from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from idforge.core.timezone import utcnow
from idforge.models.identity import (
    GenerationState,
    Identity,
    IdentitySource,
    IdentityStatus,
)


def _username_clause(username: str | None):
    # NULL never equals NULL in SQL, so the uncategorized group needs IS NULL
    if username is None:
        return Identity.instagram_username.is_(None)  # type: ignore[union-attr]
    return Identity.instagram_username == username


class IdentityRepository:
    """Repository for Identity entities.

    Status writes go through the entity transition methods so a failed row
    can never be revived and a completed row always carries a URL.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, identity_id: UUID) -> Identity | None:
        """Retrieve identity by UUID.

        Args:
            identity_id: Identity's unique identifier

        Returns:
            Identity if found, None otherwise
        """
        result = await self.session.execute(select(Identity).where(Identity.id == identity_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def add(self, identity: Identity) -> Identity:
        """Persist new identity to database.

        Args:
            identity: Identity entity to persist

        Returns:
            Persisted identity
        """
        self.session.add(identity)
        await self.session.flush()
        return identity

    async def add_many(self, identities: Sequence[Identity]) -> list[Identity]:
        """Persist several identities with a single flush.

        Nothing is committed here: the surrounding unit of work decides whether
        all rows land or none do.

        Args:
            identities: Identity entities to persist

        Returns:
            Persisted identities in input order
        """
        self.session.add_all(list(identities))
        await self.session.flush()
        return list(identities)

    async def list_by_generation(self, gen_id: UUID) -> list[Identity]:
        """Retrieve every identity of one batch in creation order."""
        result = await self.session.execute(
            select(Identity)
            .where(Identity.gen_id == gen_id)  # type: ignore[arg-type]
            .order_by(Identity.created_at.asc(), Identity.name.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_by_username(
        self, username: str | None, src: IdentitySource | None = None
    ) -> list[Identity]:
        """Retrieve identities for a username, newest first.

        Args:
            username: Grouping key (None selects the uncategorized group)
            src: Optional stage filter

        Returns:
            List of identities (including failed ones)
        """
        query = select(Identity).where(_username_clause(username))
        if src is not None:
            query = query.where(Identity.src == src)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(Identity.created_at.desc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_by_status(self, status: IdentityStatus, limit: int = 100) -> list[Identity]:
        """Retrieve identities with a given status, oldest first."""
        result = await self.session.execute(
            select(Identity)
            .where(Identity.status == status)  # type: ignore[arg-type]
            .order_by(Identity.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_visible(self, username: str | None = None) -> list[Identity]:
        """Retrieve non-failed identities, newest first.

        Args:
            username: Optional grouping key; when omitted every username is returned

        Returns:
            List of processing and completed identities
        """
        query = select(Identity).where(Identity.status != IdentityStatus.FAILED)  # type: ignore[arg-type]
        if username is not None:
            query = query.where(Identity.instagram_username == username)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(Identity.created_at.desc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_all(self, username: str | None = None) -> list[Identity]:
        """Retrieve identities of every status, newest first (optionally one username)."""
        query = select(Identity)
        if username is not None:
            query = query.where(Identity.instagram_username == username)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(Identity.created_at.desc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_in_flight(self) -> list[Identity]:
        """Retrieve every identity whose batch loop is still running."""
        result = await self.session.execute(
            select(Identity)
            .where(Identity.gen_st == GenerationState.GENERATING)  # type: ignore[arg-type]
            .order_by(Identity.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def has_in_flight_batch(
        self, username: str | None, src: IdentitySource | None = None
    ) -> bool:
        """Check whether a batch for (username, src) is still generating.

        Read-only, so repeated calls without an intervening create agree.

        Args:
            username: Grouping key
            src: Pipeline stage, or None to match a batch of any stage

        Returns:
            True if any matching row has gen_st='gen'
        """
        query = (
            select(Identity.id)
            .where(_username_clause(username))
            .where(Identity.gen_st == GenerationState.GENERATING)  # type: ignore[arg-type]
        )
        if src is not None:
            query = query.where(Identity.src == src)  # type: ignore[arg-type]
        result = await self.session.execute(query.limit(1))
        return result.first() is not None

    async def has_active_or_completed(
        self, username: str, src: IdentitySource | None = None
    ) -> bool:
        """Check for a processing identity or a completed one with a visible URL.

        With no src, identities of every stage count.
        """
        query = (
            select(Identity.status, Identity.generated_image_url)
            .where(Identity.instagram_username == username)  # type: ignore[arg-type]
            .where(Identity.status != IdentityStatus.FAILED)  # type: ignore[arg-type]
        )
        if src is not None:
            query = query.where(Identity.src == src)  # type: ignore[arg-type]
        result = await self.session.execute(query)
        for status, url in result.all():
            if status == IdentityStatus.PROCESSING or url:
                return True
        return False

    async def list_completed_urls(self, username: str, src: IdentitySource) -> list[str]:
        """Retrieve output URLs of completed identities for a username and stage.

        Args:
            username: Grouping key
            src: Pipeline stage whose outputs are requested

        Returns:
            URLs, oldest first, skipping completed rows without a URL
        """
        result = await self.session.execute(
            select(Identity.generated_image_url)
            .where(Identity.instagram_username == username)  # type: ignore[arg-type]
            .where(Identity.src == src)  # type: ignore[arg-type]
            .where(Identity.status == IdentityStatus.COMPLETED)  # type: ignore[arg-type]
            .where(Identity.generated_image_url.is_not(None))  # type: ignore[union-attr]
            .order_by(Identity.created_at.asc())  # type: ignore[attr-defined]
        )
        return [url for url in result.scalars().all() if url]

    async def mark_completed(self, identity_id: UUID, image_url: str) -> Identity | None:
        """Set the output URL and transition a processing identity to completed.

        Args:
            identity_id: Identity to update
            image_url: Public URL of the uploaded output

        Returns:
            Updated identity, or None if it no longer exists

        Raises:
            InvalidStateTransition: If the identity is not processing
            ValueError: If image_url is empty
        """
        identity = await self.get_by_id(identity_id)
        if identity is None:
            return None
        identity.mark_completed(image_url)
        self.session.add(identity)
        await self.session.flush()
        return identity

    async def mark_failed(self, identity_id: UUID) -> Identity | None:
        """Transition a processing identity to failed.

        Returns:
            Updated identity, or None if it no longer exists

        Raises:
            InvalidStateTransition: If the identity is not processing
        """
        identity = await self.get_by_id(identity_id)
        if identity is None:
            return None
        identity.mark_failed()
        self.session.add(identity)
        await self.session.flush()
        return identity

    async def mark_batch_done(self, gen_id: UUID) -> int:
        """Set gen_st='done' on every row of a batch in one statement.

        Rows already done are left untouched, so the flag only moves forward.

        Args:
            gen_id: Batch identifier

        Returns:
            Number of rows updated
        """
        result = await self.session.execute(
            update(Identity)
            .where(Identity.gen_id == gen_id)  # type: ignore[arg-type]
            .where(
                or_(
                    Identity.gen_st.is_(None),  # type: ignore[union-attr]
                    Identity.gen_st != GenerationState.DONE,  # type: ignore[arg-type]
                )
            )
            .values(gen_st=GenerationState.DONE, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def fail_unfinished(self, gen_id: UUID) -> int:
        """Mark processing rows without an output URL as failed.

        Used by orphan recovery for batches whose loop died with the process.

        Returns:
            Number of rows updated
        """
        result = await self.session.execute(
            update(Identity)
            .where(Identity.gen_id == gen_id)  # type: ignore[arg-type]
            .where(Identity.status == IdentityStatus.PROCESSING)  # type: ignore[arg-type]
            .where(Identity.generated_image_url.is_(None))  # type: ignore[union-attr]
            .values(status=IdentityStatus.FAILED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def set_primary(self, username: str, identity_id: UUID) -> Identity | None:
        """Make one identity the primary for its username.

        Both writes run in the caller's transaction, so readers never see zero
        or two primaries for the username after commit.

        Args:
            username: Grouping key the identity must belong to
            identity_id: Identity to promote

        Returns:
            Promoted identity, or None if it does not exist or belongs to
            another username
        """
        identity = await self.get_by_id(identity_id)
        if identity is None or identity.instagram_username != username:
            return None

        await self.session.execute(
            update(Identity)
            .where(Identity.instagram_username == username)  # type: ignore[arg-type]
            .where(Identity.is_primary.is_(True))  # type: ignore[attr-defined]
            .where(Identity.id != identity_id)  # type: ignore[arg-type]
            .values(is_primary=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        identity.is_primary = True
        identity.updated_at = utcnow()
        self.session.add(identity)
        await self.session.flush()
        return identity

    async def get_primary(self, username: str) -> Identity | None:
        """Retrieve the primary identity for a username."""
        result = await self.session.execute(
            select(Identity)
            .where(Identity.instagram_username == username)  # type: ignore[arg-type]
            .where(Identity.is_primary.is_(True))  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def delete(self, identity_id: UUID) -> bool:
        """Delete one identity.

        Returns:
            True if a row was deleted
        """
        result = await self.session.execute(
            delete(Identity).where(Identity.id == identity_id)  # type: ignore[arg-type]
        )
        return result.rowcount > 0  # type: ignore[attr-defined]
