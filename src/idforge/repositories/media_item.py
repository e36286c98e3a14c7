"""MediaItem repository for idforge backend."""

from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from idforge.models.media_item import MediaItem, MediaType


class MediaItemRepository:
    """Repository for MediaItem entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, item_id: UUID) -> MediaItem | None:
        result = await self.session.execute(select(MediaItem).where(MediaItem.id == item_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_url(self, url: str, media_type: MediaType | None = None) -> MediaItem | None:
        """Retrieve the first item with the given URL (and type, if given)."""
        query = select(MediaItem).where(MediaItem.url == url)  # type: ignore[arg-type]
        if media_type is not None:
            query = query.where(MediaItem.type == media_type)  # type: ignore[arg-type]
        result = await self.session.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def add(self, item: MediaItem) -> MediaItem:
        self.session.add(item)
        await self.session.flush()
        return item

    async def add_many(self, items: Sequence[MediaItem]) -> list[MediaItem]:
        self.session.add_all(list(items))
        await self.session.flush()
        return list(items)

    async def next_display_order(self) -> int:
        """Return the display_order that appends after every existing item (1 when empty)."""
        result = await self.session.execute(select(func.max(MediaItem.display_order)))
        current = result.scalar_one_or_none()
        return (current or 0) + 1

    async def list_all(self, media_type: MediaType | None = None) -> list[MediaItem]:
        """Retrieve items in display order.

        Args:
            media_type: Optional type filter

        Returns:
            Items ordered by display_order, then creation time
        """
        query = select(MediaItem)
        if media_type is not None:
            query = query.where(MediaItem.type == media_type)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(MediaItem.display_order.asc(), MediaItem.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_frames(self, parent_video_id: UUID) -> list[MediaItem]:
        result = await self.session.execute(
            select(MediaItem)
            .where(MediaItem.parent_video_id == parent_video_id)  # type: ignore[arg-type]
            .order_by(MediaItem.display_order.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def delete(self, item: MediaItem) -> None:
        """Delete one item together with frames extracted from it."""
        await self.session.execute(
            delete(MediaItem).where(MediaItem.parent_video_id == item.id)  # type: ignore[arg-type]
        )
        await self.session.delete(item)
        await self.session.flush()

    async def delete_all(self) -> list[MediaItem]:
        """Delete every item.

        Returns:
            The deleted items, so callers can remove their storage blobs
        """
        items = await self.list_all()
        # Frames first: they reference their parent video
        await self.session.execute(
            delete(MediaItem).where(MediaItem.parent_video_id.is_not(None))  # type: ignore[union-attr]
        )
        await self.session.execute(delete(MediaItem))
        return items
