"""MediaItem entity - photo/video/frame candidate collected during intake."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from idforge.core.timezone import utcnow


class MediaType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    FRAME = "frame"


class MediaSource(str, Enum):
    """Where the item came from. Only non-instagram items own a storage blob."""

    INSTAGRAM = "instagram"
    UPLOAD = "upload"
    EXTRACTED = "extracted"


class MediaItem(SQLModel, table=True):
    """MediaItem is one entry of the user's curated media library."""

    __tablename__ = "media_items"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    type: MediaType = Field(index=True)
    source: MediaSource = Field(index=True)
    url: str
    thumbnail_url: Optional[str] = Field(default=None)
    caption: Optional[str] = Field(default=None)
    instagram_id: Optional[str] = Field(default=None, max_length=255)
    instagram_username: Optional[str] = Field(default=None, max_length=255, index=True)
    parent_video_id: Optional[UUID] = Field(default=None, foreign_key="media_items.id")
    display_order: int = Field(default=0, index=True)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def owns_blob(self) -> bool:
        return self.source != MediaSource.INSTAGRAM
