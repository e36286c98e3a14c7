"""Identity entity - one desired/produced output image with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from idforge.core.timezone import utcnow


class IdentityStatus(str, Enum):
    """Identity lifecycle status."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IdentitySource(str, Enum):
    """Pipeline stage that produced the identity."""

    SEEDREAM = "sd"
    ANCHOR = "anc"
    VARIANT = "var"


class GenerationState(str, Enum):
    """Batch-level progress flag shared by every row of one batch."""

    GENERATING = "gen"
    DONE = "done"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid identity state transition."""

    pass


class Identity(SQLModel, table=True):
    """Identity represents one output image and its provenance."""

    __tablename__ = "identities"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255)
    source_photos: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    generated_image_url: Optional[str] = Field(default=None)
    status: IdentityStatus = Field(default=IdentityStatus.PROCESSING, index=True)
    src: IdentitySource = Field(default=IdentitySource.SEEDREAM, index=True)
    gen_id: Optional[UUID] = Field(default=None, index=True)
    gen_st: Optional[GenerationState] = Field(default=None, index=True)
    instagram_username: Optional[str] = Field(default=None, max_length=255, index=True)
    is_primary: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def mark_completed(self, image_url: str) -> None:
        """Transition from processing to completed.

        Args:
            image_url: Public URL of the uploaded output image

        Raises:
            InvalidStateTransition: If current status is not processing
            ValueError: If image_url is empty
        """
        if self.status != IdentityStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Identity must be in processing state."
            )
        if not image_url:
            raise ValueError("image_url is required")
        self.generated_image_url = image_url
        self.status = IdentityStatus.COMPLETED
        self.updated_at = utcnow()

    def mark_failed(self) -> None:
        """Transition from processing to failed.

        Failed is terminal: the row is kept so the failure stays explainable.

        Raises:
            InvalidStateTransition: If current status is not processing
        """
        if self.status != IdentityStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark failed from {self.status.value}. "
                "Identity must be in processing state."
            )
        self.status = IdentityStatus.FAILED
        self.updated_at = utcnow()

    @property
    def is_visible_complete(self) -> bool:
        """True when the output image can actually be shown."""
        return self.status == IdentityStatus.COMPLETED and bool(self.generated_image_url)

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize to the plain dict shape used by events and the progress reconciler."""
        return {
            "id": str(self.id),
            "name": self.name,
            "source_photos": list(self.source_photos or []),
            "generated_image_url": self.generated_image_url,
            "status": self.status.value,
            "src": self.src.value,
            "gen_id": str(self.gen_id) if self.gen_id else None,
            "gen_st": self.gen_st.value if self.gen_st else None,
            "instagram_username": self.instagram_username,
            "is_primary": self.is_primary,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
