"""GenerationBatch entity - claim row for one orchestrator run."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from idforge.core.timezone import utcnow
from idforge.models.identity import GenerationState


class GenerationBatch(SQLModel, table=True):
    """GenerationBatch claims the (instagram_username, src) slot while a batch runs.

    The partial unique index allows at most one row with status='gen' per
    username/src pair, so two racing requests cannot both start a batch.
    """

    __tablename__ = "generation_batches"  # type: ignore[assignment]
    __table_args__ = (
        Index(
            "uq_generation_batches_in_flight",
            "instagram_username",
            "src",
            unique=True,
            postgresql_where=text("status = 'gen'"),
            sqlite_where=text("status = 'gen'"),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    instagram_username: Optional[str] = Field(default=None, max_length=255)
    # Plain strings: the index predicate compares against stored values
    src: str = Field(max_length=8)
    status: str = Field(default=GenerationState.GENERATING.value, max_length=8)
    total: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = Field(default=None)

    @property
    def is_in_flight(self) -> bool:
        return self.status == GenerationState.GENERATING.value
