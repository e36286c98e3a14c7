"""ApiUsageLog entity - append-only cost log for paid upstream calls."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from idforge.core.timezone import utcnow


class ApiUsageLog(SQLModel, table=True):
    """One paid upstream request and its estimated cost."""

    __tablename__ = "api_usage_logs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    session_id: Optional[str] = Field(default=None, max_length=255, index=True)
    api: str = Field(max_length=50)  # "ensembledata"
    endpoint: str = Field(max_length=255)
    units: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
