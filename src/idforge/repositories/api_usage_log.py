"""ApiUsageLog repository for idforge backend."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from idforge.models.api_usage_log import ApiUsageLog


class ApiUsageLogRepository:
    """Repository for ApiUsageLog entries (append-only)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, entry: ApiUsageLog) -> ApiUsageLog:
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def total_cost(self, session_id: str | None = None) -> float:
        """Sum estimated cost, optionally for one intake session."""
        query = select(func.coalesce(func.sum(ApiUsageLog.cost_usd), 0.0))
        if session_id is not None:
            query = query.where(ApiUsageLog.session_id == session_id)  # type: ignore[arg-type]
        result = await self.session.execute(query)
        return float(result.scalar_one())
