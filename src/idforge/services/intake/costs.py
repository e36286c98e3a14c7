"""Cost log sink for paid broker calls."""

from typing import Callable

import structlog

from idforge.models.api_usage_log import ApiUsageLog

logger = structlog.get_logger()

ENSEMBLE_UNIT_COST = 0.001  # USD per unit beyond the plan quota
USER_INFO_UNITS = 3


def calculate_ensemble_cost(units: int) -> float:
    return units * ENSEMBLE_UNIT_COST


class CostLogger:
    """Writes ApiUsageLog rows. Failures are logged and never raised."""

    def __init__(self, uow_factory: Callable):
        self.uow_factory = uow_factory

    async def log(self, session_id: str, api: str, endpoint: str, units: int) -> None:
        cost = calculate_ensemble_cost(units)
        try:
            async with await self.uow_factory() as uow:
                await uow.usage_logs.add(
                    ApiUsageLog(
                        session_id=session_id,
                        api=api,
                        endpoint=endpoint,
                        units=units,
                        cost_usd=cost,
                    )
                )
        except Exception as e:
            logger.warning("cost.log_failed", endpoint=endpoint, error=str(e))
            return
        logger.debug("cost.logged", endpoint=endpoint, units=units, cost_usd=cost)
