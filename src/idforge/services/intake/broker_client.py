"""EnsembleData broker client for Instagram profile data."""

from typing import Any, AsyncIterator, Callable

import httpx
import structlog

from idforge.services.exceptions import UpstreamError
from idforge.services.intake.costs import USER_INFO_UNITS, CostLogger
from idforge.services.intake.extract import Page, parse_posts_page, parse_reels_page
from idforge.services.upstream import raise_for_upstream_status, wrap_transport_error

logger = structlog.get_logger()


class EnsembleDataClient:
    """Thin async wrapper over the broker's user info / posts / reels endpoints."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.ensembledata.com",
        chunk_size: int = 12,
        timeout: float = 60.0,
        cost_logger: CostLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize broker client.

        Args:
            token: Broker API token (from ENSEMBLE_DATA_TOKEN env var)
            base_url: API base URL
            chunk_size: Items requested per page
            timeout: Per-request timeout in seconds
            cost_logger: Optional sink for per-request cost entries
            transport: Optional httpx transport (tests)
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.cost_logger = cost_logger
        self.transport = transport

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.token:
            raise UpstreamError("ENSEMBLE_DATA_TOKEN not configured")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.get(path, params={**params, "token": self.token})
                raise_for_upstream_status(response, "ensembledata")
                return response.json()
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, "ensembledata") from e

    async def get_user_id(self, username: str, session_id: str | None = None) -> str:
        """Resolve a username to the broker's numeric user id.

        Raises:
            UpstreamError: If the broker call fails or returns no ``pk``
        """
        body = await self._get("/instagram/user/info", {"username": username})
        if session_id and self.cost_logger is not None:
            await self.cost_logger.log(
                session_id, "ensemble", "/instagram/user/info", USER_INFO_UNITS
            )

        pk = (body.get("data") or {}).get("pk") if isinstance(body, dict) else None
        if not pk:
            raise UpstreamError(f"Failed to get user ID for username: {username}")
        return str(pk)

    async def _paginate(
        self,
        path: str,
        user_id: str,
        parse: Callable[[dict[str, Any]], Page],
        stop_on_empty: bool,
    ) -> AsyncIterator[Page]:
        cursor: str | None = None
        page_number = 0
        while True:
            page_number += 1
            params: dict[str, Any] = {
                "user_id": user_id,
                "depth": 1,
                "chunk_size": self.chunk_size,
            }
            if cursor:
                params["start_cursor"] = cursor

            page = parse(await self._get(path, params))
            logger.debug(
                "broker.page_fetched",
                path=path,
                page=page_number,
                items=len(page.items),
                has_cursor=bool(page.next_cursor),
            )
            yield page

            if not page.next_cursor:
                break
            if stop_on_empty and not page.items:
                break
            cursor = page.next_cursor

    def iter_post_pages(self, user_id: str) -> AsyncIterator[Page]:
        """Yield post pages until the broker stops returning a cursor.

        Empty pages do not end pagination; they can be transient.
        """
        return self._paginate("/instagram/user/posts", user_id, parse_posts_page, False)

    def iter_reel_pages(self, user_id: str) -> AsyncIterator[Page]:
        """Yield reel pages until the cursor is missing or a page comes back empty."""
        return self._paginate("/instagram/user/reels", user_id, parse_reels_page, True)
