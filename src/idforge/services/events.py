"""In-process change notifications for identity rows.

Writers publish after their transaction commits; subscribers (the NDJSON
event stream, tests) each receive their own bounded queue. Delivery is best
effort: a subscriber that falls behind loses events and is expected to
reconcile by polling, exactly like a client whose realtime channel dropped.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog

from idforge.core.timezone import utcnow

logger = structlog.get_logger()

EVENT_INSERT = "INSERT"
EVENT_UPDATE = "UPDATE"
EVENT_DELETE = "DELETE"


class IdentityEventBus:
    """Fan-out publisher of identity change events."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, record: dict[str, Any], table: str = "identities") -> None:
        """Deliver one event to every subscriber without blocking.

        Args:
            event_type: INSERT, UPDATE or DELETE
            record: Row snapshot (for DELETE only the id is required)
            table: Source table name
        """
        event = {
            "eventType": event_type,
            "table": table,
            "new": record if event_type != EVENT_DELETE else {},
            "old": {"id": record.get("id")} if event_type == EVENT_DELETE else {},
            "commit_timestamp": utcnow().isoformat(),
        }
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("events.subscriber_lagging", event_type=event_type)

    def publish_many(self, event_type: str, records: list[dict[str, Any]]) -> None:
        for record in records:
            self.publish(event_type, record)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        """Register a subscriber queue for the duration of the context."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        logger.debug("events.subscribed", subscribers=len(self._subscribers))
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
            logger.debug("events.unsubscribed", subscribers=len(self._subscribers))

    async def stream(self, heartbeat_seconds: float = 15.0) -> AsyncIterator[str]:
        """Yield events as NDJSON lines, with periodic heartbeats to keep proxies open."""
        async with self.subscribe() as queue:
            yield json.dumps({"type": "subscribed"}) + "\n"
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield json.dumps({"type": "heartbeat"}) + "\n"
                    continue
                yield json.dumps({"type": "change", **event}) + "\n"
