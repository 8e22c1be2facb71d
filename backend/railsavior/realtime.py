"""In-process change feed: table-level INSERT/UPDATE/DELETE events fanned out to websocket subscribers."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from railsavior.models import ChangeEvent

logger = logging.getLogger("railsavior.realtime")

TABLES = frozenset({
    "incident_reports",
    "group_rides",
    "group_ride_members",
    "general_group_rides",
    "general_ride_members",
    "group_messages",
})

DEFAULT_QUEUE_SIZE = 100


class ChangeBroker:
    """One bounded queue per subscriber per table.

    ``publish`` may be called from worker threads (the store endpoints are
    sync); delivery always happens on the event loop the broker is bound to.
    A full queue drops its oldest event so publishers never block.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def subscribe(self, table: str) -> asyncio.Queue:
        if table not in TABLES:
            raise ValueError(f"Unknown realtime table '{table}'")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[table].add(queue)
        logger.info(f"Realtime subscriber added on {table} ({len(self._subscribers[table])} total)")
        return queue

    def unsubscribe(self, table: str, queue: asyncio.Queue) -> None:
        self._subscribers[table].discard(queue)

    def subscriber_count(self, table: str) -> int:
        return len(self._subscribers.get(table, ()))

    def publish(self, table: str, event_type: str, record: dict[str, Any]) -> None:
        change = ChangeEvent(
            table=table,
            event_type=event_type,
            record=record,
            commit_timestamp=datetime.now(timezone.utc).isoformat(),
        )
        event = {"type": "change", **change.model_dump(by_alias=True)}
        if self._loop is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._deliver(table, event)
        else:
            self._loop.call_soon_threadsafe(self._deliver, table, event)

    def _deliver(self, table: str, event: dict) -> None:
        for queue in list(self._subscribers.get(table, ())):
            if queue.full():
                queue.get_nowait()
                logger.warning(f"Realtime subscriber on {table} is lagging; dropped oldest event")
            queue.put_nowait(event)
