"""Client side of the realtime change feed."""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

import websockets

logger = logging.getLogger("railsavior.client.realtime")

RECONNECT_DELAY = 5.0


async def table_changes(
    url: str,
    headers: Optional[dict] = None,
    reconnect_delay: float = RECONNECT_DELAY,
) -> AsyncIterator[dict]:
    """Yield change events from ``/api/realtime/{table}``, reconnecting on disconnect.

    Runs until the consuming task is cancelled.
    """
    while True:
        try:
            async with websockets.connect(url, additional_headers=headers) as ws:
                logger.info(f"Realtime connected: {url}")
                async for message in ws:
                    event = json.loads(message)
                    if event.get("type") == "change":
                        yield event
        except (OSError, websockets.WebSocketException) as e:
            logger.warning(f"Realtime connection to {url} lost: {e}, reconnecting in {reconnect_delay}s")
        await asyncio.sleep(reconnect_delay)
