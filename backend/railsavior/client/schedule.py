"""City schedule aggregation: one call shape for every supported agency."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from railsavior.cities import resolve_city
from railsavior.client.api import RailSaviorAPI, RailSaviorAPIError
from railsavior.fetching import RequestPolicy
from railsavior.models import ArrivalsResponse

logger = logging.getLogger("railsavior.client.schedule")

SCHEDULE_POLICY = RequestPolicy(timeout=30.0, retries=1)

Notify = Callable[[str, str], None]


@dataclass(frozen=True)
class FetchState:
    loading: bool = False
    error: Optional[str] = None
    data: Optional[ArrivalsResponse] = None


class RateLimiter:
    """Sliding-window limit: at most ``max_requests`` calls per ``window`` seconds."""

    def __init__(self, max_requests: int = 10, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._calls: deque[float] = deque()

    def allow(self) -> bool:
        now = self._clock()
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()
        if len(self._calls) >= self.max_requests:
            return False
        self._calls.append(now)
        return True


class ScheduleFetcher:
    """Fetches arrivals for a city and keeps the latest ``FetchState``.

    Use as an async context manager. Closing cancels every in-flight call,
    and a cancelled call never touches ``state``.
    """

    def __init__(
        self,
        api: RailSaviorAPI,
        policy: RequestPolicy = SCHEDULE_POLICY,
        notify: Optional[Notify] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.api = api
        self.policy = policy
        self.notify = notify
        self.rate_limiter = rate_limiter or RateLimiter()
        self.state = FetchState()
        self._inflight: set[asyncio.Task] = set()
        self._closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    def _fail(self, title: str, message: str) -> None:
        self.state = FetchState(loading=False, error=message, data=self.state.data)
        if self.notify:
            self.notify(title, message)

    async def fetch(self, city_id: str, query: Optional[dict] = None) -> Optional[ArrivalsResponse]:
        if self._closed:
            raise RuntimeError("ScheduleFetcher is closed")

        city = resolve_city(city_id)
        if city is None:
            self._fail("Unsupported city", f"No schedule service for city '{city_id}'")
            return None

        if not self.rate_limiter.allow():
            self._fail(
                "Too many requests",
                f"Rate limit reached for {city.agency.upper()}; wait a minute before refreshing",
            )
            return None

        self.state = FetchState(loading=True, error=None, data=self.state.data)
        task = asyncio.create_task(self.api.arrivals(city.agency, query, policy=self.policy))
        self._inflight.add(task)
        try:
            result = await task
        except asyncio.CancelledError:
            if self._closed:
                logger.debug(f"Schedule fetch for {city_id} cancelled on close")
                return None
            raise
        except RailSaviorAPIError as e:
            logger.error(f"Error fetching {city.agency} schedule: {e}")
            self._fail("Schedule unavailable", f"Failed to load {city.name} schedule: {e.message}")
            return None
        finally:
            self._inflight.discard(task)

        self.state = FetchState(loading=False, error=None, data=result)
        return result

    async def aclose(self) -> None:
        self._closed = True
        pending = list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
