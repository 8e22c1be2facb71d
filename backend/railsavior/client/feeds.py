"""Cached, realtime-invalidated views over incidents, rides and ride messages.

Each feed caches its reads per query key and opens its own change-feed
subscription for the tables it shows. Any change on those tables clears the
cache, so the next ``load()`` refetches.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Hashable, Optional

from railsavior.client.api import RailSaviorAPI, RideFullError
from railsavior.client.realtime import table_changes
from railsavior.models import (
    GeneralGroupRide,
    GeneralRideCreate,
    GroupMessage,
    GroupRide,
    IncidentCreate,
    IncidentPage,
    IncidentReport,
    MessagePage,
    RideCreate,
    RideMember,
)

logger = logging.getLogger("railsavior.client.feeds")

Notify = Callable[[str, str], None]
Subscribe = Callable[[str], AsyncIterator[dict]]


class QueryCache:
    """Per-key results plus a generation that every ``clear()`` bumps."""

    def __init__(self):
        self._entries: dict[Hashable, Any] = {}
        self.generation = 0

    def get(self, key: Hashable) -> Any:
        return self._entries.get(key)

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = value

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def clear(self) -> None:
        self._entries.clear()
        self.generation += 1


class RealtimeFeed:
    tables: tuple[str, ...] = ()

    def __init__(self, api: RailSaviorAPI, notify: Optional[Notify] = None, subscribe: Subscribe = table_changes):
        self.api = api
        self.notify = notify
        self.cache = QueryCache()
        self._subscribe = subscribe
        self._listeners: list[asyncio.Task] = []

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    def start(self) -> None:
        for table in self.tables:
            self._listeners.append(asyncio.create_task(self._listen(table)))

    async def aclose(self) -> None:
        for task in self._listeners:
            task.cancel()
        if self._listeners:
            await asyncio.gather(*self._listeners, return_exceptions=True)
        self._listeners.clear()

    async def _listen(self, table: str) -> None:
        async for event in self._subscribe(self.api.realtime_url(table)):
            self.handle_change(event)

    def handle_change(self, event: dict) -> None:
        if not self.is_relevant(event):
            return
        self.cache.clear()
        self.on_change(event)

    def is_relevant(self, event: dict) -> bool:
        return event.get("table") in self.tables

    def on_change(self, event: dict) -> None:
        pass

    async def _cached(self, key: Hashable, load: Callable[[], Any]) -> Any:
        if key in self.cache:
            return self.cache.get(key)
        generation = self.cache.generation
        value = await load()
        # a change landed mid-load; serve this result but don't keep it
        if self.cache.generation == generation:
            self.cache.set(key, value)
        return value


class IncidentReportsFeed(RealtimeFeed):
    tables = ("incident_reports",)

    def __init__(self, api: RailSaviorAPI, city: Optional[str] = None, page: int = 0, limit: int = 10, **kwargs):
        super().__init__(api, **kwargs)
        self.city = city
        self.page = page
        self.limit = limit

    async def load(self) -> IncidentPage:
        key = (self.city, self.page, self.limit)
        return await self._cached(key, lambda: self.api.incidents(self.city, self.page, self.limit))

    async def next_page(self) -> IncidentPage:
        current = await self.load()
        if current.has_next_page:
            self.page += 1
        return await self.load()

    async def previous_page(self) -> IncidentPage:
        if self.page > 0:
            self.page -= 1
        return await self.load()

    async def create(self, data: IncidentCreate) -> IncidentReport:
        incident = await self.api.create_incident(data)
        self.cache.clear()
        return incident

    async def resolve(self, incident_id: str) -> IncidentReport:
        incident = await self.api.resolve_incident(incident_id)
        self.cache.clear()
        return incident

    def on_change(self, event: dict) -> None:
        if event.get("eventType") == "INSERT" and self.notify:
            record = event.get("record") or {}
            self.notify(
                "New Safety Alert",
                f"{record.get('incidentType', 'Incident')} reported on {record.get('transitLine', 'transit')}",
            )


class _RideFeed(RealtimeFeed):
    async def _join(self, join: Callable[[str], Any], ride_id: str) -> RideMember:
        try:
            member = await join(ride_id)
        except RideFullError as e:
            if self.notify:
                self.notify("Ride is full", e.message)
            raise
        self.cache.clear()
        if self.notify:
            self.notify("Joined ride!", "You've successfully joined the group ride.")
        return member

    async def _leave(self, leave: Callable[[str], Any], ride_id: str) -> RideMember:
        member = await leave(ride_id)
        self.cache.clear()
        return member


class GroupRidesFeed(_RideFeed):
    tables = ("group_rides", "group_ride_members")

    def __init__(self, api: RailSaviorAPI, university: Optional[str] = None, transit_line: Optional[str] = None, **kwargs):
        super().__init__(api, **kwargs)
        self.university = university
        self.transit_line = transit_line

    async def load(self) -> list[GroupRide]:
        key = (self.university, self.transit_line)
        return await self._cached(key, lambda: self.api.rides(self.university, self.transit_line))

    async def create(self, data: RideCreate) -> GroupRide:
        ride = await self.api.create_ride(data)
        self.cache.clear()
        return ride

    async def join(self, ride_id: str) -> RideMember:
        return await self._join(self.api.join_ride, ride_id)

    async def leave(self, ride_id: str) -> RideMember:
        return await self._leave(self.api.leave_ride, ride_id)

    async def cancel(self, ride_id: str) -> GroupRide:
        ride = await self.api.cancel_ride(ride_id)
        self.cache.clear()
        return ride


class GeneralGroupRidesFeed(_RideFeed):
    tables = ("general_group_rides", "general_ride_members")

    def __init__(self, api: RailSaviorAPI, search: Optional[str] = None, **kwargs):
        super().__init__(api, **kwargs)
        self.search = search

    async def load(self) -> list[GeneralGroupRide]:
        return await self._cached(("search", self.search), lambda: self.api.general_rides(self.search))

    async def create(self, data: GeneralRideCreate) -> GeneralGroupRide:
        ride = await self.api.create_general_ride(data)
        self.cache.clear()
        return ride

    async def join(self, ride_id: str) -> RideMember:
        return await self._join(self.api.join_general_ride, ride_id)

    async def leave(self, ride_id: str) -> RideMember:
        return await self._leave(self.api.leave_general_ride, ride_id)

    async def cancel(self, ride_id: str) -> GeneralGroupRide:
        ride = await self.api.cancel_general_ride(ride_id)
        self.cache.clear()
        return ride


class MessagesFeed(RealtimeFeed):
    tables = ("group_messages",)

    def __init__(self, api: RailSaviorAPI, ride_id: str, page: int = 0, limit: int = 50, **kwargs):
        super().__init__(api, **kwargs)
        self.ride_id = ride_id
        self.page = page
        self.limit = limit

    def is_relevant(self, event: dict) -> bool:
        return super().is_relevant(event) and (event.get("record") or {}).get("rideId") == self.ride_id

    async def load(self) -> MessagePage:
        key = (self.page, self.limit)
        return await self._cached(key, lambda: self.api.messages(self.ride_id, self.page, self.limit))

    async def send(self, text: str) -> GroupMessage:
        message = await self.api.send_message(self.ride_id, text)
        self.cache.clear()
        return message
