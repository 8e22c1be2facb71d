"""Press-and-hold emergency SOS."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from railsavior.client.api import RailSaviorAPI, RailSaviorAPIError
from railsavior.models import EmergencyRequest, EmergencyResponse, Location

logger = logging.getLogger("railsavior.client.failsafe")

HOLD_SECONDS = 1.0
LOCATION_TIMEOUT = 5.0
DEFAULT_DETAILS = "Emergency assistance needed"
FAILURE_MESSAGE = "Failed to send emergency report - call emergency services directly"

LocationProvider = Callable[[], Awaitable[Location]]
Notify = Callable[[str, str], None]


class FailsafeState(str, Enum):
    IDLE = "idle"
    HOLDING = "holding"
    ACTIVATING = "activating"
    DONE = "done"
    ERROR = "error"


class EmergencyFailsafe:
    """idle -> holding -> activating -> done | error.

    ``press()`` starts the hold timer; ``release()`` before it fires goes back
    to idle without sending anything. Once activating, the report is sent even
    if the button is released.
    """

    def __init__(
        self,
        api: RailSaviorAPI,
        location_provider: Optional[LocationProvider] = None,
        notify: Optional[Notify] = None,
        hold_seconds: float = HOLD_SECONDS,
        location_timeout: float = LOCATION_TIMEOUT,
    ):
        self.api = api
        self.location_provider = location_provider
        self.notify = notify
        self.hold_seconds = hold_seconds
        self.location_timeout = location_timeout
        self.state = FailsafeState.IDLE
        self.error: Optional[str] = None
        self.result: Optional[EmergencyResponse] = None
        self._timer: Optional[asyncio.Task] = None

    def press(self, details: str = DEFAULT_DETAILS) -> None:
        if self.state in (FailsafeState.HOLDING, FailsafeState.ACTIVATING):
            return
        self.state = FailsafeState.HOLDING
        self.error = None
        self.result = None
        self._timer = asyncio.create_task(self._hold(details))

    def release(self) -> None:
        if self.state == FailsafeState.HOLDING and self._timer is not None:
            self._timer.cancel()
            self.state = FailsafeState.IDLE

    async def wait(self) -> Optional[EmergencyResponse]:
        """Wait for the current hold/activation to finish."""
        if self._timer is not None:
            await asyncio.gather(self._timer, return_exceptions=True)
        return self.result

    async def aclose(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
        if self.state == FailsafeState.HOLDING:
            self.state = FailsafeState.IDLE
        elif self.state == FailsafeState.ACTIVATING:
            # shut down before the server confirmed the report
            logger.error("Failsafe closed while an SOS was still being sent")
            self.state = FailsafeState.ERROR
            self.error = FAILURE_MESSAGE

    async def _hold(self, details: str) -> None:
        await asyncio.sleep(self.hold_seconds)
        await self.activate(details)

    async def _locate(self) -> Optional[Location]:
        if self.location_provider is None:
            return None
        try:
            return await asyncio.wait_for(self.location_provider(), self.location_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No location fix within {self.location_timeout}s; sending SOS without coordinates")
        except Exception as e:
            logger.warning(f"Location provider failed ({e}); sending SOS without coordinates")
        return None

    def _notify(self, title: str, message: str) -> None:
        if self.notify:
            self.notify(title, message)

    async def activate(self, details: str = DEFAULT_DETAILS) -> Optional[EmergencyResponse]:
        self.state = FailsafeState.ACTIVATING
        self._notify("SOS ACTIVATED", "Emergency services are being notified...")

        location = await self._locate()
        if location is None:
            details = f"{details} (Location unavailable)"

        request = EmergencyRequest(
            report_id=f"sos-{int(time.time() * 1000)}",
            type="sos",
            details=details,
            location=location,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        try:
            response = await self.api.emergency(request)
        except RailSaviorAPIError as e:
            logger.error(f"Emergency report {request.report_id} failed: {e}")
            self.state = FailsafeState.ERROR
            self.error = FAILURE_MESSAGE
            self._notify("Emergency Report Failed", FAILURE_MESSAGE)
            return None

        try:
            await self.api.emergency_backup(request)
        except RailSaviorAPIError as e:
            logger.warning(f"Emergency backup for {request.report_id} failed: {e}")

        self.result = response
        self.state = FailsafeState.DONE
        self._notify("Emergency Report Sent", f"SOS incident filed in {response.city_name} - {response.transit_line}")
        return response
