"""Async HTTP client for the RailSavior API."""

import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from railsavior.errors import AdapterError
from railsavior.fetching import RequestPolicy, send_with_policy
from railsavior.models import (
    ArrivalsResponse,
    BackupAck,
    EmergencyRequest,
    EmergencyResponse,
    GeneralGroupRide,
    GeneralRideCreate,
    GroupMessage,
    GroupRide,
    IncidentCreate,
    IncidentPage,
    IncidentReport,
    MessageCreate,
    MessagePage,
    Profile,
    ProfileUpdate,
    RideCreate,
    RideMember,
)

logger = logging.getLogger("railsavior.client")

# SOS writes are never retried automatically; the failsafe reports failure instead.
NO_RETRY = RequestPolicy(timeout=10.0, retries=0)


class RailSaviorAPIError(Exception):
    def __init__(self, status: Optional[int], kind: str, message: str):
        super().__init__(message)
        self.status = status
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.message} ({self.kind}, HTTP {self.status})" if self.status else f"{self.message} ({self.kind})"


class RideFullError(RailSaviorAPIError):
    """A join was rejected because the ride has no spots left."""


def _error_from_response(resp: httpx.Response) -> RailSaviorAPIError:
    kind, message = "http_error", f"HTTP {resp.status_code}"
    try:
        body = resp.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        if isinstance(body.get("error"), dict):
            # arrivals error envelope
            kind = body["error"].get("kind", kind)
            message = body["error"].get("message", message)
        elif isinstance(body.get("detail"), dict):
            kind = body["detail"].get("kind", kind)
            message = body["detail"].get("message", message)
        elif isinstance(body.get("detail"), str):
            message = body["detail"]
        elif isinstance(body.get("detail"), list):
            kind = "validation_error"
            message = "; ".join(str(err.get("msg")) for err in body["detail"])
        elif body.get("message"):
            message = body["message"]

    if resp.status_code == 401:
        kind = "unauthenticated"
    cls = RideFullError if kind == "ride_full" else RailSaviorAPIError
    return cls(resp.status_code, kind, message)


def _validate(model: type[BaseModel], payload: Any):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Unexpected {model.__name__} payload: {e.error_count()} validation errors")
        raise RailSaviorAPIError(None, "bad_response", f"Unexpected {model.__name__} response from the server")


class RailSaviorAPI:
    """Thin typed wrapper over the REST endpoints.

    The caller identity is sent with every request in the headers the auth
    gateway would set. Pass ``transport`` (e.g. ``httpx.MockTransport`` or an
    ``httpx.ASGITransport``) to talk to something other than the network.
    """

    def __init__(
        self,
        base_url: str,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        policy: RequestPolicy = RequestPolicy(),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.policy = policy
        headers = {}
        if user_id:
            headers["X-User-Id"] = user_id
        if role:
            headers["X-User-Role"] = role
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        policy: Optional[RequestPolicy] = None,
    ) -> Any:
        try:
            resp = await send_with_policy(
                self._client,
                method,
                f"/api{path}",
                policy or self.policy,
                params=params,
                json=json,
                source="RailSavior API",
            )
        except AdapterError as e:
            raise RailSaviorAPIError(None, e.kind, e.message)

        if resp.status_code >= 400:
            error = _error_from_response(resp)
            logger.warning(f"{method} {path} failed: {error}")
            raise error
        try:
            return resp.json()
        except ValueError:
            logger.warning(f"{method} {path} returned a non-JSON body (HTTP {resp.status_code})")
            raise RailSaviorAPIError(resp.status_code, "bad_response", "Server returned an unreadable response")

    def realtime_url(self, table: str) -> str:
        scheme_split = self.base_url.split("://", 1)
        scheme = "wss" if scheme_split[0] == "https" else "ws"
        return f"{scheme}://{scheme_split[-1]}/api/realtime/{table}"

    # --- arrivals ---

    async def arrivals(self, agency: str, query: Optional[dict] = None, policy: Optional[RequestPolicy] = None) -> ArrivalsResponse:
        payload = await self.request("POST", f"/arrivals/{agency}", json=query or {}, policy=policy)
        return _validate(ArrivalsResponse, payload)

    async def agency_metadata(self, agency: str, action: str, line: Optional[str] = None) -> dict:
        query = {"action": action}
        if line:
            query["line"] = line
        return await self.request("POST", f"/arrivals/{agency}", json=query)

    # --- incidents ---

    async def incidents(self, city: Optional[str] = None, page: int = 0, limit: int = 10) -> IncidentPage:
        params = {"page": page, "limit": limit}
        if city:
            params["city"] = city
        return _validate(IncidentPage, await self.request("GET", "/incidents", params=params))

    async def create_incident(self, data: IncidentCreate) -> IncidentReport:
        payload = await self.request("POST", "/incidents", json=data.model_dump(by_alias=True, mode="json", exclude_none=True))
        return _validate(IncidentReport, payload)

    async def resolve_incident(self, incident_id: str) -> IncidentReport:
        return _validate(IncidentReport, await self.request("POST", f"/incidents/{incident_id}/resolve"))

    # --- emergency ---

    async def emergency(self, request: EmergencyRequest) -> EmergencyResponse:
        payload = await self.request(
            "POST", "/emergency", json=request.model_dump(by_alias=True, mode="json"), policy=NO_RETRY
        )
        return _validate(EmergencyResponse, payload)

    async def emergency_backup(self, request: EmergencyRequest) -> BackupAck:
        payload = await self.request(
            "POST", "/emergency-backup", json=request.model_dump(by_alias=True, mode="json"), policy=NO_RETRY
        )
        return _validate(BackupAck, payload)

    # --- rides ---

    async def rides(self, university: Optional[str] = None, transit_line: Optional[str] = None) -> list[GroupRide]:
        params = {k: v for k, v in (("university", university), ("transitLine", transit_line)) if v}
        return [_validate(GroupRide, r) for r in await self.request("GET", "/rides", params=params)]

    async def create_ride(self, data: RideCreate) -> GroupRide:
        payload = await self.request("POST", "/rides", json=data.model_dump(by_alias=True, mode="json", exclude_none=True))
        return _validate(GroupRide, payload)

    async def join_ride(self, ride_id: str) -> RideMember:
        return _validate(RideMember, await self.request("POST", f"/rides/{ride_id}/join"))

    async def leave_ride(self, ride_id: str) -> RideMember:
        return _validate(RideMember, await self.request("POST", f"/rides/{ride_id}/leave"))

    async def cancel_ride(self, ride_id: str) -> GroupRide:
        return _validate(GroupRide, await self.request("DELETE", f"/rides/{ride_id}"))

    async def general_rides(self, search: Optional[str] = None) -> list[GeneralGroupRide]:
        params = {"search": search} if search else None
        return [_validate(GeneralGroupRide, r) for r in await self.request("GET", "/general-rides", params=params)]

    async def create_general_ride(self, data: GeneralRideCreate) -> GeneralGroupRide:
        payload = await self.request(
            "POST", "/general-rides", json=data.model_dump(by_alias=True, mode="json", exclude_none=True)
        )
        return _validate(GeneralGroupRide, payload)

    async def join_general_ride(self, ride_id: str) -> RideMember:
        return _validate(RideMember, await self.request("POST", f"/general-rides/{ride_id}/join"))

    async def leave_general_ride(self, ride_id: str) -> RideMember:
        return _validate(RideMember, await self.request("POST", f"/general-rides/{ride_id}/leave"))

    async def cancel_general_ride(self, ride_id: str) -> GeneralGroupRide:
        return _validate(GeneralGroupRide, await self.request("DELETE", f"/general-rides/{ride_id}"))

    # --- messages ---

    async def messages(self, ride_id: str, page: int = 0, limit: int = 50) -> MessagePage:
        payload = await self.request("GET", f"/rides/{ride_id}/messages", params={"page": page, "limit": limit})
        return _validate(MessagePage, payload)

    async def send_message(self, ride_id: str, text: str, message_type: str = "text") -> GroupMessage:
        data = MessageCreate(message_text=text, message_type=message_type)
        payload = await self.request("POST", f"/rides/{ride_id}/messages", json=data.model_dump(by_alias=True))
        return _validate(GroupMessage, payload)

    # --- profiles ---

    async def profile(self, user_id: str) -> Profile:
        return _validate(Profile, await self.request("GET", f"/profiles/{user_id}"))

    async def update_profile(self, user_id: str, data: ProfileUpdate) -> Profile:
        payload = await self.request(
            "PUT", f"/profiles/{user_id}", json=data.model_dump(by_alias=True, mode="json", exclude_unset=True)
        )
        return _validate(Profile, payload)
