import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from railsavior import config
from railsavior.arrivals import finalize_arrivals
from railsavior.errors import (
    AdapterError,
    BadRequestError,
    NotConfiguredError,
    UpstreamHTTPError,
    UpstreamParseError,
)
from railsavior.fetching import redact, send_with_policy
from railsavior.models import ArrivalQuery, StandardArrival

logger = logging.getLogger("railsavior.adapters")


class AgencyAdapter:
    """One transit agency: fetch the vendor payload, then normalize it.

    Subclasses set the class attributes and implement ``fetch``. The mapping
    itself lives in a pure module-level ``normalize(payload, query, now)``
    function that the subclass exposes as ``normalize``.
    """

    agency_id: str = ""
    name: str = ""
    city: str = ""
    source: str = ""
    requires_key: bool = True
    max_results: Optional[int] = None
    metadata_actions: tuple[str, ...] = ()

    @property
    def configured(self) -> bool:
        return not self.requires_key or config.get_agency_key(self.agency_id) is not None

    def api_key(self) -> Optional[str]:
        key = config.get_agency_key(self.agency_id)
        if self.requires_key and not key:
            names = ", ".join(config.AGENCY_KEY_ENV.get(self.agency_id, ()))
            raise NotConfiguredError(f"{self.name} API key not configured (set {names})", self.source)
        return key

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        raise NotImplementedError

    @staticmethod
    def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
        raise NotImplementedError

    async def arrivals(
        self,
        query: ArrivalQuery,
        client: httpx.AsyncClient,
        now: Optional[datetime] = None,
    ) -> list[StandardArrival]:
        payload = await self.fetch(query, client)
        try:
            records = self.normalize(payload, query, now or datetime.now(timezone.utc))
        except AdapterError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"{self.source} payload did not match the expected schema: {e}")
            raise UpstreamParseError(f"Unexpected {self.name} response format: {e}", self.source)
        return finalize_arrivals(records, self.source, limit=self.max_results)

    async def metadata(self, query: ArrivalQuery, client: httpx.AsyncClient) -> dict:
        """Line/station catalogues for ``action="lines"`` / ``action="stations"``."""
        raise BadRequestError(
            f"{self.name} does not support action '{query.action}'", self.source
        )

    # --- helpers for subclasses ---

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        secret: Optional[str] = None,
    ) -> httpx.Response:
        logger.info(f"Fetching {self.source}: {redact(url, secret)}")
        resp = await send_with_policy(
            client,
            "GET",
            url,
            config.get_upstream_policy(),
            params=params,
            headers=headers,
            source=self.source,
        )
        if resp.status_code >= 400:
            logger.error(f"{self.source} API error: HTTP {resp.status_code}")
            raise UpstreamHTTPError(
                f"{self.name} API responded with status {resp.status_code}",
                self.source,
                upstream_status=resp.status_code,
            )
        return resp

    def _json(self, resp: httpx.Response) -> Any:
        try:
            # 511.org (and some others) prefix JSON bodies with a UTF-8 BOM
            return json.loads(resp.content.decode("utf-8-sig"))
        except ValueError as e:
            logger.error(f"{self.source} returned invalid JSON: {resp.text[:200]}")
            raise UpstreamParseError(f"{self.name} API returned invalid JSON: {e}", self.source)

    def _require_station(self, query: ArrivalQuery) -> str:
        if not query.station:
            raise BadRequestError(f"{self.name} arrivals require a station", self.source)
        return query.station.strip()
