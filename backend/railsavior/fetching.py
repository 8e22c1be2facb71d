"""Single request wrapper: timeout, bounded retries and exponential backoff.

Used by every agency adapter for its upstream call and by the client
package for calls into the RailSavior API.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from railsavior.errors import UpstreamHTTPError, UpstreamTimeoutError

logger = logging.getLogger("railsavior.fetching")

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


@dataclass(frozen=True)
class RequestPolicy:
    timeout: float = 10.0
    retries: int = 1
    backoff: float = 0.5  # seconds; doubled after each failed attempt
    retry_statuses: frozenset = field(default_factory=lambda: RETRYABLE_STATUSES)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return self.backoff * (2 ** (attempt - 1))


def redact(url: str, *secrets: Optional[str]) -> str:
    """Strip API keys out of a URL before it is logged."""
    for secret in secrets:
        if secret:
            url = url.replace(secret, "[REDACTED]")
    return url


async def send_with_policy(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: RequestPolicy,
    *,
    params: Optional[dict] = None,
    json: Any = None,
    headers: Optional[dict] = None,
    source: Optional[str] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> httpx.Response:
    """Send a request, retrying timeouts, transport errors and retryable statuses.

    Returns the last response (whatever its status) once it is not retryable
    or the retries are exhausted. Raises ``UpstreamTimeoutError`` or
    ``UpstreamHTTPError`` when no response could be obtained at all.
    """
    attempts = policy.retries + 1
    last_exc: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            resp = await client.request(
                method, url, params=params, json=json, headers=headers, timeout=policy.timeout
            )
        except httpx.TimeoutException as e:
            last_exc = e
            logger.warning(f"{source or 'request'} attempt {attempt}/{attempts} timed out")
        except httpx.TransportError as e:
            last_exc = e
            logger.warning(f"{source or 'request'} attempt {attempt}/{attempts} failed: {e}")
        else:
            if resp.status_code not in policy.retry_statuses or attempt == attempts:
                return resp
            logger.warning(
                f"{source or 'request'} attempt {attempt}/{attempts} got HTTP {resp.status_code}, retrying"
            )
            last_exc = None

        if attempt < attempts:
            await sleep(policy.delay_for(attempt))

    if isinstance(last_exc, httpx.TimeoutException):
        raise UpstreamTimeoutError(f"Request timed out after {attempts} attempt(s)", source)
    raise UpstreamHTTPError(f"Request failed after {attempts} attempt(s): {last_exc}", source)
