import asyncio

import httpx
import pytest

from railsavior.errors import UpstreamHTTPError, UpstreamTimeoutError
from railsavior.fetching import RequestPolicy, redact, send_with_policy


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _send(handler, policy, sleep):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_with_policy(client, "GET", "https://upstream.test/feed", policy, source="TEST", sleep=sleep)

    return asyncio.run(run())


def test_retries_retryable_status_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503) if len(calls) == 1 else httpx.Response(200, json={"ok": True})

    sleep = FakeSleep()
    resp = _send(handler, RequestPolicy(retries=2, backoff=0.5), sleep)

    assert resp.status_code == 200
    assert len(calls) == 2
    assert sleep.delays == [0.5]


def test_non_retryable_status_is_returned_immediately():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404)

    resp = _send(handler, RequestPolicy(retries=3), FakeSleep())
    assert resp.status_code == 404
    assert len(calls) == 1


def test_exhausted_retries_return_last_response():
    sleep = FakeSleep()
    resp = _send(lambda request: httpx.Response(503), RequestPolicy(retries=2, backoff=1.0), sleep)
    assert resp.status_code == 503
    assert sleep.delays == [1.0, 2.0]


def test_timeouts_become_upstream_timeout():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(UpstreamTimeoutError) as exc_info:
        _send(handler, RequestPolicy(retries=1), FakeSleep())
    assert exc_info.value.kind == "upstream_timeout"
    assert exc_info.value.source == "TEST"


def test_transport_errors_become_upstream_http():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamHTTPError):
        _send(handler, RequestPolicy(retries=0), FakeSleep())


def test_redact():
    url = "https://api.test/arrivals?key=s3cret&stop=1"
    assert redact(url, "s3cret") == "https://api.test/arrivals?key=[REDACTED]&stop=1"
    assert redact(url, None) == url
