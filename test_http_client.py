"""
Tests for the retrying, rate-limited HTTP client.
"""

import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest

from conftest import FakeClock, ScriptedTransport, make_http, ok, status
from core.infra.http import (
    FetchResponse,
    HttpClient,
    InvalidResponseError,
    NonRetryableStatusError,
    RetriesExhaustedError,
    parse_retry_after,
)
from core.infra.rate_limiter import TokenBucket

URL = "https://api.test/items"


def test_retries_429_then_succeeds():
    transport = ScriptedTransport({URL: [status(429), status(429), ok({"list": [1]})]})
    http = make_http(transport)

    body = asyncio.run(http.get_json(URL))

    assert body == {"list": [1]}
    assert len(transport.calls) == 3
    assert len(http.sleeps) == 2
    # A permit is taken for every attempt, retries included.
    assert http.limiter.acquired == 3


def test_backoff_grows_between_attempts():
    transport = ScriptedTransport({URL: [status(503), status(503), status(503), ok({})]})
    http = make_http(transport, base_delay=1.0, max_delay=60.0)

    asyncio.run(http.get_json(URL))

    first, second, third = http.sleeps
    assert 1.0 <= first <= 2.0
    assert 2.0 <= second <= 3.0
    assert 4.0 <= third <= 5.0


def test_retry_after_header_is_honoured():
    transport = ScriptedTransport({URL: [status(429, {"Retry-After": "7"}), ok({})]})
    http = make_http(transport)

    asyncio.run(http.get_json(URL))

    assert http.sleeps == [7.0]


def test_exhausted_retries_raise():
    transport = ScriptedTransport({URL: status(500)})
    http = make_http(transport, max_attempts=3)

    with pytest.raises(RetriesExhaustedError) as excinfo:
        asyncio.run(http.get_json(URL))

    assert len(transport.calls) == 3
    assert excinfo.value.url == URL


def test_client_error_fails_immediately():
    transport = ScriptedTransport({URL: status(401)})
    http = make_http(transport)

    with pytest.raises(NonRetryableStatusError) as excinfo:
        asyncio.run(http.get_json(URL))

    assert excinfo.value.status == 401
    assert len(transport.calls) == 1
    assert http.sleeps == []


def test_network_errors_are_retried():
    transport = ScriptedTransport(
        {URL: [aiohttp.ClientConnectionError("reset"), asyncio.TimeoutError(), ok({"a": 1})]}
    )
    http = make_http(transport)

    assert asyncio.run(http.get_json(URL)) == {"a": 1}
    assert len(transport.calls) == 3


def test_invalid_json_is_reported():
    transport = ScriptedTransport({URL: FetchResponse(status=200, body="<html>")})
    http = make_http(transport)

    with pytest.raises(InvalidResponseError):
        asyncio.run(http.get_json(URL))


def test_default_and_request_headers_are_merged():
    transport = ScriptedTransport({URL: ok({})})
    http = make_http(transport, default_headers={"Authorization": "token"})

    asyncio.run(http.get_json(URL, headers={"Accept": "application/json"}))

    _, _, headers = transport.calls[0]
    assert headers == {"Authorization": "token", "Accept": "application/json"}


def test_retry_waits_on_the_shared_limiter():
    clock = FakeClock()
    limiter = TokenBucket(2.0, capacity=1, clock=clock, sleep=clock.sleep)
    transport = ScriptedTransport({URL: [status(429), ok({})]})

    async def no_sleep(_):
        return None

    http = HttpClient(limiter=limiter, transport=transport, sleep=no_sleep)
    asyncio.run(http.get_json(URL))

    assert limiter.acquired == 2
    assert clock.sleeps == [pytest.approx(0.5)]


@pytest.mark.parametrize(
    "value, expected",
    [("5", 5.0), (None, None), ("", None), ("soon", None)],
)
def test_parse_retry_after(value, expected):
    assert parse_retry_after(value) == expected


def test_parse_retry_after_http_date_in_the_past():
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


def test_context_manager_closes_the_transport():
    transport = ScriptedTransport({URL: ok({})})
    transport.close = AsyncMock()

    async def run():
        async with make_http(transport) as http:
            await http.get_json(URL)

    asyncio.run(run())
    transport.close.assert_awaited_once()
