"""
http.py – Async HTTP client built on *aiohttp* with a shared rate limiter,
          transparent 429 / 5xx back-off and per-instance default headers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

import aiohttp

from .rate_limiter import TokenBucket

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Base class for failures talking to the remote API."""

    def __init__(self, message: str, *, url: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class RetriesExhaustedError(FetchError):
    """A transient failure (429, 5xx, network) persisted past the retry budget."""


class NonRetryableStatusError(FetchError):
    """The server rejected the request (4xx other than 429); retrying cannot help."""


class InvalidResponseError(FetchError):
    """The server answered 2xx with a body that is not the JSON we expect."""


@dataclass
class FetchResponse:
    """Status, body and rate-limit hints of one HTTP exchange."""
    status: int
    body: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def retry_after(self) -> Optional[float]:
        return parse_retry_after(self.headers.get("Retry-After"))


class Transport(Protocol):
    async def fetch(
        self,
        url: str,
        params: Optional[Mapping[str, Any]],
        headers: Mapping[str, str],
    ) -> FetchResponse:
        ...


def parse_retry_after(header_val: Optional[str]) -> Optional[float]:
    """Return seconds given a Retry-After header value."""
    if not header_val:
        return None
    header_val = header_val.strip()
    # seconds
    if header_val.isdigit():
        return float(header_val)
    # HTTP-date
    try:
        retry_at = parsedate_to_datetime(header_val).timestamp()
    except (TypeError, ValueError):
        return None
    return max(0.0, retry_at - time.time())


class AiohttpTransport:
    """Single-shot GET over a lazily created *aiohttp.ClientSession*."""

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ) -> None:
        self._external_session = session
        self._timeout = timeout
        self._own_session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def fetch(
        self,
        url: str,
        params: Optional[Mapping[str, Any]],
        headers: Mapping[str, str],
    ) -> FetchResponse:
        session = await self._ensure_session()
        async with session.get(url, params=params, headers=dict(headers)) as resp:
            body = await resp.text()
            return FetchResponse(status=resp.status, body=body, headers=dict(resp.headers))

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None


class HttpClient:
    """
    Thin layer over a :class:`Transport` adding:

    * a permit from the shared :class:`TokenBucket` before *every* attempt
    * global & per-request headers (keeps auth in one place)
    * exponential back-off **with jitter** for 429 / 5xx / network errors
    * transparent parsing of *Retry-After* header
    * immediate failure on any other 4xx
    """

    def __init__(
        self,
        *,
        limiter: TokenBucket,
        transport: Optional[Transport] = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        default_headers: Optional[Mapping[str, str]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._limiter = limiter
        self._transport = transport or AiohttpTransport()
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._default_headers: Dict[str, str] = dict(default_headers or {})
        self._sleep = sleep or asyncio.sleep

    # ---------------------------------------------- #
    # Async context-manager
    async def __aenter__(self) -> "HttpClient":  # noqa: D401
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        await self.close()

    async def close(self) -> None:
        close = getattr(self._transport, "close", None)
        if close is not None:
            await close()

    @property
    def limiter(self) -> TokenBucket:
        return self._limiter

    # ---------------------------------------------- #
    # Internal helpers
    @staticmethod
    def _is_retryable(status: int) -> bool:
        return status == 429 or 500 <= status < 600

    def _merge_headers(self, extra: Mapping[str, str] | None) -> Dict[str, str]:
        merged: Dict[str, str] = {**self._default_headers}
        if extra:
            merged.update(extra)
        return merged

    def _backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return min(retry_after, self._max_delay)
        exponential = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
        jitter = random.uniform(0, self._base_delay)
        return exponential + jitter

    async def _request(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> FetchResponse:
        """GET with rate limiting and retries; returns the first 2xx response."""
        merged = self._merge_headers(headers)
        last_error = ""

        for attempt in range(1, self._max_attempts + 1):
            await self._limiter.acquire()
            retry_after: Optional[float] = None
            try:
                resp = await self._transport.fetch(url, params, merged)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if 200 <= resp.status < 300:
                    return resp
                if not self._is_retryable(resp.status):
                    logger.error("GET %s rejected with status %d", url, resp.status)
                    raise NonRetryableStatusError(
                        f"GET {url} returned {resp.status}: {resp.body[:200]}",
                        url=url,
                        status=resp.status,
                    )
                last_error = f"retryable status {resp.status}"
                retry_after = resp.retry_after

            # final attempt – give up
            if attempt == self._max_attempts:
                logger.error("GET %s failed after %d attempts: %s", url, attempt, last_error)
                raise RetriesExhaustedError(
                    f"GET {url} failed after {attempt} attempts: {last_error}",
                    url=url,
                )

            sleep_seconds = self._backoff(attempt, retry_after)
            logger.warning(
                "GET %s failed (attempt %d/%d – will retry in %.1fs): %s",
                url,
                attempt,
                self._max_attempts,
                sleep_seconds,
                last_error,
            )
            await self._sleep(sleep_seconds)

        # Should never hit here
        raise RuntimeError("Unreachable retry loop")

    # ---------------------------------------------- #
    # Public helpers
    async def get_json(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        resp = await self._request(url, params=params, headers=headers)
        try:
            return json.loads(resp.body) if resp.body else {}
        except ValueError as e:
            raise InvalidResponseError(f"GET {url} returned invalid JSON: {e}", url=url) from e

