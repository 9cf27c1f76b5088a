"""ballchasing.fetcher – :class:`~core.interfaces.GroupSource` for ballchasing.com.

Endpoints used
--------------
* ``GET /``                 – ping; returns the token owner's ``steam_id``
* ``GET /groups``           – ``creator=<id>`` for top-level groups, ``group=<id>`` for children
* ``GET /replays``          – a group's replays, newest upload first, ``created-after`` filter
* ``GET /replays/<id>``     – the full replay document that gets emitted

Every call goes through the shared :class:`~core.infra.http.HttpClient`, so
all of them draw from the same token bucket and share the retry policy.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from core.config import ConnectorConfig
from core.infra.http import HttpClient, Transport
from core.infra.rate_limiter import TokenBucket
from core.interfaces import GroupSource
from core.models import Group, Record
from core.pager import PagedFetcher

from .parser import format_time, group_page, is_ingestible, replay_page

logger = logging.getLogger(__name__)

__all__ = ["BallchasingSource", "API_ROOT"]

API_ROOT = "https://ballchasing.com/api"
ME = "me"


class BallchasingSource(GroupSource):
    """Lists groups and replays of a ballchasing.com creator."""

    name = "ballchasing"

    def __init__(
        self,
        *,
        http: HttpClient,
        base_url: str = API_ROOT,
        fetch_details: bool = True,
        page_size: int = 200,
    ) -> None:
        self._http = http
        self._base = base_url.rstrip("/")
        self._fetch_details = fetch_details
        self._page_size = page_size
        self._groups = PagedFetcher(http, group_page)
        self._replays = PagedFetcher(http, replay_page)
        self.caller_steam_id: Optional[str] = None

    @classmethod
    def from_config(
        cls, config: ConnectorConfig, transport: Optional[Transport] = None
    ) -> "BallchasingSource":
        limiter = TokenBucket(
            config.rate_limit.requests_per_second, capacity=config.rate_limit.burst
        )
        http = HttpClient(
            limiter=limiter,
            transport=transport,
            max_attempts=config.retries.max_attempts,
            base_delay=config.retries.base_delay,
            max_delay=config.retries.max_delay,
            default_headers={"Authorization": config.endpoint.auth_token},
        )
        return cls(
            http=http,
            base_url=config.endpoint.base_url,
            fetch_details=config.sweep.fetch_details,
            page_size=config.sweep.page_size,
        )

    def _url(self, rel_path: str) -> str:
        return f"{self._base}/{rel_path}"

    # ------------------------------------------------------------------- #
    async def ping(self) -> Dict[str, Any]:
        """GETs the api root to test authentication."""
        return await self._http.get_json(self._url(""))

    async def resolve_identity(self, creator_id: str) -> str:
        response = await self.ping()
        self.caller_steam_id = response.get("steam_id")
        logger.info("Authenticated to ballchasing as %s (%s)", response.get("name"), self.caller_steam_id)
        if creator_id == ME:
            if not self.caller_steam_id:
                raise ValueError("ping response did not include a steam_id to resolve 'me'")
            return self.caller_steam_id
        return creator_id

    # ------------------------------------------------------------------- #
    async def list_root_groups(self, creator_id: str) -> AsyncIterator[Group]:
        async for group in self._groups.iterate(self._url("groups"), {"creator": creator_id}):
            yield group

    async def list_child_groups(self, group: Group) -> AsyncIterator[Group]:
        async for child in self._groups.iterate(self._url("groups"), {"group": group.id}):
            child.parent_id = group.id
            yield child

    async def list_records(
        self, group: Group, min_created_at: Optional[datetime]
    ) -> AsyncIterator[Record]:
        params: Dict[str, Any] = {
            "group": group.id,
            "sort-by": "upload-date",
            "sort-dir": "desc",
            "count": self._page_size,
        }
        if min_created_at is not None:
            params["created-after"] = format_time(min_created_at)

        async for summary in self._replays.iterate(self._url("replays"), params, min_created_at):
            if not is_ingestible(summary, self.caller_steam_id):
                continue
            if not self._fetch_details:
                yield summary
                continue
            document = await self.fetch_replay(summary.id)
            yield Record(id=summary.id, created_at=summary.created_at, payload=document)

    async def fetch_replay(self, replay_id: str) -> Dict[str, Any]:
        return await self._http.get_json(self._url(f"replays/{replay_id}"))

    async def close(self) -> None:
        await self._http.close()
