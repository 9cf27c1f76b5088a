"""
Cursor pagination over one family of list endpoints.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional

from .infra.http import HttpClient
from .models import Page

logger = logging.getLogger(__name__)

PageParser = Callable[[Any], Page]


class PagedFetcher:
    """Lazily walks the pages of a listing, one rate-limited request per page.

    The server hands back a continuation cursor with every page. By default
    the cursor is an absolute URL (ballchasing's ``next``); when
    ``cursor_param`` is set it is sent as that query parameter against the
    original URL instead.

    When a ``min_created_at`` bound is given, items older than the bound are
    dropped and no further page is requested once a page contained one: the
    listing is ordered newest first, so everything after it is older too.
    """

    def __init__(
        self,
        http: HttpClient,
        parse_page: PageParser,
        *,
        cursor_param: Optional[str] = None,
    ) -> None:
        self._http = http
        self._parse_page = parse_page
        self._cursor_param = cursor_param

    def _next_request(
        self, url: str, params: Optional[Mapping[str, Any]], cursor: str
    ) -> tuple[str, Optional[Dict[str, Any]]]:
        if self._cursor_param is None:
            return cursor, None
        merged = dict(params or {})
        merged[self._cursor_param] = cursor
        return url, merged

    async def pages(
        self, url: str, params: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[Page]:
        """Yield raw pages until the server stops returning a cursor."""
        seen_cursors = set()
        next_url: Optional[str] = url
        next_params: Optional[Mapping[str, Any]] = params

        while next_url is not None:
            payload = await self._http.get_json(next_url, params=next_params)
            page = self._parse_page(payload)
            yield page

            cursor = page.next_cursor
            if not cursor:
                return
            if cursor in seen_cursors:
                logger.warning("Pagination for %s repeated cursor %s – stopping", url, cursor)
                return
            seen_cursors.add(cursor)
            next_url, next_params = self._next_request(url, params, cursor)

    async def iterate(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        min_created_at: Optional[datetime] = None,
    ) -> AsyncIterator[Any]:
        """Yield items across pages, honouring the optional time lower bound."""
        pages = self.pages(url, params)
        try:
            async for page in pages:
                reached_bound = False
                for item in page.items:
                    if min_created_at is not None and item.created_at < min_created_at:
                        reached_bound = True
                        continue
                    yield item
                if reached_bound:
                    logger.debug("Listing %s reached the time bound %s", url, min_created_at.isoformat())
                    return
        finally:
            await pages.aclose()
