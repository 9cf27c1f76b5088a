"""ballchasing.parser – JSON listings → :class:`~core.models.Group` / :class:`~core.models.Record`.

Only the fields the sweep engine needs are lifted out of the payloads (ids,
creation time, parent links and count hints); the complete JSON object rides
along in ``payload`` so nothing the API sends is lost on emission.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.infra.http import InvalidResponseError
from core.models import Group, Page, Record

logger = logging.getLogger(__name__)

PUBLIC = "public"


def parse_time(value: str) -> datetime:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_group(obj: Dict[str, Any], parent_id: Optional[str] = None) -> Group:
    creator = obj.get("creator") or {}
    return Group(
        id=obj["id"],
        name=obj.get("name") or "",
        parent_id=parent_id,
        creator_id=creator.get("steam_id"),
        direct_records=obj.get("direct_replays"),
        indirect_records=obj.get("indirect_replays"),
        payload=obj,
    )


def parse_replay(obj: Dict[str, Any]) -> Record:
    return Record(id=obj["id"], created_at=parse_time(obj["created"]), payload=obj)


def _page(payload: Any, parse_item) -> Page:
    if not isinstance(payload, dict):
        raise InvalidResponseError(f"expected a JSON object, got {type(payload).__name__}")
    try:
        items = [parse_item(obj) for obj in payload.get("list") or []]
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidResponseError(f"malformed listing item: {e!r}") from e
    return Page(items=items, next_cursor=payload.get("next") or None)


def group_page(payload: Any) -> Page:
    return _page(payload, parse_group)


def replay_page(payload: Any) -> Page:
    return _page(payload, parse_replay)


def is_ingestible(record: Record, caller_steam_id: Optional[str]) -> bool:
    """Public replays, or replays the caller uploaded themselves."""
    visibility = record.payload.get("visibility") or PUBLIC
    if visibility == PUBLIC:
        return True
    uploader = (record.payload.get("uploader") or {}).get("steam_id")
    if caller_steam_id is not None and uploader == caller_steam_id:
        return True
    logger.warning(
        "Skipping %s replay %s: not public and not uploaded by the caller (%s)",
        visibility,
        record.id,
        caller_steam_id,
    )
    return False
