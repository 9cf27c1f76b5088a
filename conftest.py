"""
Shared fakes and fixtures for the test suite.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import pytest

from core.checkpoint import CheckpointError
from core.infra.http import FetchResponse, HttpClient
from core.infra.rate_limiter import TokenBucket
from core.interfaces import CheckpointStore, GroupSource, Sink
from core.models import Group, Record, SweepCheckpoint

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    """A fixed point in time, ``seconds`` after a test epoch."""
    return EPOCH + timedelta(seconds=seconds)


def route_key(url: str, params: Optional[Dict[str, Any]] = None) -> str:
    if not params:
        return url
    return url + "?" + urlencode(sorted((k, str(v)) for k, v in params.items()))


def ok(payload: Any, headers: Optional[Dict[str, str]] = None) -> FetchResponse:
    return FetchResponse(status=200, body=json.dumps(payload), headers=headers or {})


def status(code: int, headers: Optional[Dict[str, str]] = None) -> FetchResponse:
    return FetchResponse(status=code, body=f"status {code}", headers=headers or {})


class ScriptedTransport:
    """Replays canned responses per URL (+ query).

    Each route holds a list of responses consumed in order; the last one
    repeats. An entry may be an exception instance, which is raised instead.
    Unknown routes answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, List[Any]] = {}
        self.calls: List[tuple] = []
        for key, responses in (routes or {}).items():
            self.add(key, *(responses if isinstance(responses, list) else [responses]))

    def add(self, key: str, *responses: Any) -> None:
        self.routes[key] = list(responses)

    def count(self, key: str) -> int:
        return sum(1 for url, params, _ in self.calls if route_key(url, params) == key)

    async def fetch(self, url, params, headers) -> FetchResponse:
        params = dict(params or {})
        self.calls.append((url, params, dict(headers)))
        await asyncio.sleep(0)
        queue = self.routes.get(route_key(url, params))
        if not queue:
            return status(404)
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class WallClock:
    """Settable UTC clock for the coordinator."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_http(transport: ScriptedTransport, *, max_attempts: int = 5, **kwargs) -> HttpClient:
    sleeps: List[float] = []

    async def no_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    client = HttpClient(
        limiter=TokenBucket(1000.0, capacity=100),
        transport=transport,
        max_attempts=max_attempts,
        sleep=no_sleep,
        **kwargs,
    )
    client.sleeps = sleeps
    return client


class FakeSource(GroupSource):
    """In-memory group tree.

    ``children`` maps a group id (or the creator id for top-level groups) to
    its child ids; ``records`` maps a group id to ``(record_id, t)`` pairs.
    ``failures`` maps ``"children:<id>"`` / ``"records:<id>"`` / ``"root"`` to
    an exception raised by that listing.
    """

    name = "fake"

    def __init__(
        self,
        children: Dict[str, List[str]],
        records: Optional[Dict[str, List[tuple]]] = None,
        *,
        failures: Optional[Dict[str, BaseException]] = None,
        hints: Optional[Dict[str, tuple]] = None,
        delay: float = 0.0,
    ):
        self.children = children
        self.records = records or {}
        self.failures = failures or {}
        self.hints = hints or {}
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def _group(self, group_id: str) -> Group:
        direct, indirect = self.hints.get(group_id, (None, None))
        return Group(id=group_id, name=f"name-{group_id}", direct_records=direct, indirect_records=indirect)

    async def _enter(self, call: str) -> None:
        self.calls.append(call)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if call in self.failures:
            raise self.failures[call]

    async def list_root_groups(self, creator_id):
        await self._enter("root")
        for group_id in self.children.get(creator_id, []):
            yield self._group(group_id)

    async def list_child_groups(self, group):
        await self._enter(f"children:{group.id}")
        for group_id in self.children.get(group.id, []):
            yield self._group(group_id)

    async def list_records(self, group, min_created_at):
        await self._enter(f"records:{group.id}")
        rows = sorted(self.records.get(group.id, []), key=lambda r: r[1], reverse=True)
        for record_id, t in rows:
            created = ts(t)
            if min_created_at is not None and created < min_created_at:
                break
            yield Record(id=record_id, created_at=created, payload={"id": record_id, "t": t})


class MemorySink(Sink):
    name = "memory"

    def __init__(self, fail_on: Optional[str] = None):
        self.documents: List[Dict[str, Any]] = []
        self.flushes = 0
        self.fail_on = fail_on

    @property
    def ids(self) -> List[str]:
        return [d["id"] for d in self.documents]

    async def emit(self, document):
        if document["id"] == self.fail_on:
            raise OSError("sink is full")
        self.documents.append(document)

    async def flush(self):
        self.flushes += 1


class MemoryStore(CheckpointStore):
    def __init__(self, checkpoint: Optional[SweepCheckpoint] = None, *, fail_save: bool = False):
        self.checkpoint = checkpoint
        self.saves: List[SweepCheckpoint] = []
        self.fail_save = fail_save

    async def load(self):
        return self.checkpoint

    async def save(self, checkpoint):
        if self.fail_save:
            raise CheckpointError("disk full")
        self.saves.append(checkpoint)
        self.checkpoint = checkpoint


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
