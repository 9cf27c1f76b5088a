"""
Breadth-first walk of a remote group tree with bounded fan-out.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from .infra.http import FetchError, NonRetryableStatusError
from .interfaces import GroupSource
from .models import BranchFailure, Group, ParentGroup, Record

logger = logging.getLogger(__name__)

VisitGroup = Callable[[Group, List[ParentGroup]], Awaitable[None]]
VisitRecord = Callable[[Group, List[ParentGroup], Record], Awaitable[None]]

WorkItem = Tuple[Group, List[ParentGroup]]


@dataclass
class RootSelector:
    """Where a walk starts: every group of a creator, or one known group."""
    creator_id: Optional[str] = None
    group: Optional[Group] = None

    def __post_init__(self) -> None:
        if (self.creator_id is None) == (self.group is None):
            raise ValueError("RootSelector needs exactly one of creator_id or group")


@dataclass
class WalkResult:
    groups_visited: int = 0
    failures: List[BranchFailure] = field(default_factory=list)


class GroupTreeWalker:
    """Visits every group reachable from a root and forwards its records.

    Pending groups live on an explicit queue drained by ``fan_out`` worker
    tasks, so tree depth never turns into call-stack depth. A transient fetch
    failure skips the group it happened in together with its subtree; a
    non-retryable one (bad credentials, malformed request) stops the walk.
    """

    def __init__(self, source: GroupSource, *, fan_out: int = 4) -> None:
        if fan_out < 1:
            raise ValueError("fan_out must be at least 1")
        self._source = source
        self._fan_out = fan_out

    async def walk(
        self,
        root: RootSelector,
        time_filter: Optional[datetime],
        visit_group: Optional[VisitGroup],
        visit_records: VisitRecord,
    ) -> WalkResult:
        result = WalkResult()
        queue: "asyncio.Queue[WorkItem]" = asyncio.Queue()

        # Errors while listing the root propagate as-is and end the walk.
        if root.group is not None:
            await self._visit(root.group, [], queue, time_filter, visit_group, visit_records)
            result.groups_visited += 1
        else:
            async for group in self._source.list_root_groups(root.creator_id):
                queue.put_nowait((group, []))
            logger.info("Found %d top-level groups for creator %s", queue.qsize(), root.creator_id)

        if queue.empty():
            return result

        workers = [
            asyncio.create_task(
                self._worker(queue, time_filter, visit_group, visit_records, result),
                name=f"walker-{i}",
            )
            for i in range(self._fan_out)
        ]
        drained = asyncio.create_task(queue.join(), name="walker-drained")
        try:
            await asyncio.wait([drained, *workers], return_when=asyncio.FIRST_COMPLETED)
            # Workers only finish early by raising.
            for worker in workers:
                if worker.done() and not worker.cancelled() and worker.exception() is not None:
                    raise worker.exception()
        finally:
            drained.cancel()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(drained, *workers, return_exceptions=True)

        return result

    async def _worker(
        self,
        queue: "asyncio.Queue[WorkItem]",
        time_filter: Optional[datetime],
        visit_group: Optional[VisitGroup],
        visit_records: VisitRecord,
        result: WalkResult,
    ) -> None:
        while True:
            group, ancestors = await queue.get()
            try:
                await self._visit(group, ancestors, queue, time_filter, visit_group, visit_records)
                result.groups_visited += 1
            except NonRetryableStatusError:
                raise
            except FetchError as e:
                result.failures.append(
                    BranchFailure(group_id=group.id, group_name=group.name, error=str(e))
                )
                logger.warning("Skipping branch %s (%s): %s", group.id, group.name, e)
            finally:
                queue.task_done()

    async def _visit(
        self,
        group: Group,
        ancestors: List[ParentGroup],
        queue: "asyncio.Queue[WorkItem]",
        time_filter: Optional[datetime],
        visit_group: Optional[VisitGroup],
        visit_records: VisitRecord,
    ) -> None:
        lineage = [*ancestors, ParentGroup(id=group.id, name=group.name)]
        children: List[Group] = []

        if group.may_have_children:
            async for child in self._source.list_child_groups(group):
                if child.parent_id is None:
                    child.parent_id = group.id
                group.child_group_ids.append(child.id)
                children.append(child)

        if group.may_have_records:
            async for record in self._source.list_records(group, time_filter):
                await visit_records(group, lineage, record)
                group.direct_record_ids.add(record.id)

        # A group that failed part way never queues its children.
        for child in children:
            queue.put_nowait((child, lineage))

        logger.debug(
            "Visited group %s: %d children, %d records",
            group.id,
            len(group.child_group_ids),
            len(group.direct_record_ids),
        )
        if visit_group is not None:
            await visit_group(group, lineage)
