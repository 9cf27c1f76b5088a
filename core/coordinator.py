"""
SweepCoordinator – runs one full sweep from checkpoint to checkpoint.

State machine::

    idle -> starting -> walking -> finalizing -> idle      (success / degraded)
                        walking -> aborted    -> idle      (fatal error, cancellation)

The next checkpoint is the sweep's own *start* time, not the time it finished
and not the newest record seen. Records created while the sweep was running
are therefore picked up again by the next one; downstream dedup by ``id``
absorbs the overlap.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .checkpoint import CheckpointError
from .infra.http import FetchError
from .interfaces import CheckpointStore, GroupSource, Sink
from .models import (
    Group,
    ParentGroup,
    Record,
    SweepCheckpoint,
    SweepReport,
    SweepState,
    SweepStatus,
    utcnow,
)
from .walker import GroupTreeWalker, RootSelector

logger = logging.getLogger(__name__)


def build_document(record: Record, lineage: List[ParentGroup]) -> Dict[str, Any]:
    """Record payload plus the ``_meta.parent_groups`` lineage."""
    doc = dict(record.payload)
    doc.setdefault("id", record.id)
    meta = dict(doc.get("_meta") or {})
    meta["parent_groups"] = [p.model_dump() for p in lineage]
    doc["_meta"] = meta
    return doc


class SweepCoordinator:
    """Orchestrates one sweep: load checkpoint, walk, emit, advance checkpoint."""

    def __init__(
        self,
        source: GroupSource,
        sink: Sink,
        store: CheckpointStore,
        *,
        creator_id: str,
        root_group_id: Optional[str] = None,
        fan_out: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._sink = sink
        self._store = store
        self._creator_id = creator_id
        self._root_group_id = root_group_id
        self._walker = GroupTreeWalker(source, fan_out=fan_out)
        self._clock = clock
        self._emit_lock = asyncio.Lock()
        self._emitted = 0
        self.state = SweepState.IDLE

    def _enter(self, state: SweepState) -> None:
        logger.debug("Sweep state %s -> %s", self.state.value, state.value)
        self.state = state

    async def _load_checkpoint(self) -> Optional[SweepCheckpoint]:
        checkpoint = await self._store.load()
        if checkpoint is None:
            return None
        if checkpoint.creator_id is not None and checkpoint.creator_id != self._creator_id:
            logger.info(
                "Discarding checkpoint recorded for creator %s (now %s)",
                checkpoint.creator_id,
                self._creator_id,
            )
            return None
        return checkpoint

    def _root(self, creator_id: str) -> RootSelector:
        if self._root_group_id:
            return RootSelector(group=Group(id=self._root_group_id, name=self._root_group_id))
        return RootSelector(creator_id=creator_id)

    async def _emit(self, group: Group, lineage: List[ParentGroup], record: Record) -> None:
        document = build_document(record, lineage)
        async with self._emit_lock:
            await self._sink.emit(document)
            self._emitted += 1

    async def _on_group(self, group: Group, lineage: List[ParentGroup]) -> None:
        logger.debug(
            "Group %s done (depth %d, %d records)",
            group.id,
            len(lineage),
            len(group.direct_record_ids),
        )

    async def run(self) -> SweepReport:
        """Run one sweep; never raises except on cancellation."""
        if self.state is not SweepState.IDLE:
            raise RuntimeError(f"Sweep already in progress ({self.state.value})")

        self._emitted = 0
        sweep_start = self._clock()
        report = SweepReport(status=SweepStatus.ABORTED, started_at=sweep_start)

        try:
            self._enter(SweepState.STARTING)
            previous = await self._load_checkpoint()
            report.checkpoint = previous
            time_filter = previous.next_min_created_at if previous else None
            creator = await self._source.resolve_identity(self._creator_id)
            logger.info(
                "Starting sweep of %s for creator %s (created after %s)",
                self._source.name,
                creator,
                time_filter.isoformat() if time_filter else "the beginning",
            )

            self._enter(SweepState.WALKING)
            result = await self._walker.walk(
                self._root(creator), time_filter, self._on_group, self._emit
            )
            report.groups_visited = result.groups_visited
            report.skipped = result.failures

            self._enter(SweepState.FINALIZING)
            await self._sink.flush()
            next_min = sweep_start
            if time_filter is not None and time_filter > next_min:
                next_min = time_filter
            checkpoint = SweepCheckpoint(next_min_created_at=next_min, creator_id=self._creator_id)
            await self._store.save(checkpoint)

            report.checkpoint = checkpoint
            report.state = SweepState.FINALIZING
            report.status = SweepStatus.DEGRADED if report.skipped else SweepStatus.SUCCESS
        except asyncio.CancelledError:
            self._abort(report, "sweep cancelled")
            raise
        except (FetchError, CheckpointError) as e:
            self._abort(report, f"{type(e).__name__}: {e}")
        except Exception as e:  # noqa: BLE001
            logger.error("Sweep failed unexpectedly", exc_info=True)
            self._abort(report, f"{type(e).__name__}: {e}")
        finally:
            report.finished_at = self._clock()
            report.records_emitted = self._emitted
            self._report(report)
            self._enter(SweepState.IDLE)

        return report

    def _abort(self, report: SweepReport, reason: str) -> None:
        self._enter(SweepState.ABORTED)
        report.state = SweepState.ABORTED
        report.status = SweepStatus.ABORTED
        report.error = reason

    @staticmethod
    def _report(report: SweepReport) -> None:
        if report.status is SweepStatus.SUCCESS:
            logger.info(report.summary())
        elif report.status is SweepStatus.DEGRADED:
            logger.warning(report.summary())
            for failure in report.skipped:
                logger.warning("  skipped %s (%s): %s", failure.group_id, failure.group_name, failure.error)
        else:
            logger.error("%s – %s; checkpoint not advanced", report.summary(), report.error)
