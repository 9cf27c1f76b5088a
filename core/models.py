"""
Core data models for the sweep engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Group(BaseModel):
    """A node of the remote group tree."""
    id: str
    name: str = ""
    parent_id: Optional[str] = None
    creator_id: Optional[str] = None
    # Count hints from the listing; None means unknown.
    direct_records: Optional[int] = None
    indirect_records: Optional[int] = None
    child_group_ids: List[str] = Field(default_factory=list)
    direct_record_ids: Set[str] = Field(default_factory=set)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def may_have_children(self) -> bool:
        return self.indirect_records is None or self.indirect_records > 0

    @property
    def may_have_records(self) -> bool:
        return self.direct_records is None or self.direct_records > 0


class Record(BaseModel):
    """A leaf item; ``payload`` is passed through to the sink unmodified."""
    id: str
    created_at: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


class Page(BaseModel):
    """One page of a listing plus the cursor for the next one."""
    items: List[Any] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class ParentGroup(BaseModel):
    id: str
    name: str


class SweepCheckpoint(BaseModel):
    """Persisted lower bound for the next sweep's time filter."""
    next_min_created_at: Optional[datetime] = None
    creator_id: Optional[str] = None

    def to_blob(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_blob(cls, blob: str) -> Optional["SweepCheckpoint"]:
        if not blob or not blob.strip():
            return None
        return cls.model_validate_json(blob)


class SweepState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    WALKING = "walking"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


class SweepStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    ABORTED = "aborted"


class BranchFailure(BaseModel):
    """A branch skipped during a sweep because of a non-fatal fetch error."""
    group_id: str
    group_name: str = ""
    error: str


class SweepReport(BaseModel):
    """Outcome of one sweep, reported to the operator."""
    status: SweepStatus
    state: SweepState = SweepState.IDLE
    started_at: datetime
    finished_at: Optional[datetime] = None
    groups_visited: int = 0
    records_emitted: int = 0
    skipped: List[BranchFailure] = Field(default_factory=list)
    error: Optional[str] = None
    checkpoint: Optional[SweepCheckpoint] = None

    @property
    def branches_skipped(self) -> int:
        return len(self.skipped)

    def summary(self) -> str:
        return (
            f"sweep {self.status.value}: {self.groups_visited} groups visited, "
            f"{self.records_emitted} records emitted, "
            f"{self.branches_skipped} branches skipped"
        )
