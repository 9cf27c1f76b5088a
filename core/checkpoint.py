"""
Checkpoint stores: where the sweep's lower time bound survives between runs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import aiosqlite
from pydantic import ValidationError

from .infra.db import Database
from .interfaces import CheckpointStore
from .models import SweepCheckpoint

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Raised when the checkpoint cannot be read or durably written."""
    pass


class CheckpointWriter(Protocol):
    async def commit(self, blob: str) -> None:
        ...


class SqliteCheckpointStore(CheckpointStore):
    """Keeps one checkpoint row per binding key in SQLite."""

    TABLE = "sweep_checkpoints"

    def __init__(self, db: Database, key: str = "default") -> None:
        self.db = db
        self.key = key

    async def load(self) -> Optional[SweepCheckpoint]:
        try:
            row = await self.db.fetch_one(
                f"SELECT state_json FROM {self.TABLE} WHERE binding_key = ?", (self.key,)
            )
            if row is None:
                return None
            return SweepCheckpoint.from_blob(row["state_json"])
        except (aiosqlite.Error, ValidationError) as e:
            raise CheckpointError(f"Failed to load checkpoint '{self.key}': {e}") from e

    async def save(self, checkpoint: SweepCheckpoint) -> None:
        try:
            async with self.db.transaction():
                await self.db.upsert(
                    self.TABLE,
                    {
                        "binding_key": self.key,
                        "state_json": checkpoint.to_blob(),
                        "updated_at": datetime.now(tz=timezone.utc).isoformat(),
                    },
                    ["binding_key"],
                    commit=False,
                )
        except aiosqlite.Error as e:
            raise CheckpointError(f"Failed to save checkpoint '{self.key}': {e}") from e
        logger.debug("Saved checkpoint %s: %s", self.key, checkpoint.to_blob())

    async def close(self) -> None:
        await self.db.close()


class HostCheckpointStore(CheckpointStore):
    """Checkpoint owned by the host runtime.

    The host hands over the last committed blob when the connector starts and
    receives every new one as a checkpoint message on the output stream.
    """

    def __init__(self, writer: CheckpointWriter, initial_blob: str = "") -> None:
        self._writer = writer
        try:
            self._current = SweepCheckpoint.from_blob(initial_blob)
        except ValidationError as e:
            raise CheckpointError(f"Host supplied an unreadable checkpoint: {e}") from e

    async def load(self) -> Optional[SweepCheckpoint]:
        return self._current.model_copy() if self._current else None

    async def save(self, checkpoint: SweepCheckpoint) -> None:
        try:
            await self._writer.commit(checkpoint.to_blob())
        except OSError as e:
            raise CheckpointError(f"Failed to hand checkpoint to host: {e}") from e
        self._current = checkpoint.model_copy()
