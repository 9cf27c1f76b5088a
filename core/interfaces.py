"""
Core interfaces for the sweep engine.

The engine only talks to its collaborators through the three seams below:
a :class:`GroupSource` that knows one remote API, a :class:`Sink` that takes
emitted documents, and a :class:`CheckpointStore` that persists the sweep
checkpoint.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from .models import Group, Record, SweepCheckpoint


class GroupSource(ABC):
    """Abstract base class for a hierarchical remote API.

    Every listing is expected to be rate limited and retried by the
    implementation's HTTP layer; errors surface as
    :class:`core.infra.http.FetchError` subclasses.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""
        pass

    async def resolve_identity(self, creator_id: str) -> str:
        """Validate credentials and return the effective creator id."""
        return creator_id

    @abstractmethod
    def list_root_groups(self, creator_id: str) -> AsyncIterator[Group]:
        """Yield the top-level groups owned by ``creator_id``."""
        pass

    @abstractmethod
    def list_child_groups(self, group: Group) -> AsyncIterator[Group]:
        """Yield the direct children of ``group``."""
        pass

    @abstractmethod
    def list_records(
        self, group: Group, min_created_at: Optional[datetime]
    ) -> AsyncIterator[Record]:
        """Yield the group's direct records, newest first, not older than the bound."""
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_):
        await self.close()


class Sink(ABC):
    """Abstract base class for emission sinks."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this sink."""
        pass

    @abstractmethod
    async def emit(self, document: Dict[str, Any]) -> None:
        """Append one document to the downstream log."""
        pass

    async def flush(self) -> None:
        """Make every emitted document durable."""
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_):
        await self.close()


class CheckpointStore(ABC):
    """Persistence for the single sweep checkpoint value."""

    @abstractmethod
    async def load(self) -> Optional[SweepCheckpoint]:
        """Return the stored checkpoint, or None on first run."""
        pass

    @abstractmethod
    async def save(self, checkpoint: SweepCheckpoint) -> None:
        """Durably replace the stored checkpoint, or raise CheckpointError."""
        pass

    async def close(self) -> None:
        pass
