"""
Database sink for persisting captured documents to SQLite.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.interfaces import Sink
from core.infra.db import Database


logger = logging.getLogger(__name__)


class DatabaseSink(Sink):
    """Sink that upserts documents into a ``records`` table keyed by ``id``.

    Rows are written inside the connection's implicit transaction and made
    durable by :meth:`flush`, which the coordinator calls before it saves the
    checkpoint. Re-emitting a document replaces the stored row, so the overlap
    between consecutive sweeps collapses to one row per record.
    """

    name = "DatabaseSink"
    TABLE = "records"

    def __init__(self, db_url: str = "ingester.db", *, db: Optional[Database] = None):
        """Initialize DatabaseSink with configurable database URL."""
        self.db = db or Database(db_url)
        self._pending = 0

    async def emit(self, document: Dict[str, Any]) -> None:
        if "id" not in document:
            raise ValueError("Document has no 'id' to key it by")
        await self.db.upsert(
            self.TABLE,
            {
                "id": str(document["id"]),
                "created_at": document.get("created"),
                "document": json.dumps(document, default=str),
                "captured_at": datetime.now(tz=timezone.utc).isoformat(),
            },
            ["id"],
            commit=False,
        )
        self._pending += 1

    async def flush(self) -> None:
        await self.db.commit()
        if self._pending:
            logger.info(f"Committed {self._pending} documents to {self.TABLE}")
        self._pending = 0

    async def count(self) -> int:
        row = await self.db.fetch_one(f"SELECT COUNT(*) AS n FROM {self.TABLE}")
        return row["n"]

    async def close(self) -> None:
        """Close the database connection."""
        await self.db.close()
