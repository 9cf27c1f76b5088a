"""
SQLite persistence for checkpoints and captured records (aiosqlite).
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite


logger = logging.getLogger(__name__)

# (version, statement); applied in order, each exactly once per database file.
MIGRATIONS: List[Tuple[int, str]] = [
    (1, """
        CREATE TABLE IF NOT EXISTS sweep_checkpoints (
            binding_key TEXT PRIMARY KEY,
            state_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """),
    (2, """
        CREATE TABLE IF NOT EXISTS records (
            id TEXT PRIMARY KEY,
            created_at TEXT,
            document TEXT NOT NULL,
            captured_at TEXT NOT NULL
        )
    """),
    (3, "CREATE INDEX IF NOT EXISTS records_created_at ON records (created_at)"),
]


def resolve_path(location: str) -> Path:
    """Accept a plain path or a ``sqlite:///`` / ``sqlite+aiosqlite:///`` URL."""
    scheme, sep, rest = location.partition("://")
    if not sep or not scheme.startswith("sqlite"):
        return Path(location)
    # sqlite:///relative.db, sqlite:////absolute/path.db
    return Path(rest[1:] if rest.startswith("/") else rest)


class Database:
    """One aiosqlite connection, opened lazily and migrated on connect.

    The checkpoint store and the database sink may share an instance; the
    sink's rows then sit in the same implicit transaction until it flushes.
    """

    def __init__(self, db_path: str = "ingester.db"):
        self.db_path = resolve_path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    async def connect(self) -> None:
        if self._conn is not None:
            return

        if not self.is_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(self.db_path, timeout=30)
        conn.row_factory = aiosqlite.Row
        if not self.is_memory:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=30000")
        self._conn = conn
        await self._migrate()
        logger.debug("Opened SQLite database %s", self.db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            await self.connect()
        return self._conn

    async def _migrate(self) -> None:
        conn = self._conn
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            " version INTEGER PRIMARY KEY,"
            " applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
        )
        cursor = await conn.execute("SELECT MAX(version) FROM schema_version")
        (current,) = await cursor.fetchone()
        await conn.commit()

        pending = [(version, sql) for version, sql in MIGRATIONS if version > (current or 0)]
        if not pending:
            return
        async with self.transaction():
            for version, sql in pending:
                await conn.execute(sql)
                await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        logger.info("Migrated %s to schema version %d", self.db_path, pending[-1][0])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """BEGIN ... COMMIT; rolled back on any error or cancellation."""
        conn = await self._connection()
        await conn.execute("BEGIN")
        try:
            yield conn
        except BaseException:
            await conn.rollback()
            raise
        await conn.commit()

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        conn = await self._connection()
        return await conn.execute(sql, tuple(params))

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        cursor = await self.execute(sql, params)
        return await cursor.fetchone()

    async def commit(self) -> None:
        if self._conn is not None:
            await self._conn.commit()

    async def upsert(
        self,
        table: str,
        row: Dict[str, Any],
        key: Sequence[str],
        *,
        commit: bool = True,
    ) -> None:
        """INSERT one row, replacing the non-key columns on a key conflict."""
        columns = list(row)
        updates = [f"{col} = excluded.{col}" for col in columns if col not in key]
        action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT ({', '.join(key)}) {action}"
        )
        await self.execute(sql, [row[col] for col in columns])
        if commit:
            await self.commit()
