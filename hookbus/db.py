"""Shared aiosqlite connection handling for the hookbus stores."""

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)


class SqliteStore:
    """Base for SQLite-backed stores. One lazily opened connection per instance.

    Subclasses set _SCHEMA; it is applied with executescript on first use.
    Several stores (and several processes) may point at the same file: WAL mode
    plus busy_timeout lets them share it, and every state change is a single
    conditional statement keyed by row id.
    """

    _SCHEMA = ""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self._db_path))
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            if self._SCHEMA:
                await conn.executescript(self._SCHEMA)
            await conn.commit()
            self._conn = conn
        return self._conn

    async def initialize(self) -> None:
        """Open the connection and deploy the schema."""
        await self._ensure_conn()

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
