"""SQLite event store: durable events, lifecycle transitions, handler logs."""

import json
import logging
import time
import uuid
from typing import Any

from hookbus.db import SqliteStore
from hookbus.events.models import Event, EventStatistics, EventStatus, HandlerLog

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "id, event_type, event_source, event_data, metadata, status, "
    "created_at, processed_at, retry_count, error_message"
)


def _strict_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, allow_nan=False)
    except TypeError as e:
        raise ValueError(f"event payload is not JSON serializable: {e}") from e


def _row_to_event(row: tuple) -> Event:
    """Convert a row selected with _EVENT_COLUMNS to an Event."""
    event_data = json.loads(row[3]) if isinstance(row[3], str) else row[3]
    metadata = json.loads(row[4]) if row[4] else {}
    return Event(
        id=row[0],
        event_type=row[1],
        event_source=row[2],
        event_data=event_data,
        metadata=metadata,
        status=EventStatus(row[5]),
        created_at=row[6],
        processed_at=row[7],
        retry_count=row[8] or 0,
        error_message=row[9],
    )


class EventStore(SqliteStore):
    """SQLite-backed event store.

    Every transition is one conditional UPDATE keyed by event id. Methods that
    attempt a transition return True only if this caller performed it, so two
    routers sharing the database never both claim or replay the same event.
    """

    _SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    seq              INTEGER PRIMARY KEY AUTOINCREMENT,
    id               TEXT    NOT NULL UNIQUE,
    event_type       TEXT    NOT NULL,
    event_source     TEXT    NOT NULL,
    event_data       TEXT    NOT NULL,
    metadata         TEXT    NOT NULL DEFAULT '{}',
    status           TEXT    NOT NULL DEFAULT 'pending',
    retry_count      INTEGER NOT NULL DEFAULT 0,
    created_at       REAL    NOT NULL,
    processing_since REAL,
    processed_at     REAL,
    error_message    TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_status_created ON events(status, created_at);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
CREATE INDEX IF NOT EXISTS idx_events_source ON events(event_source);

CREATE TABLE IF NOT EXISTS event_logs (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id          TEXT    NOT NULL,
    handler_name      TEXT    NOT NULL,
    status            TEXT    NOT NULL,
    execution_time_ms INTEGER NOT NULL,
    error_message     TEXT,
    created_at        REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_event_logs_event ON event_logs(event_id);
"""

    async def insert(
        self,
        event_type: str,
        event_source: str,
        event_data: Any,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Insert a pending event and return its id. Storage errors propagate.

        Raises ValueError for payloads that are not strict JSON (NaN, Infinity,
        unserializable objects); nothing is written in that case.
        """
        data_json = _strict_json(event_data)
        metadata_json = _strict_json(metadata or {})
        conn = await self._ensure_conn()
        event_id = uuid.uuid4().hex
        await conn.execute(
            """
            INSERT INTO events (id, event_type, event_source, event_data, metadata,
                status, created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?)
            """,
            (
                event_id,
                event_type,
                event_source,
                data_json,
                metadata_json,
                time.time(),
            ),
        )
        await conn.commit()
        return event_id

    async def get(self, event_id: str) -> Event | None:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", (event_id,)
        )
        row = await cursor.fetchone()
        return _row_to_event(row) if row else None

    async def fetch_pending(self, limit: int = 20) -> list[Event]:
        """Pending events, oldest first. Does not claim them."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE status = 'pending'
            ORDER BY created_at, seq
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def claim(self, event_id: str) -> Event | None:
        """Move one event pending -> processing. Returns the event if this caller won."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            UPDATE events SET status = 'processing', processing_since = ?
            WHERE id = ? AND status = 'pending'
            """,
            (time.time(), event_id),
        )
        await conn.commit()
        if not cursor.rowcount:
            return None
        return await self.get(event_id)

    async def mark_completed(self, event_id: str) -> bool:
        """processing -> completed."""
        return await self._finish(event_id, EventStatus.COMPLETED, None)

    async def mark_failed(self, event_id: str, error: str) -> bool:
        """processing -> failed with error message."""
        return await self._finish(event_id, EventStatus.FAILED, error)

    async def _finish(self, event_id: str, status: EventStatus, error: str | None) -> bool:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            UPDATE events
            SET status = ?, processed_at = ?, error_message = ?, processing_since = NULL
            WHERE id = ? AND status = 'processing'
            """,
            (status.value, time.time(), error, event_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def mark_replay(self, event_id: str, max_retries: int) -> bool:
        """failed -> pending, retry_count + 1, only while retry_count < max_retries.

        The only backward transition. Payload columns are never touched.
        """
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            UPDATE events
            SET status = 'pending', retry_count = retry_count + 1
            WHERE id = ? AND status = 'failed' AND retry_count < ?
            """,
            (event_id, max_retries),
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def fetch_failed(self, max_retries: int, limit: int = 100) -> list[Event]:
        """Failed events still within the retry budget, oldest first."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE status = 'failed' AND retry_count < ?
            ORDER BY created_at, seq
            LIMIT ?
            """,
            (max_retries, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def fail_stale(self, stale_timeout: float, now: float | None = None) -> int:
        """Move events stuck in processing longer than stale_timeout to failed.

        Forward-only: a crashed dispatch becomes replayable instead of being
        pushed back to pending. Returns the number of rows moved.
        """
        conn = await self._ensure_conn()
        now = time.time() if now is None else now
        cursor = await conn.execute(
            """
            UPDATE events
            SET status = 'failed', processed_at = ?,
                error_message = 'stale: processing timed out', processing_since = NULL
            WHERE status = 'processing' AND processing_since < ?
            """,
            (now, now - stale_timeout),
        )
        await conn.commit()
        return cursor.rowcount or 0

    async def record_handler_log(self, log: HandlerLog) -> None:
        conn = await self._ensure_conn()
        await conn.execute(
            """
            INSERT INTO event_logs (event_id, handler_name, status, execution_time_ms,
                error_message, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                log.event_id,
                log.handler_name,
                log.status.value,
                log.execution_time_ms,
                log.error_message,
                log.created_at or time.time(),
            ),
        )
        await conn.commit()

    async def get_handler_logs(self, event_id: str) -> list[HandlerLog]:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            SELECT event_id, handler_name, status, execution_time_ms, error_message, created_at
            FROM event_logs WHERE event_id = ? ORDER BY id
            """,
            (event_id,),
        )
        rows = await cursor.fetchall()
        return [
            HandlerLog(
                event_id=row[0],
                handler_name=row[1],
                status=EventStatus(row[2]),
                execution_time_ms=row[3],
                error_message=row[4],
                created_at=row[5],
            )
            for row in rows
        ]

    async def history(
        self,
        event_type: str | None = None,
        event_source: str | None = None,
        status: EventStatus | str | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Events newest first, filtered by exact type, source and status."""
        conn = await self._ensure_conn()
        clauses: list[str] = []
        params: list[Any] = []
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if event_source:
            clauses.append("event_source = ?")
            params.append(event_source)
        if status:
            clauses.append("status = ?")
            params.append(EventStatus(status).value)
        sql = f"SELECT {_EVENT_COLUMNS} FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, seq DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def statistics(self) -> EventStatistics:
        conn = await self._ensure_conn()
        cursor = await conn.execute("SELECT status, COUNT(*) FROM events GROUP BY status")
        rows = await cursor.fetchall()
        counts = {status: count for status, count in rows}
        return EventStatistics(
            total=sum(counts.values()),
            pending=counts.get("pending", 0),
            processing=counts.get("processing", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
        )
