"""SQLite storage for webhook endpoints and the delivery attempt log."""

import json
import logging
import time
import uuid

from hookbus.db import SqliteStore
from hookbus.webhooks.models import DeliveryAttempt, DeliveryStatus, WebhookEndpoint

logger = logging.getLogger(__name__)

_ENDPOINT_COLUMNS = (
    "id, tenant_id, name, url, secret, event_types, enabled, failure_count, "
    "last_triggered_at, last_attempt_at, created_at"
)
_ATTEMPT_COLUMNS = (
    "id, webhook_id, event_id, event_type, payload, attempt_number, signature, "
    "status, http_status, error, created_at"
)


class EndpointNotFoundError(LookupError):
    """No webhook endpoint with the given id."""


def _row_to_endpoint(row: tuple) -> WebhookEndpoint:
    return WebhookEndpoint(
        id=row[0],
        tenant_id=row[1],
        name=row[2],
        url=row[3],
        secret=row[4],
        event_types=tuple(json.loads(row[5]) if row[5] else ()),
        enabled=bool(row[6]),
        failure_count=row[7] or 0,
        last_triggered_at=row[8],
        last_attempt_at=row[9],
        created_at=row[10],
    )


def _row_to_attempt(row: tuple) -> DeliveryAttempt:
    return DeliveryAttempt(
        id=row[0],
        webhook_id=row[1],
        event_id=row[2],
        event_type=row[3],
        payload=row[4],
        attempt_number=row[5],
        signature=row[6],
        status=DeliveryStatus(row[7]),
        http_status=row[8],
        error=row[9],
        created_at=row[10],
    )


class EndpointStore(SqliteStore):
    """Endpoint registrations plus an append-only log of delivery attempts.

    failure_count is changed only by single UPDATE statements (increment on
    failure, reset on success), so concurrent deliveries to one endpoint never
    lose an increment.
    """

    _SCHEMA = """
CREATE TABLE IF NOT EXISTS webhook_endpoints (
    id                TEXT    PRIMARY KEY,
    tenant_id         TEXT    NOT NULL,
    name              TEXT    NOT NULL,
    url               TEXT    NOT NULL,
    secret            TEXT    NOT NULL,
    event_types       TEXT    NOT NULL DEFAULT '[]',
    enabled           INTEGER NOT NULL DEFAULT 1,
    failure_count     INTEGER NOT NULL DEFAULT 0,
    last_triggered_at REAL,
    last_attempt_at   REAL,
    created_at        REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_we_tenant_enabled ON webhook_endpoints(tenant_id, enabled);
CREATE INDEX IF NOT EXISTS idx_we_failures ON webhook_endpoints(enabled, failure_count);

CREATE TABLE IF NOT EXISTS webhook_deliveries (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    webhook_id     TEXT    NOT NULL,
    event_id       TEXT,
    event_type     TEXT    NOT NULL,
    payload        TEXT    NOT NULL,
    attempt_number INTEGER NOT NULL,
    signature      TEXT    NOT NULL,
    status         TEXT    NOT NULL,
    http_status    INTEGER,
    error          TEXT,
    created_at     REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_wd_webhook ON webhook_deliveries(webhook_id, id);
CREATE INDEX IF NOT EXISTS idx_wd_event ON webhook_deliveries(event_id);
"""

    async def insert_endpoint(
        self,
        tenant_id: str,
        name: str,
        url: str,
        secret: str,
        event_types: list[str] | tuple[str, ...],
    ) -> WebhookEndpoint:
        conn = await self._ensure_conn()
        endpoint = WebhookEndpoint(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            name=name,
            url=url,
            secret=secret,
            event_types=tuple(event_types),
            created_at=time.time(),
        )
        await conn.execute(
            f"""
            INSERT INTO webhook_endpoints ({_ENDPOINT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, 1, 0, NULL, NULL, ?)
            """,
            (
                endpoint.id,
                endpoint.tenant_id,
                endpoint.name,
                endpoint.url,
                endpoint.secret,
                json.dumps(list(endpoint.event_types)),
                endpoint.created_at,
            ),
        )
        await conn.commit()
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpoint | None:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"SELECT {_ENDPOINT_COLUMNS} FROM webhook_endpoints WHERE id = ?",
            (endpoint_id,),
        )
        row = await cursor.fetchone()
        return _row_to_endpoint(row) if row else None

    async def require_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        endpoint = await self.get_endpoint(endpoint_id)
        if endpoint is None:
            raise EndpointNotFoundError(f"Webhook endpoint {endpoint_id} not found")
        return endpoint

    async def list_endpoints(
        self, tenant_id: str, enabled_only: bool = False
    ) -> list[WebhookEndpoint]:
        conn = await self._ensure_conn()
        sql = f"SELECT {_ENDPOINT_COLUMNS} FROM webhook_endpoints WHERE tenant_id = ?"
        if enabled_only:
            sql += " AND enabled = 1"
        sql += " ORDER BY created_at, id"
        cursor = await conn.execute(sql, (tenant_id,))
        rows = await cursor.fetchall()
        return [_row_to_endpoint(row) for row in rows]

    async def list_failing(self, max_failures: int, limit: int = 100) -> list[WebhookEndpoint]:
        """Enabled endpoints with 0 < failure_count < max_failures, longest-waiting first."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"""
            SELECT {_ENDPOINT_COLUMNS} FROM webhook_endpoints
            WHERE enabled = 1 AND failure_count > 0 AND failure_count < ?
            ORDER BY last_attempt_at, id
            LIMIT ?
            """,
            (max_failures, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_endpoint(row) for row in rows]

    async def record_success(self, endpoint_id: str, at: float) -> None:
        conn = await self._ensure_conn()
        await conn.execute(
            """
            UPDATE webhook_endpoints
            SET failure_count = 0, last_triggered_at = ?, last_attempt_at = ?
            WHERE id = ?
            """,
            (at, at, endpoint_id),
        )
        await conn.commit()

    async def record_failure(self, endpoint_id: str, at: float) -> None:
        conn = await self._ensure_conn()
        await conn.execute(
            """
            UPDATE webhook_endpoints
            SET failure_count = failure_count + 1, last_attempt_at = ?
            WHERE id = ?
            """,
            (at, endpoint_id),
        )
        await conn.commit()

    async def reset_failures(self, endpoint_id: str) -> bool:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "UPDATE webhook_endpoints SET failure_count = 0 WHERE id = ?",
            (endpoint_id,),
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def set_enabled(self, endpoint_id: str, enabled: bool) -> bool:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "UPDATE webhook_endpoints SET enabled = ? WHERE id = ?",
            (1 if enabled else 0, endpoint_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def record_attempt(
        self,
        webhook_id: str,
        event_id: str | None,
        event_type: str,
        payload: str,
        signature: str,
        status: DeliveryStatus,
        http_status: int | None,
        error: str | None,
        at: float,
    ) -> DeliveryAttempt:
        """Append an attempt; attempt_number counts attempts per (webhook, event)."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            INSERT INTO webhook_deliveries (webhook_id, event_id, event_type, payload,
                attempt_number, signature, status, http_status, error, created_at)
            SELECT ?, ?, ?, ?, COALESCE(MAX(attempt_number), 0) + 1, ?, ?, ?, ?, ?
            FROM webhook_deliveries
            WHERE webhook_id = ? AND event_id IS ?
            """,
            (
                webhook_id,
                event_id,
                event_type,
                payload,
                signature,
                status.value,
                http_status,
                error,
                at,
                webhook_id,
                event_id,
            ),
        )
        await conn.commit()
        row_id = cursor.lastrowid
        cursor = await conn.execute(
            f"SELECT {_ATTEMPT_COLUMNS} FROM webhook_deliveries WHERE id = ?", (row_id,)
        )
        row = await cursor.fetchone()
        return _row_to_attempt(row)

    async def last_failed_attempt(self, webhook_id: str) -> DeliveryAttempt | None:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS} FROM webhook_deliveries
            WHERE webhook_id = ? AND status = 'failed'
            ORDER BY id DESC
            LIMIT 1
            """,
            (webhook_id,),
        )
        row = await cursor.fetchone()
        return _row_to_attempt(row) if row else None

    async def delivery_log(self, webhook_id: str, limit: int = 100) -> list[DeliveryAttempt]:
        """Attempts for one endpoint, newest first."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS} FROM webhook_deliveries
            WHERE webhook_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (webhook_id, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_attempt(row) for row in rows]
