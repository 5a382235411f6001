"""Tests for EventStore: insert, conditional transitions, replay bookkeeping, queries."""

import time
from pathlib import Path

import pytest

from hookbus.events.models import EventStatus, HandlerLog
from hookbus.events.store import EventStore


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "hookbus.db"


@pytest.fixture
async def store(db_path: Path) -> EventStore:
    s = EventStore(db_path)
    yield s
    await s.close()


class TestInsertAndClaim:
    """Durable insert and the pending -> processing claim."""

    @pytest.mark.asyncio
    async def test_insert_creates_pending_event(self, store: EventStore) -> None:
        event_id = await store.insert(
            "project.completed", "project_service", {"projectId": "p-1"}, {"tenant_id": "t-1"}
        )
        event = await store.get(event_id)
        assert event is not None
        assert event.status == EventStatus.PENDING
        assert event.event_type == "project.completed"
        assert event.event_source == "project_service"
        assert event.event_data == {"projectId": "p-1"}
        assert event.metadata == {"tenant_id": "t-1"}
        assert event.tenant_id == "t-1"
        assert event.retry_count == 0
        assert event.processed_at is None

    @pytest.mark.asyncio
    async def test_event_ids_are_unique(self, store: EventStore) -> None:
        ids = {await store.insert("a.b", "src", {}) for _ in range(10)}
        assert len(ids) == 10

    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self, store: EventStore) -> None:
        event_id = await store.insert("a.b", "src", {})
        first = await store.claim(event_id)
        second = await store.claim(event_id)
        assert first is not None
        assert first.status == EventStatus.PROCESSING
        assert second is None

    @pytest.mark.asyncio
    async def test_claim_from_second_connection_loses(self, store: EventStore, db_path: Path) -> None:
        other = EventStore(db_path)
        try:
            event_id = await store.insert("a.b", "src", {})
            assert await other.claim(event_id) is not None
            assert await store.claim(event_id) is None
        finally:
            await other.close()

    @pytest.mark.asyncio
    async def test_fetch_pending_oldest_first(self, store: EventStore) -> None:
        first = await store.insert("a.one", "src", {})
        second = await store.insert("a.two", "src", {})
        await store.claim(first)
        pending = await store.fetch_pending(limit=10)
        assert [e.id for e in pending] == [second]


class TestTransitions:
    """Status transitions are monotone except failed -> pending on replay."""

    @pytest.mark.asyncio
    async def test_complete_requires_processing(self, store: EventStore) -> None:
        event_id = await store.insert("a.b", "src", {})
        assert await store.mark_completed(event_id) is False
        await store.claim(event_id)
        assert await store.mark_completed(event_id) is True
        event = await store.get(event_id)
        assert event.status == EventStatus.COMPLETED
        assert event.processed_at is not None
        # completed is terminal
        assert await store.mark_failed(event_id, "late") is False

    @pytest.mark.asyncio
    async def test_mark_failed_records_error(self, store: EventStore) -> None:
        event_id = await store.insert("a.b", "src", {})
        await store.claim(event_id)
        assert await store.mark_failed(event_id, "boom; bang") is True
        event = await store.get(event_id)
        assert event.status == EventStatus.FAILED
        assert event.error_message == "boom; bang"

    @pytest.mark.asyncio
    async def test_replay_moves_failed_to_pending_and_counts(self, store: EventStore) -> None:
        event_id = await store.insert("a.b", "src", {"k": [1, 2]})
        await store.claim(event_id)
        await store.mark_failed(event_id, "boom")

        assert await store.mark_replay(event_id, max_retries=3) is True
        event = await store.get(event_id)
        assert event.status == EventStatus.PENDING
        assert event.retry_count == 1
        assert event.event_type == "a.b"
        assert event.event_data == {"k": [1, 2]}

    @pytest.mark.asyncio
    async def test_replay_only_from_failed(self, store: EventStore) -> None:
        event_id = await store.insert("a.b", "src", {})
        assert await store.mark_replay(event_id, max_retries=3) is False
        await store.claim(event_id)
        assert await store.mark_replay(event_id, max_retries=3) is False
        await store.mark_completed(event_id)
        assert await store.mark_replay(event_id, max_retries=3) is False

    @pytest.mark.asyncio
    async def test_replay_respects_budget(self, store: EventStore) -> None:
        event_id = await store.insert("a.b", "src", {})
        for _ in range(2):
            await store.claim(event_id)
            await store.mark_failed(event_id, "boom")
            assert await store.mark_replay(event_id, max_retries=2) is True
        await store.claim(event_id)
        await store.mark_failed(event_id, "boom")
        assert await store.mark_replay(event_id, max_retries=2) is False
        assert await store.fetch_failed(max_retries=2) == []
        event = await store.get(event_id)
        assert event.retry_count == 2
        assert event.status == EventStatus.FAILED

    @pytest.mark.asyncio
    async def test_fail_stale_moves_old_processing_forward(self, store: EventStore) -> None:
        stale_id = await store.insert("a.stale", "src", {})
        fresh_id = await store.insert("a.fresh", "src", {})
        await store.claim(stale_id)
        await store.claim(fresh_id)
        conn = await store._ensure_conn()
        await conn.execute(
            "UPDATE events SET processing_since = ? WHERE id = ?",
            (time.time() - 400, stale_id),
        )
        await conn.commit()

        assert await store.fail_stale(stale_timeout=300) == 1
        stale = await store.get(stale_id)
        fresh = await store.get(fresh_id)
        assert stale.status == EventStatus.FAILED
        assert stale.error_message.startswith("stale")
        assert fresh.status == EventStatus.PROCESSING


class TestQueries:
    """History filters, statistics and handler logs."""

    @pytest.mark.asyncio
    async def test_history_filters_and_order(self, store: EventStore) -> None:
        a = await store.insert("project.created", "project_service", {})
        b = await store.insert("project.completed", "project_service", {})
        c = await store.insert("invoice.paid", "invoice_service", {})
        await store.claim(c)
        await store.mark_failed(c, "boom")

        assert [e.id for e in await store.history()] == [c, b, a]
        assert [e.id for e in await store.history(event_source="project_service")] == [b, a]
        assert [e.id for e in await store.history(event_type="project.created")] == [a]
        assert [e.id for e in await store.history(status="failed")] == [c]
        assert [e.id for e in await store.history(status=EventStatus.PENDING, limit=1)] == [b]

    @pytest.mark.asyncio
    async def test_statistics_counts_by_status(self, store: EventStore) -> None:
        ids = [await store.insert("a.b", "src", {}) for _ in range(4)]
        await store.claim(ids[0])
        await store.mark_completed(ids[0])
        await store.claim(ids[1])
        await store.mark_failed(ids[1], "x")
        await store.claim(ids[2])

        stats = await store.statistics()
        assert stats.total == 4
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.processing == 1
        assert stats.pending == 1

    @pytest.mark.asyncio
    async def test_handler_logs_round_trip(self, store: EventStore) -> None:
        event_id = await store.insert("a.b", "src", {})
        await store.record_handler_log(
            HandlerLog(event_id, "audit", EventStatus.COMPLETED, 3)
        )
        await store.record_handler_log(
            HandlerLog(event_id, "mailer", EventStatus.FAILED, 10, "smtp down")
        )
        logs = await store.get_handler_logs(event_id)
        assert [(l.handler_name, l.status) for l in logs] == [
            ("audit", EventStatus.COMPLETED),
            ("mailer", EventStatus.FAILED),
        ]
        assert logs[1].error_message == "smtp down"
        assert logs[0].created_at > 0
