"""Tests for EventRouter: publish, subscribe, dispatch, aggregation, dispatch loop."""

import asyncio
import sqlite3
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from hookbus.events import EventRouter, EventStatus, EventStore, PatternError
from hookbus.events.helpers import publish_entity_event
from hookbus.events.models import Event


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "hookbus.db"


@pytest.fixture
async def router(db_path: Path) -> EventRouter:
    store = EventStore(db_path)
    r = EventRouter(store, poll_interval=0.05, batch_size=10, handler_timeout=1.0)
    yield r
    await r.stop()
    await store.close()


async def _wait_for_status(
    router: EventRouter, event_id: str, status: EventStatus, timeout: float = 3.0
) -> Event:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        event = await router.store.get(event_id)
        if event.status == status or asyncio.get_running_loop().time() > deadline:
            return event
        await asyncio.sleep(0.05)


class TestPublish:
    """publish persists and returns without running handlers."""

    @pytest.mark.asyncio
    async def test_publish_returns_id_and_persists_pending(self, router: EventRouter) -> None:
        handler = AsyncMock()
        router.subscribe("*", handler)

        event_id = await router.publish("project.completed", "project_service", {"projectId": "p-1"})

        event = await router.store.get(event_id)
        assert event.status == EventStatus.PENDING
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_rejects_empty_type(self, router: EventRouter) -> None:
        with pytest.raises(ValueError):
            await router.publish("", "src", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data,metadata",
        [
            ({"amount": float("nan")}, None),
            ({"amount": float("inf")}, None),
            ({"at": object()}, None),
            ({}, {"tenant_id": "t-1", "score": float("-inf")}),
        ],
    )
    async def test_publish_rejects_non_json_payload(
        self, router: EventRouter, data: dict, metadata: dict | None
    ) -> None:
        handler = AsyncMock()
        router.subscribe("*", handler)
        with pytest.raises(ValueError):
            await router.publish("invoice.paid", "invoice_service", data, metadata)
        assert await router.get_event_history() == []
        assert await router.drain() == 0
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_propagates_storage_failure(self, router: EventRouter) -> None:
        router.store.insert = AsyncMock(side_effect=sqlite3.OperationalError("disk I/O error"))
        with pytest.raises(sqlite3.OperationalError):
            await router.publish("project.completed", "project_service", {})


class TestSubscribe:
    """Registry behaviour."""

    @pytest.mark.asyncio
    async def test_malformed_pattern_rejected_at_subscribe(self, router: EventRouter) -> None:
        with pytest.raises(PatternError):
            router.subscribe("user..created", AsyncMock())
        assert router.matching_handlers("user.created") == []

    @pytest.mark.asyncio
    async def test_unsubscribe_removes_handler(self, router: EventRouter) -> None:
        handler = AsyncMock()
        router.subscribe("user.*", handler)
        assert router.unsubscribe("user.*", handler) is True
        assert router.unsubscribe("user.*", handler) is False
        assert router.matching_handlers("user.created") == []

        event_id = await router.publish("user.created", "user_service", {})
        await router.drain()
        handler.assert_not_called()
        assert (await router.store.get(event_id)).status == EventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_matching_flattens_all_patterns(self, router: EventRouter) -> None:
        calls: list[str] = []

        def recorder(name: str):
            async def handler(event: Event) -> None:
                calls.append(name)

            return handler

        router.subscribe("*", recorder("all"))
        router.subscribe("project.*", recorder("project"))
        router.subscribe("project.completed", recorder("exact"))
        router.subscribe("user.*", recorder("user"))

        await router.publish("project.completed", "project_service", {})
        await router.drain()

        assert sorted(calls) == ["all", "exact", "project"]


class TestDispatch:
    """Claiming, concurrent invocation and status aggregation."""

    @pytest.mark.asyncio
    async def test_no_subscribers_marks_completed(self, router: EventRouter) -> None:
        event_id = await router.publish("orphan.event", "src", {})
        assert await router.drain() == 1
        event = await router.store.get(event_id)
        assert event.status == EventStatus.COMPLETED
        assert event.error_message is None

    @pytest.mark.asyncio
    async def test_handler_receives_event(self, router: EventRouter) -> None:
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        router.subscribe("invoice.paid", handler)
        event_id = await router.publish(
            "invoice.paid", "invoice_service", {"amount": 5000}, {"tenant_id": "t-1"}
        )
        await router.drain()

        assert len(received) == 1
        assert received[0].id == event_id
        assert received[0].event_data == {"amount": 5000}
        assert received[0].tenant_id == "t-1"
        assert (await router.store.get(event_id)).status == EventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_one_failure_fails_event_but_all_handlers_run(self, router: EventRouter) -> None:
        first = AsyncMock()
        last = AsyncMock()

        async def failing(event: Event) -> None:
            raise RuntimeError("crm sync failed")

        router.subscribe("*", first)
        router.subscribe("project.*", failing, name="crm_sync")
        router.subscribe("project.completed", last)

        event_id = await router.publish("project.completed", "project_service", {})
        await router.drain()

        first.assert_awaited_once()
        last.assert_awaited_once()
        event = await router.store.get(event_id)
        assert event.status == EventStatus.FAILED
        assert "crm_sync: crm sync failed" in event.error_message

    @pytest.mark.asyncio
    async def test_failure_messages_are_concatenated(self, router: EventRouter) -> None:
        async def fail_a(event: Event) -> None:
            raise RuntimeError("a broke")

        async def fail_b(event: Event) -> None:
            raise ValueError("b broke")

        router.subscribe("*", fail_a, name="a")
        router.subscribe("*", fail_b, name="b")
        event_id = await router.publish("x.y", "src", {})
        await router.drain()

        event = await router.store.get(event_id)
        assert event.error_message == "a: a broke; b: b broke"

    @pytest.mark.asyncio
    async def test_handlers_run_concurrently(self, router: EventRouter) -> None:
        both_started = asyncio.Event()
        started = 0

        async def handler(event: Event) -> None:
            nonlocal started
            started += 1
            if started == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=0.5)

        router.subscribe("*", handler, name="h1")
        router.subscribe("*", handler, name="h2")
        event_id = await router.publish("x.y", "src", {})
        await router.drain()

        assert (await router.store.get(event_id)).status == EventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_slow_handler_times_out(self, router: EventRouter) -> None:
        fast = AsyncMock()

        async def hung(event: Event) -> None:
            await asyncio.sleep(10)

        router.subscribe("*", hung, name="hung")
        router.subscribe("*", fast)
        event_id = await router.publish("x.y", "src", {})
        await router.drain()

        fast.assert_awaited_once()
        event = await router.store.get(event_id)
        assert event.status == EventStatus.FAILED
        assert "hung: timed out" in event.error_message

    @pytest.mark.asyncio
    async def test_dispatch_of_processed_event_returns_none(self, router: EventRouter) -> None:
        handler = AsyncMock()
        router.subscribe("*", handler)
        event_id = await router.publish("x.y", "src", {})
        assert await router.dispatch(event_id) == EventStatus.COMPLETED
        assert await router.dispatch(event_id) is None
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handler_logs_recorded(self, router: EventRouter) -> None:
        async def failing(event: Event) -> None:
            raise RuntimeError("nope")

        router.subscribe("*", AsyncMock(), name="ok")
        router.subscribe("*", failing, name="bad")
        event_id = await router.publish("x.y", "src", {})
        await router.drain()

        logs = {log.handler_name: log for log in await router.store.get_handler_logs(event_id)}
        assert logs["ok"].status == EventStatus.COMPLETED
        assert logs["bad"].status == EventStatus.FAILED
        assert logs["bad"].error_message == "bad: nope"

    @pytest.mark.asyncio
    async def test_two_routers_share_store_without_double_processing(
        self, router: EventRouter, db_path: Path
    ) -> None:
        other_store = EventStore(db_path)
        other = EventRouter(other_store, batch_size=10)
        calls: list[str] = []

        async def handler(event: Event) -> None:
            calls.append(event.id)

        router.subscribe("*", handler)
        other.subscribe("*", handler)
        try:
            ids = [await router.publish("x.y", "src", {"n": n}) for n in range(6)]
            await asyncio.gather(router.drain(), other.drain())
        finally:
            await other_store.close()

        assert sorted(calls) == sorted(ids)


class TestDispatchLoop:
    """Background dispatch driven by the feed."""

    @pytest.mark.asyncio
    async def test_started_router_processes_published_events(self, router: EventRouter) -> None:
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        router.subscribe("project.*", handler)
        await router.start()

        event_id = await router.publish("project.completed", "project_service", {"projectId": "p-1"})
        event = await _wait_for_status(router, event_id, EventStatus.COMPLETED)

        assert event.status == EventStatus.COMPLETED
        assert [e.id for e in received] == [event_id]

    @pytest.mark.asyncio
    async def test_loop_picks_up_events_written_by_other_process(
        self, router: EventRouter, db_path: Path
    ) -> None:
        handler = AsyncMock()
        router.subscribe("*", handler)
        await router.start()

        writer = EventStore(db_path)
        try:
            event_id = await writer.insert("invoice.paid", "invoice_service", {})
        finally:
            await writer.close()

        event = await _wait_for_status(router, event_id, EventStatus.COMPLETED)
        assert event.status == EventStatus.COMPLETED
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_waits_for_inflight_events(self, router: EventRouter) -> None:
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow(event: Event) -> None:
            entered.set()
            await release.wait()

        router.subscribe("*", slow)
        await router.start()
        event_id = await router.publish("x.y", "src", {})
        await asyncio.wait_for(entered.wait(), timeout=2.0)

        stopper = asyncio.create_task(router.stop())
        await asyncio.sleep(0.05)
        assert not stopper.done()
        release.set()
        await stopper

        assert (await router.store.get(event_id)).status == EventStatus.COMPLETED


class TestHelpers:
    """publish_entity_event."""

    @pytest.mark.asyncio
    async def test_publish_entity_event(self, router: EventRouter) -> None:
        event_id = await publish_entity_event(
            router, "invoice", "paid", "inv-9", {"amount": 5000}, tenant_id="t-1", correlation_id="c-1"
        )
        event = await router.store.get(event_id)
        assert event.event_type == "invoice.paid"
        assert event.event_source == "invoice_service"
        assert event.event_data == {"invoiceId": "inv-9", "amount": 5000}
        assert event.tenant_id == "t-1"
        assert event.correlation_id == "c-1"

    @pytest.mark.asyncio
    async def test_unknown_entity_action_rejected(self, router: EventRouter) -> None:
        with pytest.raises(ValueError):
            await publish_entity_event(router, "invoice", "exploded", "inv-9")
