"""Event router: publish -> store -> claim -> matching handlers -> aggregated status.

Publishing only waits for the durable insert. A dispatch loop, woken by the
event feed, claims pending events and runs every matching handler concurrently.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable

from hookbus.events.feed import EventFeed, PollingEventFeed
from hookbus.events.models import Event, EventStatistics, EventStatus, HandlerLog
from hookbus.events.patterns import matches, validate_pattern
from hookbus.events.store import EventStore

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[None]]


class EventRouter:
    """Process-local handler registry plus the dispatch loop over a shared store."""

    def __init__(
        self,
        store: EventStore,
        feed: EventFeed | None = None,
        poll_interval: float = 1.0,
        batch_size: int = 20,
        handler_timeout: float = 30.0,
        max_concurrent_events: int = 8,
    ) -> None:
        self._store = store
        self._feed = feed or PollingEventFeed(store, poll_interval=poll_interval)
        self._batch_size = batch_size
        self._handler_timeout = handler_timeout
        self._subscribers: dict[str, list[tuple[Handler, str]]] = defaultdict(list)
        self._slots = asyncio.Semaphore(max_concurrent_events)
        self._active: set[str] = set()
        self._inflight: set[asyncio.Task[None]] = set()
        self._dispatch_task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def store(self) -> EventStore:
        return self._store

    async def publish(
        self,
        event_type: str,
        event_source: str,
        event_data: Any,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Persist the event and return its id. Handlers run later, in the dispatch loop.

        Storage errors and non-JSON payloads (ValueError) propagate to the caller.
        """
        if not isinstance(event_type, str) or not event_type:
            raise ValueError("event_type must be a non-empty string")
        event_id = await self._store.insert(event_type, event_source, event_data, metadata)
        logger.info("Published event %s (%s) from %s", event_id, event_type, event_source)
        self._feed.notify()
        return event_id

    def subscribe(self, pattern: str, handler: Handler, name: str | None = None) -> None:
        """Register handler for pattern. Raises PatternError for malformed patterns."""
        validate_pattern(pattern)
        handler_name = name or getattr(handler, "__qualname__", None) or repr(handler)
        self._subscribers[pattern].append((handler, handler_name))
        logger.debug("Subscribed %s to pattern %s", handler_name, pattern)

    def unsubscribe(self, pattern: str, handler: Handler) -> bool:
        """Remove the first registration of handler under pattern. True if removed."""
        entries = self._subscribers.get(pattern)
        if not entries:
            return False
        for i, (registered, _name) in enumerate(entries):
            if registered is handler:
                del entries[i]
                break
        else:
            return False
        if not entries:
            del self._subscribers[pattern]
        return True

    def matching_handlers(self, event_type: str) -> list[tuple[Handler, str]]:
        """Handlers of every pattern that matches event_type, flattened."""
        found: list[tuple[Handler, str]] = []
        for pattern, entries in self._subscribers.items():
            if matches(pattern, event_type):
                found.extend(entries)
        return found

    async def start(self) -> None:
        """Start the dispatch loop as an asyncio Task."""
        self._stopped = False
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info("EventRouter dispatch loop started")

    async def stop(self) -> None:
        """Stop fetching new events and wait for in-flight events to finish."""
        self._stopped = True
        self._feed.notify()
        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("EventRouter stopped")

    async def drain(self) -> int:
        """Dispatch every currently pending event and wait for all of them.

        For one-shot processes and tests that run without the dispatch loop.
        Returns the number of events this router processed.
        """
        events = await self._feed.fetch(self._batch_size)
        results = await asyncio.gather(*(self.dispatch(e.id) for e in events))
        return sum(1 for status in results if status is not None)

    async def _dispatch_loop(self) -> None:
        """Fetch candidates from the feed, spawn one task per new event, wait when idle."""
        while not self._stopped:
            try:
                events = await self._feed.fetch(self._batch_size)
            except Exception as e:
                logger.exception("EventRouter: fetching pending events failed: %s", e)
                events = []

            spawned = 0
            for event in events:
                if self._stopped:
                    break
                if event.id in self._active:
                    continue
                await self._slots.acquire()
                self._spawn(event.id)
                spawned += 1

            if not spawned and not self._stopped:
                await self._feed.wait()

    def _spawn(self, event_id: str) -> None:
        self._active.add(event_id)
        task = asyncio.create_task(self._run(event_id))
        self._inflight.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._inflight.discard(t)
            self._active.discard(event_id)
            self._slots.release()

        task.add_done_callback(_done)

    async def _run(self, event_id: str) -> None:
        try:
            await self.dispatch(event_id)
        except Exception as e:
            logger.exception("EventRouter: dispatch of event %s failed: %s", event_id, e)

    async def dispatch(self, event_id: str) -> EventStatus | None:
        """Claim one pending event and process it. Returns the final status.

        Returns None when the event is not pending (another router claimed it,
        or it was already processed).
        """
        event = await self._store.claim(event_id)
        if event is None:
            return None
        return await self._process(event)

    async def _process(self, event: Event) -> EventStatus:
        """Run all matching handlers concurrently; aggregate into the event status."""
        started = time.monotonic()
        handlers = self.matching_handlers(event.event_type)

        if not handlers:
            await self._store.mark_completed(event.id)
            logger.debug("No handlers for event %s (%s)", event.id, event.event_type)
            return EventStatus.COMPLETED

        results = await asyncio.gather(
            *(self._invoke(handler, name, event) for handler, name in handlers)
        )
        errors = [error for error in results if error]
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if errors:
            error_msg = "; ".join(errors)
            await self._store.mark_failed(event.id, error_msg)
            logger.warning(
                "Event %s (%s) failed in %dms: %d/%d handlers failed: %s",
                event.id,
                event.event_type,
                elapsed_ms,
                len(errors),
                len(handlers),
                error_msg,
            )
            return EventStatus.FAILED

        await self._store.mark_completed(event.id)
        logger.info(
            "Processed event %s (%s) with %d handlers in %dms",
            event.id,
            event.event_type,
            len(handlers),
            elapsed_ms,
        )
        return EventStatus.COMPLETED

    async def _invoke(self, handler: Handler, name: str, event: Event) -> str | None:
        """Run one handler with a timeout. Returns an error message or None."""
        started = time.monotonic()
        error: str | None = None
        try:
            await asyncio.wait_for(handler(event), timeout=self._handler_timeout)
        except asyncio.TimeoutError:
            error = f"{name}: timed out after {self._handler_timeout}s"
            logger.error("Handler %s timed out for event %s/%s", name, event.event_type, event.id)
        except Exception as e:
            error = f"{name}: {str(e) or type(e).__name__}"
            logger.exception(
                "Handler %s failed for event %s/%s: %s", name, event.event_type, event.id, e
            )

        log = HandlerLog(
            event_id=event.id,
            handler_name=name,
            status=EventStatus.FAILED if error else EventStatus.COMPLETED,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            error_message=error,
            created_at=time.time(),
        )
        try:
            await self._store.record_handler_log(log)
        except Exception as e:
            logger.exception("Recording handler log for event %s failed: %s", event.id, e)
        return error

    async def get_event_history(
        self,
        event_type: str | None = None,
        event_source: str | None = None,
        status: EventStatus | str | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        return await self._store.history(event_type, event_source, status, limit)

    async def get_statistics(self) -> EventStatistics:
        return await self._store.statistics()
