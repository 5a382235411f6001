"""Event-arrived notification: how a router learns about new event rows."""

import asyncio
import logging
from typing import Protocol, runtime_checkable

from hookbus.events.models import Event
from hookbus.events.store import EventStore

logger = logging.getLogger(__name__)


@runtime_checkable
class EventFeed(Protocol):
    """Source of newly arrived events for a router dispatch loop."""

    def notify(self) -> None:
        """Hint that an event was just written (local publish). Must not block."""

    async def wait(self) -> None:
        """Return when new events may be available."""

    async def fetch(self, limit: int) -> list[Event]:
        """Candidate pending events, oldest first. Candidates are claimed by the router."""


class PollingEventFeed:
    """Polls the store for pending rows; local publishes wake it early.

    Events written by other processes become visible within poll_interval.
    """

    def __init__(self, store: EventStore, poll_interval: float = 1.0) -> None:
        self._store = store
        self._poll_interval = poll_interval
        self._wake = asyncio.Event()

    def notify(self) -> None:
        self._wake.set()

    async def wait(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def fetch(self, limit: int) -> list[Event]:
        return await self._store.fetch_pending(limit=limit)
