"""Event bus: durable event store, pattern-matched router, change feed."""

from hookbus.events.feed import EventFeed, PollingEventFeed
from hookbus.events.models import Event, EventStatistics, EventStatus
from hookbus.events.patterns import PatternError, matches
from hookbus.events.router import EventRouter
from hookbus.events.store import EventStore
from hookbus.events.topics import EventTypes

__all__ = [
    "Event",
    "EventFeed",
    "EventRouter",
    "EventStatistics",
    "EventStatus",
    "EventStore",
    "EventTypes",
    "PatternError",
    "PollingEventFeed",
    "matches",
]
