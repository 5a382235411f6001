"""Event model and lifecycle statuses."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

__all__ = ["Event", "EventStatistics", "EventStatus", "HandlerLog"]


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Event:
    """Immutable event passed to handlers.

    status, processed_at, retry_count and error_message reflect the row at the
    moment the event was loaded; only the store changes them.
    """

    id: str
    event_type: str
    event_source: str
    event_data: Any
    created_at: float
    metadata: dict[str, Any] = field(default_factory=dict)
    status: EventStatus = EventStatus.PENDING
    processed_at: float | None = None
    retry_count: int = 0
    error_message: str | None = None

    @property
    def tenant_id(self) -> str | None:
        """Tenant owning the event: metadata first, then the payload."""
        tenant = self.metadata.get("tenant_id")
        if tenant:
            return str(tenant)
        if isinstance(self.event_data, dict):
            tenant = self.event_data.get("tenant_id") or self.event_data.get("tenantId")
            if tenant:
                return str(tenant)
        return None

    @property
    def correlation_id(self) -> str | None:
        value = self.metadata.get("correlation_id")
        return str(value) if value else None


@dataclass(frozen=True)
class HandlerLog:
    """One handler invocation for one event."""

    event_id: str
    handler_name: str
    status: EventStatus
    execution_time_ms: int
    error_message: str | None = None
    created_at: float = 0.0


class EventStatistics(BaseModel):
    """Counts of events by status."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
