"""Webhook data models: endpoint registrations, delivery attempts, wire envelope."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True)
class WebhookEndpoint:
    """Internal representation of a webhook_endpoints row."""

    id: str
    tenant_id: str
    name: str
    url: str
    secret: str
    event_types: tuple[str, ...]
    enabled: bool = True
    failure_count: int = 0
    last_triggered_at: float | None = None
    last_attempt_at: float | None = None
    created_at: float = 0.0


@dataclass(frozen=True)
class DeliveryAttempt:
    """One HTTP attempt to one endpoint (webhook_deliveries row)."""

    webhook_id: str
    event_id: str | None
    event_type: str
    payload: str  # canonical JSON body exactly as sent
    attempt_number: int
    signature: str
    status: DeliveryStatus
    http_status: int | None = None
    error: str | None = None
    created_at: float = 0.0
    id: int | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class WebhookEnvelope(BaseModel):
    """Outbound body: {type, data, tenantId, timestamp}."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    data: Any = None
    tenant_id: str = Field(alias="tenantId")
    timestamp: str

    @classmethod
    def build(cls, event_type: str, data: Any, tenant_id: str, at: float) -> "WebhookEnvelope":
        """Envelope with an ISO-8601 UTC timestamp for epoch seconds at."""
        return cls(
            type=event_type,
            data=data,
            tenant_id=tenant_id,
            timestamp=iso_timestamp(at),
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def iso_timestamp(at: float) -> str:
    return (
        datetime.fromtimestamp(at, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
