"""Publish helpers for business services: entity + action -> catalogued event."""

from typing import Any

from hookbus.events.router import EventRouter
from hookbus.events.topics import known_event_types


async def publish_entity_event(
    router: EventRouter,
    entity: str,
    action: str,
    entity_id: str,
    data: dict[str, Any] | None = None,
    tenant_id: str | None = None,
    correlation_id: str | None = None,
) -> str:
    """Publish "<entity>.<action>" from "<entity>_service".

    The payload carries "<entity>Id" plus data; tenant_id and correlation_id go
    to metadata. Raises ValueError for an event type not in EventTypes.
    """
    event_type = f"{entity}.{action}"
    if event_type not in known_event_types():
        raise ValueError(f"Unknown event type {event_type!r}")
    payload: dict[str, Any] = {f"{entity}Id": entity_id, **(data or {})}
    metadata: dict[str, Any] = {}
    if tenant_id:
        metadata["tenant_id"] = tenant_id
    if correlation_id:
        metadata["correlation_id"] = correlation_id
    return await router.publish(event_type, f"{entity}_service", payload, metadata)
