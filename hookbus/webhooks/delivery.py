"""Webhook delivery engine: signed HTTP fan-out to tenant endpoints.

Runs as an ordinary router handler. Each invocation makes one bounded-timeout
POST per matching endpoint, concurrently, and never retries inline; failing
endpoints are retried later by the replay coordinator.
"""

import asyncio
import json
import logging
import secrets
import time
from typing import Callable

import httpx

from hookbus.events.models import Event
from hookbus.events.patterns import matches_any, validate_pattern
from hookbus.events.router import EventRouter
from hookbus.events.topics import EventTypes
from hookbus.webhooks.backoff import BackoffPolicy
from hookbus.webhooks.models import (
    DeliveryAttempt,
    DeliveryStatus,
    WebhookEndpoint,
    WebhookEnvelope,
    iso_timestamp,
)
from hookbus.webhooks.signer import sign, sign_payload
from hookbus.webhooks.store import EndpointNotFoundError, EndpointStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
HANDLER_NAME = "webhook_delivery"


class WebhookDeliveryError(Exception):
    """One or more endpoint deliveries for an event failed."""

    def __init__(self, failures: list[DeliveryAttempt]) -> None:
        self.failures = failures
        details = ", ".join(
            f"{a.webhook_id} ({a.error or a.http_status})" for a in failures
        )
        super().__init__(f"webhook delivery failed for {len(failures)} endpoint(s): {details}")


class WebhookDeliveryEngine:
    """Delivers events to registered endpoints and administers registrations."""

    def __init__(
        self,
        store: EndpointStore,
        timeout: float = DEFAULT_TIMEOUT,
        fail_event_on_delivery_error: bool = True,
        header_prefix: str = "X-Hookbus",
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._backoff = backoff or BackoffPolicy()
        self._timeout = timeout
        self._fail_event = fail_event_on_delivery_error
        self._header_prefix = header_prefix
        self._clock = clock

    @property
    def store(self) -> EndpointStore:
        return self._store

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def attach(self, router: EventRouter, pattern: str = "*") -> None:
        """Subscribe handle_event to the router."""
        router.subscribe(pattern, self.handle_event, name=HANDLER_NAME)

    async def handle_event(self, event: Event) -> None:
        """Router handler: deliver event to every matching enabled endpoint of its tenant.

        A replayed event (retry_count > 0) skips endpoints that are exhausted or
        still inside their backoff interval; skipped endpoints are not failures.
        Raises WebhookDeliveryError when a delivery failed and failures are
        configured to fail the event.
        """
        tenant_id = event.tenant_id
        if not tenant_id:
            return
        now = self._clock()
        endpoints = [
            ep
            for ep in await self._store.list_endpoints(tenant_id, enabled_only=True)
            if matches_any(ep.event_types, event.event_type)
        ]
        if event.retry_count > 0:
            endpoints = [ep for ep in endpoints if self._replay_eligible(ep, event, now)]
        if not endpoints:
            return

        envelope = WebhookEnvelope.build(event.event_type, event.event_data, tenant_id, now)
        attempts = await asyncio.gather(
            *(self.deliver(ep, envelope, event_id=event.id) for ep in endpoints)
        )
        failures = [a for a in attempts if not a.delivered]
        if failures and self._fail_event:
            raise WebhookDeliveryError(failures)

    def _replay_eligible(self, endpoint: WebhookEndpoint, event: Event, now: float) -> bool:
        if endpoint.failure_count <= 0:
            return True
        if self._backoff.is_due(endpoint, now):
            return True
        logger.info(
            "Replay of event %s skips webhook %s (failures=%d, backing off)",
            event.id,
            endpoint.id,
            endpoint.failure_count,
        )
        return False

    async def deliver(
        self,
        endpoint: WebhookEndpoint,
        envelope: WebhookEnvelope,
        event_id: str | None = None,
    ) -> DeliveryAttempt:
        """Sign and POST envelope to endpoint once. Never raises on transport errors."""
        body, signature = sign_payload(envelope.to_wire(), endpoint.secret)
        return await self._post(
            endpoint, envelope.type, envelope.timestamp, body, signature, event_id
        )

    async def redeliver(self, endpoint: WebhookEndpoint) -> DeliveryAttempt | None:
        """Re-POST the endpoint's most recent failed body, re-signed with its current secret.

        Returns None when there is no failed attempt to resend.
        """
        last = await self._store.last_failed_attempt(endpoint.id)
        if last is None:
            logger.info("Webhook %s has no failed delivery to resend", endpoint.id)
            return None
        try:
            timestamp = json.loads(last.payload).get("timestamp")
        except (ValueError, AttributeError):
            timestamp = None
        signature = sign(last.payload, endpoint.secret)
        return await self._post(
            endpoint,
            last.event_type,
            timestamp or iso_timestamp(self._clock()),
            last.payload,
            signature,
            last.event_id,
        )

    def _headers(
        self, event_type: str, timestamp: str, signature: str, event_id: str | None
    ) -> dict[str, str]:
        prefix = self._header_prefix
        headers = {
            "Content-Type": "application/json",
            f"{prefix}-Signature": signature,
            f"{prefix}-Event": event_type,
            f"{prefix}-Timestamp": timestamp,
        }
        if event_id:
            headers[f"{prefix}-Delivery"] = event_id
        return headers

    async def _post(
        self,
        endpoint: WebhookEndpoint,
        event_type: str,
        timestamp: str,
        body: str,
        signature: str,
        event_id: str | None,
    ) -> DeliveryAttempt:
        headers = self._headers(event_type, timestamp, signature, event_id)
        http_status: int | None = None
        error: str | None = None
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    endpoint.url, content=body.encode("utf-8"), headers=headers
                )
            http_status = response.status_code
            if not response.is_success:
                error = f"HTTP {response.status_code}"
        except httpx.TimeoutException:
            error = f"timeout after {self._timeout}s"
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__

        now = self._clock()
        if error is None:
            await self._store.record_success(endpoint.id, now)
            status = DeliveryStatus.DELIVERED
            logger.info("Webhook %s delivered %s (HTTP %s)", endpoint.id, event_type, http_status)
        else:
            await self._store.record_failure(endpoint.id, now)
            status = DeliveryStatus.FAILED
            logger.warning(
                "Webhook %s delivery of %s to %s failed: %s",
                endpoint.id,
                event_type,
                endpoint.url,
                error,
            )
        return await self._store.record_attempt(
            webhook_id=endpoint.id,
            event_id=event_id,
            event_type=event_type,
            payload=body,
            signature=signature,
            status=status,
            http_status=http_status,
            error=error,
            at=now,
        )

    # --- Tenant administration ---

    async def register_endpoint(
        self,
        tenant_id: str,
        name: str,
        url: str,
        event_types: list[str] | tuple[str, ...],
        secret: str | None = None,
    ) -> WebhookEndpoint:
        """Validate and store a new endpoint. A random secret is generated when none is given."""
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as e:
            raise ValueError(f"Invalid webhook URL {url!r}: {e}") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValueError(f"Webhook URL must be absolute http(s): {url!r}")
        if not event_types:
            raise ValueError("At least one event type pattern is required")
        for pattern in event_types:
            validate_pattern(pattern)

        endpoint = await self._store.insert_endpoint(
            tenant_id=tenant_id,
            name=name,
            url=url,
            secret=secret or secrets.token_hex(32),
            event_types=event_types,
        )
        logger.info(
            "Registered webhook %s for tenant %s: %s %s",
            endpoint.id,
            tenant_id,
            url,
            list(endpoint.event_types),
        )
        return endpoint

    async def test_endpoint(self, endpoint_id: str) -> DeliveryAttempt:
        """Send a synthetic webhook.test event through the signed delivery path."""
        endpoint = await self._store.require_endpoint(endpoint_id)
        envelope = WebhookEnvelope.build(
            EventTypes.WEBHOOK_TEST,
            {"message": "This is a test webhook"},
            endpoint.tenant_id,
            self._clock(),
        )
        return await self.deliver(endpoint, envelope)

    async def reset_endpoint(self, endpoint_id: str) -> None:
        """Clear failure_count so the endpoint is eligible for delivery retries again."""
        if not await self._store.reset_failures(endpoint_id):
            raise EndpointNotFoundError(f"Webhook endpoint {endpoint_id} not found")
        logger.info("Webhook %s failure count reset", endpoint_id)

    async def set_endpoint_enabled(self, endpoint_id: str, enabled: bool) -> None:
        if not await self._store.set_enabled(endpoint_id, enabled):
            raise EndpointNotFoundError(f"Webhook endpoint {endpoint_id} not found")

    async def list_endpoints(self, tenant_id: str) -> list[WebhookEndpoint]:
        return await self._store.list_endpoints(tenant_id)

    async def get_delivery_log(self, endpoint_id: str, limit: int = 100) -> list[DeliveryAttempt]:
        return await self._store.delivery_log(endpoint_id, limit)
