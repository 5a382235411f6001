"""Outbound webhooks: endpoint registry, signing, delivery, backoff."""

from hookbus.webhooks.backoff import BackoffPolicy
from hookbus.webhooks.delivery import WebhookDeliveryEngine, WebhookDeliveryError
from hookbus.webhooks.models import (
    DeliveryAttempt,
    DeliveryStatus,
    WebhookEndpoint,
    WebhookEnvelope,
)
from hookbus.webhooks.signer import canonical_json, sign, verify
from hookbus.webhooks.store import EndpointNotFoundError, EndpointStore

__all__ = [
    "BackoffPolicy",
    "DeliveryAttempt",
    "DeliveryStatus",
    "EndpointNotFoundError",
    "EndpointStore",
    "WebhookDeliveryEngine",
    "WebhookDeliveryError",
    "WebhookEndpoint",
    "WebhookEnvelope",
    "canonical_json",
    "sign",
    "verify",
]
