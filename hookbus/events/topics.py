"""Standard event types published by the business services."""


class EventTypes:
    """Catalog of well-known event types. Any dot-segmented string may be published."""

    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    USER_INVITED = "user.invited"

    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_COMPLETED = "project.completed"
    PROJECT_ARCHIVED = "project.archived"

    MESSAGE_SENT = "message.sent"
    MESSAGE_READ = "message.read"

    MEETING_SCHEDULED = "meeting.scheduled"
    MEETING_STARTED = "meeting.started"
    MEETING_ENDED = "meeting.ended"
    MEETING_CANCELLED = "meeting.cancelled"

    CONTRACT_CREATED = "contract.created"
    CONTRACT_SENT = "contract.sent"
    CONTRACT_SIGNED = "contract.signed"
    CONTRACT_EXPIRED = "contract.expired"

    INVOICE_CREATED = "invoice.created"
    INVOICE_SENT = "invoice.sent"
    INVOICE_PAID = "invoice.paid"
    INVOICE_OVERDUE = "invoice.overdue"

    TASK_CREATED = "task.created"
    TASK_COMPLETED = "task.completed"
    TASK_ASSIGNED = "task.assigned"

    CLIENT_CREATED = "client.created"
    CLIENT_UPDATED = "client.updated"
    CLIENT_ONBOARDED = "client.onboarded"

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"

    SYSTEM_ERROR = "system.error"
    SYSTEM_WARNING = "system.warning"
    SYSTEM_INFO = "system.info"

    # Synthetic event sent by WebhookDeliveryEngine.test_endpoint; never stored
    WEBHOOK_TEST = "webhook.test"


def known_event_types() -> frozenset[str]:
    """All event type strings declared on EventTypes."""
    return frozenset(
        value
        for name, value in vars(EventTypes).items()
        if name.isupper() and isinstance(value, str)
    )
