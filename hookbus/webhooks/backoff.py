"""Retry budget and backoff schedule for failing webhook endpoints."""

from dataclasses import dataclass
from typing import Any

from hookbus.webhooks.models import WebhookEndpoint

DEFAULT_BACKOFF_MINUTES: tuple[float, ...] = (1, 5, 15, 60, 360)
DEFAULT_MAX_FAILURES = 5


@dataclass(frozen=True)
class BackoffPolicy:
    """Lookup-table backoff indexed by failure_count, capped at max_failures.

    failure_count N waits schedule[N - 1] minutes after the last attempt (the
    last entry repeats past the end of the table). Endpoints at or above
    max_failures are never retried automatically.
    """

    schedule_minutes: tuple[float, ...] = DEFAULT_BACKOFF_MINUTES
    max_failures: int = DEFAULT_MAX_FAILURES

    def __post_init__(self) -> None:
        if not self.schedule_minutes:
            raise ValueError("backoff schedule must not be empty")
        if any(m < 0 for m in self.schedule_minutes):
            raise ValueError("backoff intervals must be non-negative")
        if any(a > b for a, b in zip(self.schedule_minutes, self.schedule_minutes[1:])):
            raise ValueError("backoff schedule must be non-decreasing")
        if self.max_failures < 1:
            raise ValueError("max_failures must be at least 1")

    @classmethod
    def from_settings(cls, webhooks_cfg: dict[str, Any]) -> "BackoffPolicy":
        return cls(
            schedule_minutes=tuple(webhooks_cfg.get("backoff_minutes", DEFAULT_BACKOFF_MINUTES)),
            max_failures=int(webhooks_cfg.get("max_failures", DEFAULT_MAX_FAILURES)),
        )

    def interval(self, failure_count: int) -> float:
        """Seconds to wait after the last attempt for this failure_count."""
        if failure_count <= 0:
            return 0.0
        index = min(failure_count, len(self.schedule_minutes)) - 1
        return float(self.schedule_minutes[index]) * 60.0

    def exhausted(self, failure_count: int) -> bool:
        return failure_count >= self.max_failures

    def next_attempt_at(self, endpoint: WebhookEndpoint) -> float | None:
        """Epoch seconds when the endpoint becomes eligible, or None if it never will."""
        if not endpoint.enabled or endpoint.failure_count <= 0:
            return None
        if self.exhausted(endpoint.failure_count):
            return None
        last = endpoint.last_attempt_at or endpoint.last_triggered_at or 0.0
        return last + self.interval(endpoint.failure_count)

    def is_due(self, endpoint: WebhookEndpoint, now: float) -> bool:
        due_at = self.next_attempt_at(endpoint)
        return due_at is not None and now >= due_at
