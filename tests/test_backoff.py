"""Tests for the webhook backoff schedule and retry budget."""

import pytest

from hookbus.webhooks.backoff import BackoffPolicy
from hookbus.webhooks.models import WebhookEndpoint

NOW = 1_700_000_000.0


def _endpoint(failure_count: int, last_attempt_at: float | None = NOW, enabled: bool = True) -> WebhookEndpoint:
    return WebhookEndpoint(
        id="wh-1",
        tenant_id="t-1",
        name="crm",
        url="https://example.com/hook",
        secret="s",
        event_types=("*",),
        enabled=enabled,
        failure_count=failure_count,
        last_attempt_at=last_attempt_at,
    )


def test_default_intervals() -> None:
    policy = BackoffPolicy()
    assert [policy.interval(n) / 60 for n in range(1, 6)] == [1, 5, 15, 60, 360]
    assert policy.interval(0) == 0.0
    assert policy.interval(9) == 360 * 60


def test_intervals_non_decreasing() -> None:
    policy = BackoffPolicy()
    intervals = [policy.interval(n) for n in range(1, 6)]
    assert intervals == sorted(intervals)


def test_exhausted_endpoint_never_due() -> None:
    policy = BackoffPolicy()
    for failures in (5, 6, 50):
        ep = _endpoint(failures, last_attempt_at=0.0)
        assert policy.exhausted(failures) is True
        assert policy.is_due(ep, NOW + 10 * 365 * 86400) is False
        assert policy.next_attempt_at(ep) is None


@pytest.mark.parametrize("failures,wait_minutes", [(1, 1), (2, 5), (3, 15), (4, 60)])
def test_due_only_after_interval(failures: int, wait_minutes: int) -> None:
    policy = BackoffPolicy()
    ep = _endpoint(failures)
    assert policy.is_due(ep, NOW + wait_minutes * 60 - 1) is False
    assert policy.is_due(ep, NOW + wait_minutes * 60) is True


def test_healthy_or_disabled_endpoint_not_due() -> None:
    policy = BackoffPolicy()
    assert policy.is_due(_endpoint(0), NOW + 86400) is False
    assert policy.is_due(_endpoint(2, enabled=False), NOW + 86400) is False


def test_never_attempted_endpoint_is_due() -> None:
    policy = BackoffPolicy()
    assert policy.is_due(_endpoint(1, last_attempt_at=None), NOW) is True


@pytest.mark.parametrize(
    "schedule,max_failures",
    [((), 5), ((5, 1), 5), ((-1, 2), 5), ((1, 5), 0)],
)
def test_invalid_policy_rejected(schedule: tuple, max_failures: int) -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(schedule_minutes=schedule, max_failures=max_failures)


def test_from_settings() -> None:
    policy = BackoffPolicy.from_settings({"backoff_minutes": [2, 4], "max_failures": 3})
    assert policy.schedule_minutes == (2, 4)
    assert policy.max_failures == 3
    assert policy.interval(3) == 4 * 60
