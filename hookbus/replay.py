"""Replay coordinator: one bounded pass over failed events and failing endpoints.

Does not schedule itself; an external trigger (cron, `python -m hookbus replay`)
calls replay_failed() periodically.
"""

import logging
import time
from typing import Callable

from pydantic import BaseModel

from hookbus.events.models import EventStatus
from hookbus.events.router import EventRouter
from hookbus.webhooks.backoff import BackoffPolicy
from hookbus.webhooks.delivery import WebhookDeliveryEngine

logger = logging.getLogger(__name__)


class ReplayReport(BaseModel):
    """Outcome of one replay pass."""

    stale_failed: int = 0
    events_replayed: int = 0
    events_completed: int = 0
    events_failed: int = 0
    events_skipped: int = 0
    endpoints_retried: int = 0
    endpoints_recovered: int = 0
    endpoints_skipped: int = 0


class ReplayCoordinator:
    """Resubmits failed events to the router and retries failing endpoints on backoff."""

    def __init__(
        self,
        router: EventRouter,
        engine: WebhookDeliveryEngine | None = None,
        backoff: BackoffPolicy | None = None,
        max_retries: int = 3,
        batch_size: int = 100,
        stale_timeout: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._router = router
        self._engine = engine
        if backoff is None:
            backoff = engine.backoff if engine is not None else BackoffPolicy()
        self._backoff = backoff
        self._max_retries = max_retries
        self._batch_size = batch_size
        self._stale_timeout = stale_timeout
        self._clock = clock

    async def replay_failed(self, now: float | None = None) -> ReplayReport:
        """Run one pass over a snapshot of failed events and failing endpoints.

        now defaults to the coordinator clock and drives both stale detection
        and endpoint backoff eligibility.
        """
        report = ReplayReport()
        store = self._router.store
        now = self._clock() if now is None else now

        report.stale_failed = await store.fail_stale(self._stale_timeout, now=now)
        if report.stale_failed:
            logger.warning("Replay: %d events stuck in processing marked failed", report.stale_failed)

        await self._replay_events(report)
        if self._engine is not None:
            await self._retry_endpoints(self._engine, report, now)

        logger.info(
            "Replay pass: %d events replayed (%d completed, %d failed, %d skipped), "
            "%d endpoints retried (%d recovered, %d skipped)",
            report.events_replayed,
            report.events_completed,
            report.events_failed,
            report.events_skipped,
            report.endpoints_retried,
            report.endpoints_recovered,
            report.endpoints_skipped,
        )
        return report

    async def _replay_events(self, report: ReplayReport) -> None:
        store = self._router.store
        events = await store.fetch_failed(self._max_retries, limit=self._batch_size)
        for event in events:
            if not await store.mark_replay(event.id, self._max_retries):
                # Replayed by another process, or budget used up since the snapshot
                report.events_skipped += 1
                continue
            logger.info(
                "Replaying event %s (%s), attempt %d/%d",
                event.id,
                event.event_type,
                event.retry_count + 1,
                self._max_retries,
            )
            status = await self._router.dispatch(event.id)
            if status is None:
                report.events_skipped += 1
                continue
            report.events_replayed += 1
            if status == EventStatus.COMPLETED:
                report.events_completed += 1
            else:
                report.events_failed += 1

    async def _retry_endpoints(
        self, engine: WebhookDeliveryEngine, report: ReplayReport, now: float
    ) -> None:
        candidates = await engine.store.list_failing(
            self._backoff.max_failures, limit=self._batch_size
        )
        for endpoint in candidates:
            if not self._backoff.is_due(endpoint, now):
                report.endpoints_skipped += 1
                continue
            attempt = await engine.redeliver(endpoint)
            if attempt is None:
                report.endpoints_skipped += 1
                continue
            report.endpoints_retried += 1
            if attempt.delivered:
                report.endpoints_recovered += 1
