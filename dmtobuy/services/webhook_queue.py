"""
Webhook Queue - durable hand-off between the webhook endpoint and the pipeline.

The endpoint persists normalized items before acknowledging the provider;
the worker claims batches, runs each item through the pipeline in its own
task (bounded by a semaphore), and requeues retryable failures with
exponential backoff until the attempt budget is spent.
"""

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from structlog import get_logger

from dmtobuy.models.domain import Ignored, QueuedEvent
from dmtobuy.observability import metrics
from dmtobuy.services.normalizer import normalize, split_envelope
from dmtobuy.services.pipeline import AutomationPipeline
from dmtobuy.services.repositories import WebhookQueueRepository

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class EnqueueSummary:
    """What happened to the items of one webhook body."""

    queued: int = 0
    duplicates: int = 0
    ignored: int = 0


@dataclass(frozen=True)
class DrainSummary:
    """Totals for one drain pass."""

    claimed: int = 0
    done: int = 0
    requeued: int = 0
    failed: int = 0


class WebhookQueue:
    """Enqueue webhook items and drain them through the pipeline."""

    def __init__(
        self,
        repository: WebhookQueueRepository,
        pipeline: AutomationPipeline,
        batch_size: int = 50,
        max_attempts: int = 3,
        retry_base_seconds: int = 30,
        visibility_timeout_seconds: int = 300,
        concurrency: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self._semaphore = asyncio.Semaphore(concurrency)
        self._clock = clock or _utc_now

    async def enqueue_body(self, body: Mapping[str, Any]) -> EnqueueSummary:
        """
        Split, normalize and persist a webhook body.

        Database errors propagate so the endpoint can answer 503 and the
        provider redelivers.
        """
        queued = duplicates = ignored = 0
        for item in split_envelope(body):
            normalized = normalize(item)
            if isinstance(normalized, Ignored):
                ignored += 1
                metrics.record_webhook_item("ignored")
                logger.debug("webhook_item_ignored", reason=normalized.reason)
                continue
            if await self.repository.enqueue(normalized, item):
                queued += 1
                metrics.record_webhook_item("queued")
            else:
                duplicates += 1
                metrics.record_webhook_item("duplicate")
        return EnqueueSummary(queued, duplicates, ignored)

    def retry_delay(self, attempts: int, retry_after: float | None = None) -> timedelta:
        if retry_after is not None:
            return timedelta(seconds=retry_after)
        return timedelta(seconds=self.retry_base_seconds * 2 ** (attempts - 1))

    async def drain(self, max_batches: int = 10) -> DrainSummary:
        """Claim and process batches until the queue is empty or max_batches is hit."""
        claimed = done = requeued = failed = 0
        for _ in range(max_batches):
            batch = await self.repository.claim_batch(
                self.batch_size, self._clock(), self.visibility_timeout_seconds
            )
            if not batch:
                break
            claimed += len(batch)
            statuses = await asyncio.gather(*(self._handle(event) for event in batch))
            done += statuses.count("done")
            requeued += statuses.count("requeued")
            failed += statuses.count("failed")

        if claimed:
            logger.info(
                "webhook_queue_drained",
                claimed=claimed,
                done=done,
                requeued=requeued,
                failed=failed,
            )
        return DrainSummary(claimed, done, requeued, failed)

    async def _handle(self, event: QueuedEvent) -> str:
        async with self._semaphore:
            try:
                result = await self.pipeline.process(event.to_item(), is_retry=event.attempts > 1)
            except Exception as exc:
                logger.error(
                    "pipeline_unexpected_error",
                    queue_event_id=str(event.id),
                    attempts=event.attempts,
                    error=str(exc),
                    exc_info=True,
                )
                metrics.record_error(type(exc).__name__, "pipeline")
                return await self._retry_or_fail(event, str(exc), None)

            if result.retryable:
                return await self._retry_or_fail(event, result.reason.value, result.retry_after)

            await self.repository.mark_done(event.id, result.outcome, result.reason)
            metrics.queue_events_total.labels(status="done").inc()
            return "done"

    async def _retry_or_fail(
        self, event: QueuedEvent, error: str, retry_after: float | None
    ) -> str:
        if event.attempts >= self.max_attempts:
            await self.repository.mark_failed(event.id, error)
            metrics.queue_events_total.labels(status="failed").inc()
            logger.warning(
                "queue_event_failed", queue_event_id=str(event.id), attempts=event.attempts
            )
            return "failed"

        not_before = self._clock() + self.retry_delay(event.attempts, retry_after)
        await self.repository.reschedule(event.id, not_before, error)
        metrics.queue_events_total.labels(status="requeued").inc()
        logger.info(
            "queue_event_requeued",
            queue_event_id=str(event.id),
            attempts=event.attempts,
            not_before=not_before.isoformat(),
        )
        return "requeued"
