"""
Tests for the webhook queue.

Enqueue deduplication, draining through the pipeline, and the requeue
policy for retryable results and unexpected errors.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from dmtobuy.models.api import DecisionOutcome, ReasonCode
from dmtobuy.models.domain import PipelineResult
from dmtobuy.services.pipeline import AutomationPipeline
from dmtobuy.services.webhook_queue import WebhookQueue

RETRYABLE = PipelineResult(
    DecisionOutcome.SUPPRESS, ReasonCode.TEMPORARILY_UNAVAILABLE, retryable=True
)


@pytest.fixture
def pipeline():
    mock = MagicMock(spec=AutomationPipeline)
    mock.process = AsyncMock(
        return_value=PipelineResult(DecisionOutcome.SEND, ReasonCode.STORE_CONTEXT)
    )
    return mock


@pytest.fixture
def queue(harness, pipeline, now):
    """Queue over the harness repository with a scripted pipeline."""
    return WebhookQueue(harness.queue_repository, pipeline, max_attempts=3, clock=lambda: now)


@pytest.fixture
def mixed_body(make_comment_payload, make_dm_payload):
    """One comment plus one echo of our own DM."""
    body = make_comment_payload()
    echo = make_dm_payload()["entry"][0]["messaging"][0]
    echo["message"]["is_echo"] = True
    body["entry"][0]["messaging"] = [echo]
    return body


class TestEnqueue:
    """WebhookQueue.enqueue_body"""

    @pytest.mark.asyncio
    async def test_summary(self, queue, harness, mixed_body):
        summary = await queue.enqueue_body(mixed_body)

        assert (summary.queued, summary.duplicates, summary.ignored) == (1, 0, 1)
        [row] = harness.queue_repository.rows.values()
        assert row.item.field == "comments"

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, queue, harness, mixed_body):
        await queue.enqueue_body(mixed_body)
        summary = await queue.enqueue_body(mixed_body)

        assert (summary.queued, summary.duplicates) == (0, 1)
        assert len(harness.queue_repository.rows) == 1

    @pytest.mark.asyncio
    async def test_unknown_object_enqueues_nothing(self, queue, harness):
        summary = await queue.enqueue_body({"object": "whatsapp_business_account", "entry": []})
        assert summary.queued == 0
        assert harness.queue_repository.rows == {}

    @pytest.mark.asyncio
    async def test_repository_error_propagates(self, queue, harness, make_dm_payload):
        harness.queue_repository.enqueue = AsyncMock(side_effect=ConnectionError("db down"))
        with pytest.raises(ConnectionError):
            await queue.enqueue_body(make_dm_payload())


class TestDrain:
    """WebhookQueue.drain"""

    @pytest.mark.asyncio
    async def test_done(self, queue, harness, pipeline, make_dm_payload):
        await queue.enqueue_body(make_dm_payload())

        summary = await queue.drain()

        assert (summary.claimed, summary.done) == (1, 1)
        [row] = harness.queue_repository.rows.values()
        assert (row.status, row.outcome) == ("done", DecisionOutcome.SEND)
        assert pipeline.process.await_args.kwargs["is_retry"] is False

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        summary = await queue.drain()
        assert summary.claimed == 0

    @pytest.mark.asyncio
    async def test_retryable_result_requeued_with_backoff(
        self, queue, harness, pipeline, make_dm_payload, now
    ):
        pipeline.process.return_value = RETRYABLE
        await queue.enqueue_body(make_dm_payload())

        summary = await queue.drain()

        assert summary.requeued == 1
        [row] = harness.queue_repository.rows.values()
        assert row.status == "pending"
        assert row.not_before == now + timedelta(seconds=30)
        assert row.last_error == "temporarily_unavailable"

    @pytest.mark.asyncio
    async def test_retry_after_overrides_backoff(
        self, queue, harness, pipeline, make_dm_payload, now
    ):
        pipeline.process.return_value = PipelineResult(
            DecisionOutcome.SUPPRESS, ReasonCode.RATE_LIMITED, retryable=True, retry_after=600.0
        )
        await queue.enqueue_body(make_dm_payload())

        await queue.drain()

        [row] = harness.queue_repository.rows.values()
        assert row.not_before == now + timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_failed_after_max_attempts(self, queue, harness, pipeline, make_dm_payload):
        pipeline.process.return_value = RETRYABLE
        await queue.enqueue_body(make_dm_payload())
        [row] = harness.queue_repository.rows.values()
        row.attempts = 2

        summary = await queue.drain()

        assert summary.failed == 1
        assert row.status == "failed"
        assert pipeline.process.await_args.kwargs["is_retry"] is True

    @pytest.mark.asyncio
    async def test_unexpected_exception_requeued(
        self, queue, harness, pipeline, make_dm_payload
    ):
        pipeline.process.side_effect = RuntimeError("boom")
        await queue.enqueue_body(make_dm_payload())

        summary = await queue.drain()

        assert summary.requeued == 1
        [row] = harness.queue_repository.rows.values()
        assert row.last_error == "boom"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_batch(
        self, queue, harness, pipeline, make_dm_payload
    ):
        pipeline.process.side_effect = [
            RuntimeError("boom"),
            PipelineResult(DecisionOutcome.SEND, ReasonCode.STORE_CONTEXT),
        ]
        await queue.enqueue_body(make_dm_payload(mid="m_1"))
        await queue.enqueue_body(make_dm_payload(mid="m_2"))

        summary = await queue.drain()

        assert (summary.claimed, summary.done, summary.requeued) == (2, 1, 1)


class TestRetryDelay:
    @pytest.mark.parametrize("attempts,seconds", [(1, 30), (2, 60), (3, 120)])
    def test_exponential(self, queue, attempts, seconds):
        assert queue.retry_delay(attempts) == timedelta(seconds=seconds)

    def test_retry_after_wins(self, queue):
        assert queue.retry_delay(1, retry_after=5.0) == timedelta(seconds=5)
