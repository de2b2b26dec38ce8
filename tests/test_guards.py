"""
Tests for compliance guards.

Covers opt-out keywords, messaging windows, usage caps and the clarifying
question limit.
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from dmtobuy.models.api import Channel, DecisionOutcome, PlanTier, ReasonCode
from dmtobuy.models.domain import Decision
from dmtobuy.services.guards import ComplianceGuards, is_opt_out_message, usage_allows_send
from dmtobuy.services.plans import get_plan


@pytest.fixture
def guards(harness, now):
    return ComplianceGuards(harness.contacts, harness.messages, clock=lambda: now)


class TestOptOutKeywords:
    @pytest.mark.parametrize("text", ["STOP", "stop", " Unsubscribe! ", "opt out", "Cancel."])
    def test_keywords(self, text):
        assert is_opt_out_message(text)

    @pytest.mark.parametrize(
        "text", ["don't stop", "stop sending me these please", "cancelled order?"]
    )
    def test_keywords_must_be_whole_message(self, text):
        assert not is_opt_out_message(text)


class TestCheckOptOut:
    @pytest.mark.asyncio
    async def test_records_dm_opt_out(self, guards, harness, merchant, make_event):
        event = make_event(Channel.DM, text="STOP")
        assert await guards.check_opt_out(merchant.id, event) == ReasonCode.OPTED_OUT
        assert (merchant.id, event.sender_id) in harness.contacts.opted_out

    @pytest.mark.asyncio
    async def test_opted_out_contact_suppressed(self, guards, harness, merchant, make_event):
        harness.contacts.opted_out.add((merchant.id, "customer-1"))
        event = make_event(Channel.COMMENT, text="How much?")
        assert await guards.check_opt_out(merchant.id, event) == ReasonCode.OPTED_OUT

    @pytest.mark.asyncio
    async def test_comment_keyword_not_recorded(self, guards, harness, merchant, make_event):
        event = make_event(Channel.COMMENT, text="stop")
        assert await guards.check_opt_out(merchant.id, event) is None
        assert not harness.contacts.opted_out


class TestCheckAge:
    def test_dm_outside_window(self, guards, make_event, now):
        event = make_event(Channel.DM, timestamp=now - timedelta(hours=25))
        assert guards.check_age(event) == ReasonCode.OUTSIDE_MESSAGING_WINDOW

    def test_dm_inside_window(self, guards, make_event, now):
        assert guards.check_age(make_event(Channel.DM, timestamp=now - timedelta(hours=23))) is None

    def test_old_comment(self, guards, make_event, now):
        event = make_event(Channel.COMMENT, timestamp=now - timedelta(days=8))
        assert guards.check_age(event) == ReasonCode.COMMENT_TOO_OLD


class TestUsage:
    def test_under_cap(self, merchant, now):
        merchant = replace(merchant, usage_count=10, usage_period_start=now)
        assert usage_allows_send(merchant, get_plan(PlanTier.GROWTH), now)

    def test_at_cap(self, merchant, now):
        merchant = replace(merchant, usage_count=500, usage_period_start=now)
        assert not usage_allows_send(merchant, get_plan(PlanTier.GROWTH), now)

    def test_new_month_resets(self, merchant, now):
        merchant = replace(
            merchant, usage_count=500, usage_period_start=datetime(2026, 9, 30, tzinfo=UTC)
        )
        assert usage_allows_send(merchant, get_plan(PlanTier.GROWTH), now)

    def test_guard_reports_cap(self, guards, merchant, now):
        merchant = replace(merchant, usage_count=25, usage_period_start=now)
        assert guards.check_usage(merchant, get_plan(PlanTier.FREE)) == ReasonCode.USAGE_CAP_REACHED


class TestClarifyingLimit:
    @pytest.mark.asyncio
    async def test_limit_reached(self, guards, harness, merchant, make_event, now):
        for n in range(2):
            record, _ = await harness.messages.record_inbound(
                merchant.id, make_event(Channel.DM, external_id=f"old-{n}")
            )
            await harness.messages.record_outcome(
                record.id,
                DecisionOutcome.ASK_CLARIFYING,
                ReasonCode.CLARIFYING_QUESTION,
                "Which product?",
                f"mid.{n}",
                now - timedelta(hours=1),
            )
        decision = Decision(
            outcome=DecisionOutcome.ASK_CLARIFYING,
            reason=ReasonCode.CLARIFYING_QUESTION,
            channel=Channel.DM,
        )
        reason = await guards.check_clarifying(merchant.id, make_event(Channel.DM), decision)
        assert reason == ReasonCode.CLARIFYING_LIMIT_REACHED

    @pytest.mark.asyncio
    async def test_send_decisions_unaffected(self, guards, merchant, make_event):
        decision = Decision(
            outcome=DecisionOutcome.SEND, reason=ReasonCode.STORE_CONTEXT, channel=Channel.DM
        )
        assert await guards.check_clarifying(merchant.id, make_event(), decision) is None
