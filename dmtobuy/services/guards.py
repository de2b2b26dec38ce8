"""
Compliance Guards - platform messaging rules and plan limits.

Each check returns the suppression reason when the event must not be
answered, or None when it may proceed.
"""

import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from structlog import get_logger

from dmtobuy.models.api import Channel, DecisionOutcome, ReasonCode
from dmtobuy.models.domain import Decision, InboundEvent, MerchantData, Plan
from dmtobuy.services.repositories import ContactRepository, MessageRepository

logger = get_logger(__name__)

OPT_OUT_KEYWORDS = ("stop", "unsubscribe", "opt out", "optout", "cancel", "no messages")
_OPT_OUT = re.compile(
    r"^\W*(" + "|".join(re.escape(word) for word in OPT_OUT_KEYWORDS) + r")\W*$",
    re.IGNORECASE,
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def is_opt_out_message(text: str) -> bool:
    """True when the whole message is an opt-out keyword ("STOP", "opt out!")."""
    return bool(_OPT_OUT.match(text.strip()))


def usage_allows_send(merchant: MerchantData, plan: Plan, now: datetime) -> bool:
    """Monthly cap check; a counter from an earlier calendar month counts as zero."""
    start = merchant.usage_period_start
    if start is None or (start.year, start.month) != (now.year, now.month):
        return plan.monthly_message_cap > 0
    return merchant.usage_count < plan.monthly_message_cap


class ComplianceGuards:
    """Opt-outs, messaging windows, usage caps and clarifying-loop limits."""

    def __init__(
        self,
        contacts: ContactRepository,
        messages: MessageRepository,
        dm_window: timedelta = timedelta(hours=24),
        comment_max_age: timedelta = timedelta(days=7),
        clarifying_max_per_day: int = 2,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.contacts = contacts
        self.messages = messages
        self.dm_window = dm_window
        self.comment_max_age = comment_max_age
        self.clarifying_max_per_day = clarifying_max_per_day
        self._clock = clock or _utc_now

    async def check_opt_out(self, merchant_id: UUID, event: InboundEvent) -> ReasonCode | None:
        """Record opt-out keywords, and suppress anyone who has opted out."""
        if event.channel == Channel.DM and is_opt_out_message(event.text):
            await self.contacts.record_opt_out(merchant_id, event.sender_id)
            logger.info("contact_opted_out", merchant_id=str(merchant_id))
            return ReasonCode.OPTED_OUT
        if await self.contacts.is_opted_out(merchant_id, event.sender_id):
            return ReasonCode.OPTED_OUT
        return None

    def check_age(self, event: InboundEvent) -> ReasonCode | None:
        age = self._clock() - event.timestamp
        if event.channel == Channel.DM and age > self.dm_window:
            return ReasonCode.OUTSIDE_MESSAGING_WINDOW
        if event.channel == Channel.COMMENT and age > self.comment_max_age:
            return ReasonCode.COMMENT_TOO_OLD
        return None

    def check_usage(self, merchant: MerchantData, plan: Plan) -> ReasonCode | None:
        if usage_allows_send(merchant, plan, self._clock()):
            return None
        logger.info(
            "usage_cap_reached",
            merchant_id=str(merchant.id),
            cap=plan.monthly_message_cap,
        )
        return ReasonCode.USAGE_CAP_REACHED

    async def check_clarifying(
        self, merchant_id: UUID, event: InboundEvent, decision: Decision
    ) -> ReasonCode | None:
        if decision.outcome != DecisionOutcome.ASK_CLARIFYING:
            return None
        since = self._clock() - timedelta(hours=24)
        asked = await self.messages.count_clarifying_since(merchant_id, event.sender_id, since)
        if asked >= self.clarifying_max_per_day:
            return ReasonCode.CLARIFYING_LIMIT_REACHED
        return None

    async def check_before_dispatch(
        self,
        merchant: MerchantData,
        plan: Plan,
        event: InboundEvent,
        decision: Decision,
    ) -> ReasonCode | None:
        """Run the post-decision checks in order; first failure wins."""
        return (
            self.check_age(event)
            or self.check_usage(merchant, plan)
            or await self.check_clarifying(merchant.id, event, decision)
        )
