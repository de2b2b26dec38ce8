"""
Attribution Recorder - outcomes, sent links, clicks and attributed orders.

The chain is Message -> LinkSent (link_id) -> LinkClick / OrderAttribution.
An order is attributed when its landing or referring URL carries the
``ref=link_{id}`` parameter we put on every link.
"""

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs, urlsplit
from uuid import UUID

from structlog import get_logger

from dmtobuy.models.api import Channel, DecisionOutcome, ReasonCode
from dmtobuy.models.domain import (
    Decision,
    DispatchReceipt,
    LinkSentData,
    MessageRecord,
    OrderAttributionData,
)
from dmtobuy.observability import metrics
from dmtobuy.services.repositories import (
    AttributionRepository,
    LinkRepository,
    MessageRepository,
)

logger = get_logger(__name__)

BROWSER_MARKERS = ("mozilla/", "opera", "opr/")
CRAWLER_MARKERS = ("facebookexternalhit", "facebot", "bot", "crawler", "spider", "preview")

DM_MEDIUMS = frozenset({"ig_dm", "instagram_dm", "dm"})
COMMENT_MEDIUMS = frozenset({"ig_comment", "instagram_comment", "comment"})

REF_PREFIX = "link_"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def is_browser_user_agent(user_agent: str | None) -> bool:
    """True for real browsers (in-app browsers included), False for link-preview crawlers."""
    ua = (user_agent or "").strip().lower()
    if not ua:
        return False
    if any(marker in ua for marker in CRAWLER_MARKERS):
        return False
    return any(marker in ua for marker in BROWSER_MARKERS)


def client_ip(forwarded_for: str | None, peer: str | None) -> str | None:
    """First X-Forwarded-For entry, else the peer address."""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return peer


def parse_attribution_url(url: str | None) -> tuple[str, str | None] | None:
    """Return (link_id, utm_medium) when the URL carries our ref parameter."""
    if not url:
        return None
    params = parse_qs(urlsplit(url).query)
    ref = (params.get("ref") or [""])[0]
    if not ref.startswith(REF_PREFIX) or len(ref) == len(REF_PREFIX):
        return None
    medium = (params.get("utm_medium") or [None])[0]
    return ref[len(REF_PREFIX) :], medium


def infer_channel(utm_medium: str | None) -> Channel | None:
    if utm_medium in DM_MEDIUMS:
        return Channel.DM
    if utm_medium in COMMENT_MEDIUMS:
        return Channel.COMMENT
    return None


class AttributionRecorder:
    """Persist what happened to each message and what it led to."""

    def __init__(
        self,
        messages: MessageRepository,
        links: LinkRepository,
        attributions: AttributionRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.messages = messages
        self.links = links
        self.attributions = attributions
        self._clock = clock or _utc_now

    async def record(
        self,
        message: MessageRecord,
        decision: Decision,
        reply_text: str | None,
        receipt: DispatchReceipt | None = None,
    ) -> bool:
        """
        Record the decision on the message, and the sent links when a reply went out.

        One LinkSent row is written per reply: the checkout link (or the only
        link) is its primary id and every other link id in the reply rides along,
        so an order through any of them finds the message.

        Returns:
            True when a LinkSent row was inserted
        """
        replied_at = self._clock() if receipt is not None else None
        await self.messages.record_outcome(
            message.id,
            decision.outcome,
            decision.reason,
            reply_text if receipt is not None else None,
            receipt.external_message_id if receipt is not None else None,
            replied_at,
        )

        link = decision.target_link
        if receipt is None or link is None or not reply_text:
            return False

        mapping = decision.product_mapping
        inserted = await self.links.record_link_sent(
            LinkSentData(
                link_id=link.link_id,
                target_url=link.url,
                message_id=message.id,
                merchant_id=message.merchant_id,
                channel=message.channel,
                reply_text=reply_text,
                product_id=mapping.product_id if mapping else None,
                variant_id=mapping.variant_id if mapping else None,
                extra_link_ids=tuple(
                    other.link_id for other in decision.links if other.link_id != link.link_id
                ),
            )
        )
        if not inserted:
            logger.info("link_sent_exists", message_id=str(message.id))
        return inserted

    async def record_suppression(self, message: MessageRecord, reason: ReasonCode) -> None:
        """Record a pipeline-level suppression (guards, failures) on the message."""
        await self.messages.record_outcome(
            message.id, DecisionOutcome.SUPPRESS, reason, None, None, None
        )

    async def record_click(
        self, link_id: str, user_agent: str | None, ip_address: str | None
    ) -> bool:
        """Log a click for browser user agents. Returns whether it was counted."""
        counted = is_browser_user_agent(user_agent)
        if counted:
            await self.links.record_click(link_id, user_agent, ip_address)
        metrics.record_click(counted)
        return counted

    async def record_order(
        self, merchant_id: UUID, order: Mapping[str, Any]
    ) -> OrderAttributionData | None:
        """
        Attribute a storefront order to a sent link.

        Returns:
            The attribution, or None when the order carries no link reference
        """
        parsed = parse_attribution_url(order.get("landing_site")) or parse_attribution_url(
            order.get("referring_site")
        )
        order_id = order.get("id") or order.get("order_number")
        if parsed is None or order_id is None:
            return None

        link_id, medium = parsed
        link_sent = await self.links.get_link_sent(link_id)
        channel = infer_channel(medium) or (link_sent.channel if link_sent else None)
        total = order.get("total_price") or order.get("current_total_price")
        currency = order.get("currency") or order.get("presentment_currency")

        attribution = OrderAttributionData(
            merchant_id=merchant_id,
            order_id=str(order_id),
            link_id=link_id,
            message_id=link_sent.message_id if link_sent else None,
            channel=channel,
            total_price=str(total) if total is not None else None,
            currency=str(currency) if currency else None,
        )
        inserted = await self.attributions.record_order(attribution)
        if inserted:
            metrics.orders_attributed_total.labels(
                channel=channel.value if channel else "unknown"
            ).inc()
        logger.info(
            "order_attributed" if inserted else "order_already_attributed",
            merchant_id=str(merchant_id),
            order_id=str(order_id),
            link_id=link_id,
        )
        return attribution
