"""
Tests for attribution recording.

Message -> LinkSent -> click / order chain, plus the URL and user-agent
helpers used by the redirect and commerce routes.
"""

from uuid import uuid4

import pytest

from dmtobuy.models.api import AuthVariant, Channel, DecisionOutcome, LinkKind, ReasonCode
from dmtobuy.models.domain import Decision, DispatchReceipt, MessageRecord, ResolvedLink
from dmtobuy.services.attribution import (
    client_ip,
    infer_channel,
    is_browser_user_agent,
    parse_attribution_url,
)

IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
INSTAGRAM_IN_APP = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148 Instagram 300.0.0.0"
)
FACEBOOK_CRAWLER = "facebookexternalhit/1.1 (+http://www.facebook.com/externalhit_uatext.php)"


def _decision(*links):
    return Decision(
        outcome=DecisionOutcome.SEND,
        reason=ReasonCode.STORE_CONTEXT,
        channel=Channel.DM,
        links=links,
    )


def _receipt():
    return DispatchReceipt("mid.out.1", "customer-1", Channel.DM, AuthVariant.PAGE_LOGIN)


@pytest.fixture
def message(harness, merchant, now):
    """An inbound DM already in the message log."""
    record = MessageRecord(
        id=uuid4(),
        merchant_id=merchant.id,
        external_id="m_0001",
        channel=Channel.DM,
        sender_id="customer-1",
        text="Where can I buy this?",
        created_at=now,
    )
    harness.messages.rows[(merchant.id, record.external_id)] = record
    return record


class TestHelpers:
    @pytest.mark.parametrize(
        "user_agent,expected",
        [
            (IPHONE_SAFARI, True),
            (INSTAGRAM_IN_APP, True),
            (FACEBOOK_CRAWLER, False),
            ("Googlebot/2.1", False),
            ("curl/8.0", False),
            ("", False),
            (None, False),
        ],
    )
    def test_browser_user_agent(self, user_agent, expected):
        assert is_browser_user_agent(user_agent) is expected

    def test_client_ip_prefers_first_forwarded(self):
        assert client_ip("203.0.113.7, 10.0.0.1", "10.0.0.2") == "203.0.113.7"
        assert client_ip(None, "10.0.0.2") == "10.0.0.2"
        assert client_ip(" , ", None) is None

    def test_parse_attribution_url(self):
        url = "/products/tote?ref=link_abc123&utm_medium=ig_comment&utm_source=instagram"
        assert parse_attribution_url(url) == ("abc123", "ig_comment")

    @pytest.mark.parametrize(
        "url", [None, "", "/products/tote", "/?ref=other_1", "/?ref=link_"]
    )
    def test_parse_attribution_url_without_ref(self, url):
        assert parse_attribution_url(url) is None

    def test_infer_channel(self):
        assert infer_channel("ig_dm") == Channel.DM
        assert infer_channel("ig_comment") == Channel.COMMENT
        assert infer_channel("email") is None
        assert infer_channel(None) is None


class TestRecord:
    """AttributionRecorder.record"""

    @pytest.mark.asyncio
    async def test_sent_reply_records_checkout_link(self, harness, message, now):
        product = ResolvedLink(LinkKind.PRODUCT_PAGE, "https://s/products/t", "p1")
        checkout = ResolvedLink(LinkKind.CHECKOUT, "https://s/cart/1:1", "c1")

        inserted = await harness.recorder.record(
            message, _decision(product, checkout), "Here you go", _receipt()
        )

        assert inserted
        sent = harness.links.links_sent["c1"]
        assert sent.message_id == message.id
        assert sent.target_url == "https://s/cart/1:1"
        assert sent.reply_text == "Here you go"
        assert sent.extra_link_ids == ("p1",)
        stored = harness.messages.rows[(message.merchant_id, message.external_id)]
        assert stored.outcome == DecisionOutcome.SEND
        assert stored.replied_at == now

    @pytest.mark.asyncio
    async def test_second_record_does_not_duplicate(self, harness, message):
        link = ResolvedLink(LinkKind.STOREFRONT, "https://s/collections/all", "s1")
        await harness.recorder.record(message, _decision(link), "Shop here", _receipt())
        again = await harness.recorder.record(message, _decision(link), "Shop here", _receipt())

        assert not again
        assert len(harness.links.links_sent) == 1

    @pytest.mark.asyncio
    async def test_unsent_decision_records_outcome_only(self, harness, message):
        link = ResolvedLink(LinkKind.STOREFRONT, "https://s/collections/all", "s1")
        assert not await harness.recorder.record(message, _decision(link), None)

        stored = harness.messages.rows[(message.merchant_id, message.external_id)]
        assert stored.outcome == DecisionOutcome.SEND
        assert stored.replied_at is None
        assert harness.links.links_sent == {}

    @pytest.mark.asyncio
    async def test_record_suppression(self, harness, message):
        await harness.recorder.record_suppression(message, ReasonCode.OPTED_OUT)
        stored = harness.messages.rows[(message.merchant_id, message.external_id)]
        assert (stored.outcome, stored.reason) == (DecisionOutcome.SUPPRESS, ReasonCode.OPTED_OUT)


class TestClicksAndOrders:
    @pytest.mark.asyncio
    async def test_browser_click_counted(self, harness):
        assert await harness.recorder.record_click("c1", INSTAGRAM_IN_APP, "203.0.113.7")
        assert harness.links.clicks == [("c1", INSTAGRAM_IN_APP, "203.0.113.7")]

    @pytest.mark.asyncio
    async def test_crawler_click_ignored(self, harness):
        assert not await harness.recorder.record_click("c1", FACEBOOK_CRAWLER, "31.13.0.1")
        assert harness.links.clicks == []

    @pytest.mark.asyncio
    async def test_order_attributed_to_sent_link(self, harness, message, merchant):
        link = ResolvedLink(LinkKind.CHECKOUT, "https://s/cart/1:1", "c1")
        await harness.recorder.record(message, _decision(link), "Buy now", _receipt())

        attribution = await harness.recorder.record_order(
            merchant.id,
            {
                "id": 5550001,
                "landing_site": "/cart/1:1?ref=link_c1&utm_medium=ig_comment",
                "total_price": "45.00",
                "currency": "USD",
            },
        )

        assert attribution.link_id == "c1"
        assert attribution.message_id == message.id
        assert attribution.channel == Channel.COMMENT
        assert attribution.order_id == "5550001"
        assert attribution.total_price == "45.00"
        assert (merchant.id, "5550001") in harness.attributions.rows

    @pytest.mark.asyncio
    async def test_order_through_product_page_link(self, harness, message, merchant):
        product = ResolvedLink(LinkKind.PRODUCT_PAGE, "https://s/products/t?ref=link_p1", "p1")
        checkout = ResolvedLink(LinkKind.CHECKOUT, "https://s/cart/1:1?ref=link_c1", "c1")
        await harness.recorder.record(
            message, _decision(product, checkout), "Here you go", _receipt()
        )

        attribution = await harness.recorder.record_order(
            merchant.id,
            {"id": 5550002, "landing_site": "/products/t?ref=link_p1&utm_medium=ig_dm"},
        )

        assert attribution.link_id == "p1"
        assert attribution.message_id == message.id
        assert attribution.channel == Channel.DM

    @pytest.mark.asyncio
    async def test_order_channel_falls_back_to_link(self, harness, message, merchant):
        link = ResolvedLink(LinkKind.CHECKOUT, "https://s/cart/1:1", "c1")
        await harness.recorder.record(message, _decision(link), "Buy now", _receipt())

        attribution = await harness.recorder.record_order(
            merchant.id, {"id": 7, "referring_site": "https://go.example.com/?ref=link_c1"}
        )
        assert attribution.channel == Channel.DM

    @pytest.mark.asyncio
    async def test_order_recorded_once(self, harness, merchant):
        order = {"id": 8, "landing_site": "/?ref=link_zz"}
        await harness.recorder.record_order(merchant.id, order)
        await harness.recorder.record_order(merchant.id, order)
        assert len(harness.attributions.rows) == 1

    @pytest.mark.asyncio
    async def test_order_without_ref_ignored(self, harness, merchant):
        assert await harness.recorder.record_order(merchant.id, {"id": 9}) is None
        assert harness.attributions.rows == {}
