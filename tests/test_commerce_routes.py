"""
Tests for storefront platform webhooks: order attribution and uninstall.
"""

import json
from uuid import uuid4

import pytest

from dmtobuy.models.api import Channel, PlanTier
from dmtobuy.models.domain import LinkSentData

SHOP = "demo-store.myshopify.com"


@pytest.fixture
def post_signed(client, sign_commerce):
    """POST a JSON body with a valid commerce signature."""

    def _post(path, payload, shop=SHOP):
        body = json.dumps(payload).encode()
        headers = {"X-Shopify-Hmac-Sha256": sign_commerce(body), "X-Shopify-Shop-Domain": shop}
        return client.post(path, content=body, headers=headers)

    return _post


@pytest.fixture
def sent_link(harness, merchant):
    link = LinkSentData(
        link_id="lnk00007",
        target_url="https://demo-store.myshopify.com/cart/9001:1?ref=link_lnk00007",
        message_id=uuid4(),
        merchant_id=merchant.id,
        channel=Channel.DM,
        reply_text="Grab it here",
    )
    harness.links.links_sent[link.link_id] = link
    return link


class TestOrderCreated:
    """POST /webhooks/commerce/orders/create"""

    def test_attributed_order(self, post_signed, harness, merchant, sent_link):
        response = post_signed(
            "/webhooks/commerce/orders/create",
            {
                "id": 820982911946154500,
                "landing_site": "/cart/9001:1?ref=link_lnk00007&utm_medium=ig_dm",
                "total_price": "45.00",
                "currency": "USD",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"attributed": True, "link_id": "lnk00007"}
        attribution = harness.attributions.rows[(merchant.id, "820982911946154500")]
        assert attribution.channel == Channel.DM

    def test_order_without_ref(self, post_signed, harness):
        response = post_signed("/webhooks/commerce/orders/create", {"id": 1, "landing_site": "/"})
        assert response.json()["attributed"] is False
        assert harness.attributions.rows == {}

    def test_unknown_shop_acknowledged(self, post_signed, harness):
        response = post_signed(
            "/webhooks/commerce/orders/create",
            {"id": 2, "landing_site": "/?ref=link_lnk00007"},
            shop="other-shop.myshopify.com",
        )
        assert response.status_code == 200
        assert response.json()["attributed"] is False

    def test_bad_signature(self, client, harness):
        response = client.post(
            "/webhooks/commerce/orders/create",
            content=b'{"id": 3}',
            headers={
                "X-Shopify-Hmac-Sha256": "bm90LWEtc2lnbmF0dXJl",
                "X-Shopify-Shop-Domain": SHOP,
            },
        )
        assert response.status_code == 401

    def test_missing_shop_header(self, client, sign_commerce):
        body = b'{"id": 4}'
        response = client.post(
            "/webhooks/commerce/orders/create",
            content=body,
            headers={"X-Shopify-Hmac-Sha256": sign_commerce(body)},
        )
        assert response.status_code == 400


class TestAppUninstalled:
    """POST /webhooks/commerce/app/uninstalled"""

    def test_deactivates_and_disconnects(self, post_signed, harness, merchant):
        response = post_signed("/webhooks/commerce/app/uninstalled", {"id": 1})

        assert response.status_code == 200
        assert response.json() == {"status": "deactivated", "merchant_id": str(merchant.id)}
        stored = harness.merchants.rows[merchant.id]
        assert not stored.is_active
        assert stored.plan_tier == PlanTier.FREE
        assert merchant.id not in harness.credential_repository.rows

    def test_unknown_shop_ignored(self, post_signed):
        response = post_signed(
            "/webhooks/commerce/app/uninstalled", {"id": 1}, shop="other-shop.myshopify.com"
        )
        assert response.json() == {"status": "ignored"}
