"""
Tests for the Meta Graph client.

Uses httpx.MockTransport so requests are inspected without network access.
"""

import json
from uuid import uuid4

import httpx
import pytest

from dmtobuy.exceptions import (
    DispatchFailedError,
    PermissionDeniedError,
    RateLimitedError,
    ReauthRequiredError,
    TemporarilyUnavailableError,
)
from dmtobuy.models.api import AuthVariant, Channel
from dmtobuy.models.domain import Credential
from dmtobuy.services.meta_graph import MetaGraphClient, map_graph_error
from dmtobuy.services.retry import RetryPolicy


async def _no_sleep(delay):
    return None


def _credential(variant=AuthVariant.PAGE_LOGIN):
    return Credential(
        merchant_id=uuid4(),
        business_account_id="17841400000000001",
        access_token="TOKEN",
        auth_variant=variant,
        page_id="1029384756" if variant == AuthVariant.PAGE_LOGIN else None,
    )


def _client(handler, attempts=1):
    return MetaGraphClient(
        app_id="app-123",
        app_secret="secret",
        api_version="v21.0",
        instagram_api_version="v24.0",
        retry_policy=RetryPolicy(attempts=attempts, sleep=_no_sleep),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _error(status, code, message="boom", headers=None):
    return httpx.Response(
        status, json={"error": {"code": code, "message": message}}, headers=headers
    )


class TestMapGraphError:
    """Error taxonomy mapping."""

    @pytest.mark.parametrize(
        "response,expected",
        [
            (_error(401, 190), ReauthRequiredError),
            (_error(400, 4), RateLimitedError),
            (httpx.Response(429, text="slow down"), RateLimitedError),
            (_error(403, 10), PermissionDeniedError),
            (_error(400, 230), PermissionDeniedError),
            (_error(500, 2), TemporarilyUnavailableError),
            (httpx.Response(502, text="bad gateway"), TemporarilyUnavailableError),
            (_error(400, 100, "Invalid parameter"), DispatchFailedError),
        ],
    )
    def test_mapping(self, response, expected):
        assert isinstance(map_graph_error("send_message", response), expected)

    def test_oauth_rejection_is_reauth(self):
        error = map_graph_error("token_exchange", _error(400, 100), oauth=True)
        assert isinstance(error, ReauthRequiredError)

    @pytest.mark.parametrize(
        "code,expected",
        [
            (4, RateLimitedError),
            (17, RateLimitedError),
            (613, RateLimitedError),
            (1, TemporarilyUnavailableError),
            (2, TemporarilyUnavailableError),
        ],
    )
    def test_oauth_throttle_is_not_reauth(self, code, expected):
        """Meta sends throttles and transient codes as HTTP 400 on token calls too."""
        response = _error(400, code, "Application request limit reached")
        assert isinstance(map_graph_error("token_exchange", response, oauth=True), expected)

    def test_retry_after_parsed(self):
        error = map_graph_error("send_message", _error(429, 4, headers={"Retry-After": "30"}))
        assert isinstance(error, RateLimitedError)
        assert error.retry_after == 30.0

    def test_content_rejection_not_retryable(self):
        error = map_graph_error("send_message", _error(400, 100))
        assert not error.retryable


class TestSendMessage:
    """MetaGraphClient.send_message"""

    @pytest.mark.asyncio
    async def test_page_login_dm(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"recipient_id": "customer-1", "message_id": "mid.1"})

        credential = _credential()
        receipt = await _client(handler).send_message(credential, "customer-1", Channel.DM, "Hi")

        request = seen[0]
        assert request.url.host == "graph.facebook.com"
        assert request.url.path == "/v21.0/17841400000000001/messages"
        assert request.url.params["access_token"] == "TOKEN"
        assert json.loads(request.content) == {
            "recipient": {"id": "customer-1"},
            "message": {"text": "Hi"},
        }
        assert receipt.external_message_id == "mid.1"
        assert receipt.auth_variant == AuthVariant.PAGE_LOGIN

    @pytest.mark.asyncio
    async def test_direct_login_private_reply(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"message_id": "mid.2"})

        credential = _credential(AuthVariant.DIRECT_LOGIN)
        receipt = await _client(handler).send_message(
            credential, "17900000000000001", Channel.COMMENT, "Thanks!"
        )

        request = seen[0]
        assert request.url.host == "graph.instagram.com"
        assert request.url.path == "/v24.0/17841400000000001/messages"
        assert request.headers["Authorization"] == "Bearer TOKEN"
        assert "access_token" not in request.url.params
        assert json.loads(request.content)["recipient"] == {"comment_id": "17900000000000001"}
        assert receipt.recipient_id == "17900000000000001"

    @pytest.mark.asyncio
    async def test_invalid_token(self):
        client = _client(lambda request: _error(401, 190, "Error validating access token"))
        with pytest.raises(ReauthRequiredError):
            await client.send_message(_credential(), "customer-1", Channel.DM, "Hi")

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self):
        responses = iter(
            [httpx.Response(503, text="unavailable"), httpx.Response(200, json={"message_id": "m"})]
        )
        client = _client(lambda request: next(responses), attempts=2)
        receipt = await client.send_message(_credential(), "customer-1", Channel.DM, "Hi")
        assert receipt.external_message_id == "m"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(TemporarilyUnavailableError):
            await _client(handler).send_message(_credential(), "customer-1", Channel.DM, "Hi")

    @pytest.mark.asyncio
    async def test_missing_message_id(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(DispatchFailedError):
            await client.send_message(_credential(), "customer-1", Channel.DM, "Hi")


class TestExchangeToken:
    """MetaGraphClient.exchange_token"""

    @pytest.mark.asyncio
    async def test_page_login_exchange(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"access_token": "NEW", "expires_in": 5184000})

        grant = await _client(handler).exchange_token(_credential())

        params = seen[0].url.params
        assert seen[0].url.path == "/v21.0/oauth/access_token"
        assert params["grant_type"] == "fb_exchange_token"
        assert params["client_id"] == "app-123"
        assert params["fb_exchange_token"] == "TOKEN"
        assert grant.access_token == "NEW"
        assert grant.expires_in == 5184000

    @pytest.mark.asyncio
    async def test_direct_login_refresh(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"access_token": "NEW", "expires_in": 5184000})

        await _client(handler).exchange_token(_credential(AuthVariant.DIRECT_LOGIN))

        assert seen[0].url.host == "graph.instagram.com"
        assert seen[0].url.path == "/refresh_access_token"
        assert seen[0].url.params["grant_type"] == "ig_refresh_token"

    @pytest.mark.asyncio
    async def test_rejected_exchange(self):
        client = _client(lambda request: _error(400, 100, "Invalid OAuth access token"))
        with pytest.raises(ReauthRequiredError):
            await client.exchange_token(_credential())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [4, 17, 2])
    async def test_throttled_exchange_keeps_grant(self, code):
        client = _client(lambda request: _error(400, code, "Application request limit reached"))
        with pytest.raises((RateLimitedError, TemporarilyUnavailableError)):
            await client.exchange_token(_credential())

    @pytest.mark.asyncio
    async def test_exchange_without_token(self):
        client = _client(lambda request: httpx.Response(200, json={"expires_in": 10}))
        with pytest.raises(ReauthRequiredError):
            await client.exchange_token(_credential())


class TestSubscription:
    """Webhook subscription endpoints."""

    @pytest.mark.asyncio
    async def test_get_subscription_page_login_uses_page(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={"data": [{"id": "app-123", "subscribed_fields": ["messages", "comments"]}]},
            )

        state = await _client(handler).get_subscription(_credential())

        assert seen[0].url.path == "/v21.0/1029384756/subscribed_apps"
        assert state.subscribed
        assert state.subscribed_fields == ("messages", "comments")

    @pytest.mark.asyncio
    async def test_not_subscribed(self):
        client = _client(lambda request: httpx.Response(200, json={"data": [{"id": "other"}]}))
        state = await client.get_subscription(_credential())
        assert not state.subscribed

    @pytest.mark.asyncio
    async def test_subscribe(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        result = await _client(handler).subscribe(
            _credential(AuthVariant.DIRECT_LOGIN), ["messages", "comments"]
        )

        assert result
        assert seen[0].method == "POST"
        assert seen[0].url.params["subscribed_fields"] == "messages,comments"

    @pytest.mark.asyncio
    async def test_already_subscribed_is_success(self):
        client = _client(lambda request: _error(400, 200, "App already subscribed"))
        assert await client.subscribe(_credential(), ["messages"])
