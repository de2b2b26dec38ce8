"""
Meta Graph Client - token exchange, messaging and webhook subscription.

NO DICTIONARIES - Results are returned as typed domain models and every
provider failure is translated into the exception taxonomy here, so callers
never inspect raw Graph error payloads.

Two hosts are involved:
- page-login credentials talk to graph.facebook.com with an access_token
  query parameter.
- direct-login credentials talk to graph.instagram.com with a Bearer header
  (Instagram tokens cannot be parsed by graph.facebook.com).
"""

from collections.abc import Mapping
from typing import Any

import httpx
from structlog import get_logger

from dmtobuy.exceptions import (
    AutomationError,
    DispatchFailedError,
    PermissionDeniedError,
    RateLimitedError,
    ReauthRequiredError,
    TemporarilyUnavailableError,
)
from dmtobuy.models.api import AuthVariant, Channel
from dmtobuy.models.domain import Credential, DispatchReceipt, SubscriptionState, TokenGrant
from dmtobuy.services.retry import RetryPolicy

logger = get_logger(__name__)

INVALID_TOKEN_CODE = 190
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613})
PERMISSION_CODES = frozenset({3, 10})
TRANSIENT_CODES = frozenset({1, 2})


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _graph_error(response: httpx.Response) -> tuple[int | None, str]:
    """Extract (code, message) from a Graph error body."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200]
    error = body.get("error") if isinstance(body, Mapping) else None
    if not isinstance(error, Mapping):
        return None, response.text[:200]
    code = error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    return code, str(error.get("message") or "unknown error")


def map_graph_error(
    operation: str,
    response: httpx.Response,
    credential: Credential | None = None,
    oauth: bool = False,
) -> AutomationError:
    """
    Translate a failed Graph response into the exception taxonomy.

    ``oauth`` marks token-exchange calls. There a 400/401 that is neither a
    throttle nor a transient code means the grant itself is no longer usable.
    """
    code, message = _graph_error(response)
    status = response.status_code
    merchant_id = credential.merchant_id if credential else None

    if code == INVALID_TOKEN_CODE:
        return ReauthRequiredError(merchant_id, message)
    if status == 429 or code in RATE_LIMIT_CODES:
        return RateLimitedError(operation, _parse_retry_after(response))
    if status >= 500 or code in TRANSIENT_CODES:
        return TemporarilyUnavailableError(operation, f"HTTP {status}: {message}")
    if oauth and status in (400, 401):
        return ReauthRequiredError(merchant_id, message)
    if code in PERMISSION_CODES or (code is not None and 200 <= code <= 299):
        return PermissionDeniedError(operation, code, message)
    return DispatchFailedError(code, message, retryable=False)


class MetaGraphClient:
    """Async client for the Graph endpoints the automation uses."""

    FACEBOOK_GRAPH_URL = "https://graph.facebook.com"
    INSTAGRAM_GRAPH_URL = "https://graph.instagram.com"

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        api_version: str,
        instagram_api_version: str,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.api_version = api_version
        self.instagram_api_version = instagram_api_version
        self.retry_policy = retry_policy or RetryPolicy()
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _endpoint(
        self, credential: Credential, path: str
    ) -> tuple[str, dict[str, str], dict[str, str]]:
        """Return (url, params, headers) for the credential's host and auth scheme."""
        if credential.auth_variant == AuthVariant.DIRECT_LOGIN:
            url = f"{self.INSTAGRAM_GRAPH_URL}/{self.instagram_api_version}/{path}"
            return url, {}, {"Authorization": f"Bearer {credential.access_token}"}
        url = f"{self.FACEBOOK_GRAPH_URL}/{self.api_version}/{path}"
        return url, {"access_token": credential.access_token}, {}

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        credential: Credential | None = None,
        oauth: bool = False,
        **kwargs: Any,
    ) -> Mapping[str, Any]:
        """Send one request and return the decoded body, or raise a taxonomy error."""
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TemporarilyUnavailableError(operation, type(exc).__name__) from exc

        if response.is_error:
            error = map_graph_error(operation, response, credential, oauth=oauth)
            logger.warning(
                "graph_request_failed",
                operation=operation,
                status=response.status_code,
                error_type=type(error).__name__,
            )
            raise error

        try:
            body = response.json()
        except ValueError as exc:
            raise TemporarilyUnavailableError(operation, "response was not JSON") from exc
        if not isinstance(body, Mapping):
            raise TemporarilyUnavailableError(operation, "unexpected response shape")
        return body

    # ========================================================================
    # Token exchange
    # ========================================================================

    async def exchange_token(self, credential: Credential) -> TokenGrant:
        """Exchange the current long-lived token for a fresh one."""
        if credential.auth_variant == AuthVariant.DIRECT_LOGIN:
            url = f"{self.INSTAGRAM_GRAPH_URL}/refresh_access_token"
            params = {"grant_type": "ig_refresh_token", "access_token": credential.access_token}
        else:
            url = f"{self.FACEBOOK_GRAPH_URL}/{self.api_version}/oauth/access_token"
            params = {
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": credential.access_token,
            }

        body = await self.retry_policy.run(
            "token_exchange",
            lambda: self._request(
                "token_exchange", "GET", url, credential=credential, oauth=True, params=params
            ),
        )

        token = body.get("access_token")
        if not token:
            raise ReauthRequiredError(credential.merchant_id, "exchange returned no token")
        expires_in = body.get("expires_in")
        return TokenGrant(
            access_token=str(token),
            expires_in=int(expires_in) if expires_in is not None else None,
        )

    # ========================================================================
    # Messaging
    # ========================================================================

    async def send_message(
        self, credential: Credential, recipient_id: str, channel: Channel, text: str
    ) -> DispatchReceipt:
        """
        Send a DM, or a private reply to a comment.

        For comments ``recipient_id`` is the comment id; the provider turns it
        into a DM thread with the commenter.
        """
        url, params, headers = self._endpoint(
            credential, f"{credential.business_account_id}/messages"
        )
        recipient = (
            {"comment_id": recipient_id} if channel == Channel.COMMENT else {"id": recipient_id}
        )
        payload = {"recipient": recipient, "message": {"text": text}}

        body = await self.retry_policy.run(
            "send_message",
            lambda: self._request(
                "send_message",
                "POST",
                url,
                credential=credential,
                params=params,
                headers=headers,
                json=payload,
            ),
        )

        message_id = body.get("message_id")
        if not message_id:
            raise DispatchFailedError(None, "provider response had no message_id")
        return DispatchReceipt(
            external_message_id=str(message_id),
            recipient_id=str(body.get("recipient_id") or recipient_id),
            channel=channel,
            auth_variant=credential.auth_variant,
        )

    # ========================================================================
    # Webhook subscription
    # ========================================================================

    def _subscription_path(self, credential: Credential) -> str:
        if credential.auth_variant == AuthVariant.PAGE_LOGIN:
            return f"{credential.page_id or credential.business_account_id}/subscribed_apps"
        return f"{credential.business_account_id}/subscribed_apps"

    async def get_subscription(self, credential: Credential) -> SubscriptionState:
        """Report whether our app is subscribed to the account's webhooks."""
        url, params, headers = self._endpoint(credential, self._subscription_path(credential))
        body = await self.retry_policy.run(
            "get_subscription",
            lambda: self._request(
                "get_subscription",
                "GET",
                url,
                credential=credential,
                params=params,
                headers=headers,
            ),
        )
        for app in body.get("data") or ():
            if not isinstance(app, Mapping):
                continue
            # direct-login lists subscribed fields without an app id
            if app.get("id") in (None, self.app_id):
                fields = app.get("subscribed_fields") or ()
                return SubscriptionState(subscribed=True, subscribed_fields=tuple(map(str, fields)))
        return SubscriptionState(subscribed=False)

    async def subscribe(self, credential: Credential, fields: list[str]) -> bool:
        """Subscribe our app to the account's webhooks."""
        url, params, headers = self._endpoint(credential, self._subscription_path(credential))
        params = {**params, "subscribed_fields": ",".join(fields)}
        try:
            body = await self.retry_policy.run(
                "subscribe",
                lambda: self._request(
                    "subscribe", "POST", url, credential=credential, params=params, headers=headers
                ),
            )
        except PermissionDeniedError as exc:
            if exc.code == 200 and "already" in exc.detail.lower():
                return True
            raise
        return bool(body.get("success") or body.get("data"))
