"""
Dispatcher - sends a reply at most once per inbound event.

The message log doubles as the reply ledger. Before sending, the dispatcher
checks for an existing reply and then atomically claims the event; losing
either check means another unit already handled it and nothing is sent.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from structlog import get_logger

from dmtobuy.exceptions import AutomationError, ReauthRequiredError
from dmtobuy.models.api import Channel
from dmtobuy.models.domain import Credential, DispatchReceipt
from dmtobuy.observability import metrics
from dmtobuy.services.credentials import CredentialService
from dmtobuy.services.meta_graph import MetaGraphClient
from dmtobuy.services.repositories import MessageRepository

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Dispatcher:
    """Idempotent outbound messaging."""

    def __init__(
        self,
        graph_client: MetaGraphClient,
        credentials: CredentialService,
        messages: MessageRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.graph_client = graph_client
        self.credentials = credentials
        self.messages = messages
        self._clock = clock or _utc_now

    async def send(
        self,
        credential: Credential,
        recipient_id: str,
        channel: Channel,
        text: str,
        event_id: str,
    ) -> DispatchReceipt | None:
        """
        Send ``text`` in reply to event ``event_id``.

        Returns:
            The provider receipt, or None when the event was already answered

        Raises:
            AutomationError: Send failed; the claim is released so a retry can proceed.
                Any other error releases the claim the same way before propagating.
        """
        merchant_id = credential.merchant_id
        variant = credential.auth_variant.value

        if await self.messages.has_replied(merchant_id, event_id):
            logger.info("dispatch_skipped_already_replied", event_id=event_id)
            metrics.record_dispatch(variant, "duplicate")
            return None
        if not await self.messages.claim_reply(merchant_id, event_id, self._clock()):
            logger.info("dispatch_skipped_claimed", event_id=event_id)
            metrics.record_dispatch(variant, "duplicate")
            return None

        try:
            try:
                receipt = await self.graph_client.send_message(
                    credential, recipient_id, channel, text
                )
            except ReauthRequiredError:
                # The stored token may have been revoked early; one exchange, one resend.
                logger.info("dispatch_token_rejected_refreshing", merchant_id=str(merchant_id))
                refreshed = await self.credentials.force_refresh(merchant_id)
                receipt = await self.graph_client.send_message(
                    refreshed, recipient_id, channel, text
                )
        except Exception as exc:
            # Nothing went out, so the event is free for a later attempt.
            await self.messages.release_claim(merchant_id, event_id)
            metrics.record_dispatch(variant, type(exc).__name__)
            logger.warning(
                "dispatch_failed",
                merchant_id=str(merchant_id),
                event_id=event_id,
                error_type=type(exc).__name__,
                retryable=isinstance(exc, AutomationError) and exc.retryable,
            )
            raise

        metrics.record_dispatch(variant, "sent")
        logger.info(
            "reply_dispatched",
            merchant_id=str(merchant_id),
            event_id=event_id,
            channel=channel.value,
            external_message_id=receipt.external_message_id,
        )
        return receipt
