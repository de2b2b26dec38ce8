"""
Webhook Subscription Service.

Checks and creates the app subscription that makes the provider deliver a
connected account's messages and comments to our webhook.
"""

from uuid import UUID

from structlog import get_logger

from dmtobuy.models.domain import SubscriptionState
from dmtobuy.services.credentials import CredentialService
from dmtobuy.services.meta_graph import MetaGraphClient

logger = get_logger(__name__)


class WebhookSubscriptionService:
    """Subscription check and subscribe for one merchant's account."""

    def __init__(
        self,
        credentials: CredentialService,
        graph_client: MetaGraphClient,
        subscribed_fields: list[str],
    ) -> None:
        self.credentials = credentials
        self.graph_client = graph_client
        self.subscribed_fields = subscribed_fields

    async def status(self, merchant_id: UUID) -> SubscriptionState:
        credential = await self.credentials.get_valid_credential(merchant_id)
        state = await self.graph_client.get_subscription(credential)
        logger.info(
            "webhook_subscription_checked",
            merchant_id=str(merchant_id),
            subscribed=state.subscribed,
        )
        return state

    async def ensure_subscribed(self, merchant_id: UUID) -> SubscriptionState:
        """Subscribe unless already subscribed; returns the resulting state."""
        credential = await self.credentials.get_valid_credential(merchant_id)
        state = await self.graph_client.get_subscription(credential)
        if state.subscribed:
            return state

        subscribed = await self.graph_client.subscribe(credential, self.subscribed_fields)
        if subscribed:
            logger.info(
                "webhook_subscription_created",
                merchant_id=str(merchant_id),
                fields=self.subscribed_fields,
            )
            return SubscriptionState(
                subscribed=True, subscribed_fields=tuple(self.subscribed_fields)
            )

        logger.warning("webhook_subscription_rejected", merchant_id=str(merchant_id))
        return SubscriptionState(subscribed=False)
