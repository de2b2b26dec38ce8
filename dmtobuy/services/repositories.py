"""
Repository Protocols - Storage-agnostic interfaces consumed by the pipeline.

NO DICTIONARIES - All data uses strongly typed domain models.

The PostgreSQL implementations live in dmtobuy.db.repositories; tests use
in-memory fakes with the same shape.
"""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from dmtobuy.models.api import DecisionOutcome, LinkKind, PlanTier, ReasonCode
from dmtobuy.models.domain import (
    AutomationSettings,
    Classification,
    ConversationTurn,
    Credential,
    FollowupCandidate,
    InboundEvent,
    LinkSentData,
    MerchantData,
    MessageRecord,
    OrderAttributionData,
    ProductMapping,
    QueuedEvent,
    WebhookItem,
)


class MerchantRepository(Protocol):
    """Merchant accounts."""

    async def get(self, merchant_id: UUID) -> MerchantData | None: ...

    async def get_by_business_account(self, business_account_id: str) -> MerchantData | None:
        """Resolve the merchant whose connected account received a webhook."""
        ...

    async def get_by_shop_domain(self, shop_domain: str) -> MerchantData | None: ...

    async def is_active(self, merchant_id: UUID) -> bool: ...

    async def install(
        self, shop_domain: str, plan_tier: PlanTier, platform_access_token: str | None
    ) -> MerchantData:
        """Create the merchant, or reactivate it on reinstall."""
        ...

    async def deactivate(self, merchant_id: UUID) -> None:
        """Mark inactive and reset the plan to FREE. Never deletes."""
        ...

    async def increment_usage(self, merchant_id: UUID, now: datetime) -> int:
        """Count one sent reply, resetting the counter on a new calendar month."""
        ...


class CredentialRepository(Protocol):
    """Messaging credentials. Only the credential service writes here."""

    async def get(self, merchant_id: UUID) -> Credential | None: ...

    async def save(self, credential: Credential) -> None: ...

    async def mark_invalid(self, merchant_id: UUID, reason: str) -> None: ...

    async def delete(self, merchant_id: UUID) -> bool: ...

    async def list_expiring(self, before: datetime, limit: int) -> list[Credential]: ...


class SettingsRepository(Protocol):
    """Automation settings."""

    async def get(self, merchant_id: UUID) -> AutomationSettings | None: ...

    async def save(self, settings: AutomationSettings) -> None: ...


class ProductMappingRepository(Protocol):
    """Post to product mappings."""

    async def get(self, merchant_id: UUID, media_id: str) -> ProductMapping | None: ...

    async def upsert(self, mapping: ProductMapping) -> None: ...


class MessageRepository(Protocol):
    """
    Message log. Also serves as the reply ledger the dispatcher consults
    for per-event idempotency.
    """

    async def record_inbound(
        self, merchant_id: UUID, event: InboundEvent
    ) -> tuple[MessageRecord, bool]:
        """Insert the inbound row. Returns (row, created); created is False on re-delivery."""
        ...

    async def attach_classification(
        self, message_id: UUID, classification: Classification, classified_at: datetime
    ) -> None: ...

    async def record_outcome(
        self,
        message_id: UUID,
        outcome: DecisionOutcome,
        reason: ReasonCode,
        reply_text: str | None,
        external_message_id: str | None,
        replied_at: datetime | None,
    ) -> None: ...

    async def has_replied(self, merchant_id: UUID, external_id: str) -> bool: ...

    async def claim_reply(self, merchant_id: UUID, external_id: str, claimed_at: datetime) -> bool:
        """Atomically claim the right to reply. False when already claimed."""
        ...

    async def release_claim(self, merchant_id: UUID, external_id: str) -> None: ...

    async def recent_turns(
        self, merchant_id: UUID, sender_id: str, limit: int
    ) -> list[ConversationTurn]: ...

    async def count_clarifying_since(
        self, merchant_id: UUID, sender_id: str, since: datetime
    ) -> int: ...


class ContactRepository(Protocol):
    """Customer opt-outs."""

    async def is_opted_out(self, merchant_id: UUID, sender_id: str) -> bool: ...

    async def record_opt_out(self, merchant_id: UUID, sender_id: str) -> None: ...


class LinkRepository(Protocol):
    """Short links, sent links and clicks."""

    async def save_short_link(
        self, link_id: str, merchant_id: UUID, kind: LinkKind, target_url: str
    ) -> None: ...

    async def get_short_link(self, link_id: str) -> str | None: ...

    async def record_link_sent(self, link: LinkSentData) -> bool:
        """Insert a LinkSent row. False when the reply already has one."""
        ...

    async def get_link_sent(self, link_id: str) -> LinkSentData | None: ...

    async def last_link_for_sender(self, merchant_id: UUID, sender_id: str) -> str | None: ...

    async def record_click(
        self, link_id: str, user_agent: str | None, ip_address: str | None
    ) -> None: ...


class AttributionRepository(Protocol):
    """Order attribution."""

    async def record_order(self, attribution: OrderAttributionData) -> bool:
        """Insert once per order. False when the order was already attributed."""
        ...


class WebhookQueueRepository(Protocol):
    """Durable inbound queue."""

    async def enqueue(self, event: InboundEvent, item: WebhookItem) -> bool:
        """Persist the item. False when its dedup key is already queued."""
        ...

    async def claim_batch(
        self, limit: int, now: datetime, visibility_timeout_seconds: int
    ) -> list[QueuedEvent]: ...

    async def mark_done(
        self, event_id: UUID, outcome: DecisionOutcome, reason: ReasonCode
    ) -> None: ...

    async def reschedule(self, event_id: UUID, not_before: datetime, error: str) -> None: ...

    async def mark_failed(self, event_id: UUID, error: str) -> None: ...


class FollowupRepository(Protocol):
    """PRO follow-up candidates and the ledger of follow-ups sent."""

    async def list_candidates(
        self, received_after: datetime, received_before: datetime, limit: int
    ) -> list[FollowupCandidate]:
        """
        DM messages received inside the window that were answered with a link.

        Only the sender's latest message qualifies, and only when none of the
        reply's links has been clicked and no follow-up was recorded for it.
        """
        ...

    async def claim(self, candidate: FollowupCandidate, claimed_at: datetime) -> bool:
        """Insert the ledger row. False when the (message, link) pair is taken."""
        ...

    async def release(self, candidate: FollowupCandidate) -> None:
        """Drop an unsent claim so the next sweep can retry it."""
        ...

    async def mark_sent(
        self, candidate: FollowupCandidate, external_message_id: str, sent_at: datetime
    ) -> None: ...


class CustomerDataRepository(Protocol):
    """Erasure of everything stored about one customer."""

    async def delete_sender(self, sender_id: str) -> int:
        """Delete the sender's messages and every row derived from them. Returns rows removed."""
        ...
