"""
Domain Models - Internal pipeline models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
The only exception is WebhookItem.payload, which holds the provider's raw
JSON until the normalizer turns it into an InboundEvent.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from dmtobuy.models.api import (
    AuthVariant,
    BrandTone,
    Channel,
    DecisionOutcome,
    Intent,
    LinkKind,
    PlanTier,
    ReasonCode,
    Sentiment,
)


@dataclass(frozen=True)
class Plan:
    """Immutable plan descriptor - capability flags consumed by the decision engine."""

    tier: PlanTier
    monthly_message_cap: int
    comment_automation: bool
    conversational_mode: bool
    brand_voice: bool
    follow_up: bool

    def __post_init__(self) -> None:
        """Validate plan constraints."""
        if self.monthly_message_cap < 0:
            raise ValueError(f"Message cap cannot be negative: {self.monthly_message_cap}")


@dataclass(frozen=True)
class MerchantData:
    """Merchant account snapshot."""

    id: UUID
    shop_domain: str
    is_active: bool
    plan_tier: PlanTier
    usage_count: int = 0
    usage_period_start: datetime | None = None
    platform_access_token: str | None = None

    def __post_init__(self) -> None:
        """Validate merchant fields."""
        if not self.shop_domain:
            raise ValueError("shop_domain cannot be empty")
        if self.usage_count < 0:
            raise ValueError(f"usage_count cannot be negative: {self.usage_count}")


@dataclass(frozen=True)
class Credential:
    """Messaging-provider credential for one merchant."""

    merchant_id: UUID
    business_account_id: str
    access_token: str
    auth_variant: AuthVariant
    page_id: str | None = None
    expires_at: datetime | None = None
    is_valid: bool = True

    def __post_init__(self) -> None:
        """Validate credential fields."""
        if not self.access_token:
            raise ValueError("access_token cannot be empty")
        if not self.business_account_id:
            raise ValueError("business_account_id cannot be empty")

    def needs_refresh(self, now: datetime, window: timedelta) -> bool:
        """True when the token has no known expiry, has expired, or expires inside window."""
        if self.expires_at is None:
            return True
        return self.expires_at - now <= window


@dataclass(frozen=True)
class TokenGrant:
    """Result of a provider token exchange."""

    access_token: str
    expires_in: int | None


@dataclass(frozen=True)
class BrandVoice:
    """Merchant's reply style."""

    tone: BrandTone = BrandTone.FRIENDLY
    custom_instruction: str | None = None


@dataclass(frozen=True)
class AutomationSettings:
    """
    Per-merchant automation toggles.

    Post toggles follow an opt-out model: with both sets empty every post is
    enabled. A non-empty enabled set turns the model into an allow-list.
    Follow-ups (clarifying questions and the no-click nudge) are opt-in.
    """

    merchant_id: UUID
    dm_automation_enabled: bool = True
    comment_automation_enabled: bool = False
    enabled_post_ids: frozenset[str] = frozenset()
    disabled_post_ids: frozenset[str] = frozenset()
    brand_voice: BrandVoice = field(default_factory=BrandVoice)
    followup_enabled: bool = False

    @classmethod
    def defaults(cls, merchant_id: UUID, plan: Plan) -> "AutomationSettings":
        """Settings for a merchant who never saved any."""
        return cls(
            merchant_id=merchant_id,
            dm_automation_enabled=True,
            comment_automation_enabled=plan.comment_automation,
        )

    def is_post_automation_enabled(self, post_id: str) -> bool:
        """Check the per-post toggle for post_id."""
        if post_id in self.disabled_post_ids:
            return False
        if self.enabled_post_ids:
            return post_id in self.enabled_post_ids
        return True

    def with_post_toggled(self, post_id: str, enabled: bool) -> "AutomationSettings":
        """Return a copy with post_id switched on or off."""
        if enabled:
            allowed = self.enabled_post_ids
            if allowed:
                allowed = allowed | {post_id}
            return replace(
                self,
                enabled_post_ids=allowed,
                disabled_post_ids=self.disabled_post_ids - {post_id},
            )
        return replace(
            self,
            enabled_post_ids=self.enabled_post_ids - {post_id},
            disabled_post_ids=self.disabled_post_ids | {post_id},
        )

    def channel_enabled(self, channel: Channel) -> bool:
        """Channel-level toggle (plan gating is applied by the decision engine)."""
        if channel == Channel.DM:
            return self.dm_automation_enabled
        return self.comment_automation_enabled


@dataclass(frozen=True)
class ProductMapping:
    """Merchant-configured post to product association."""

    merchant_id: UUID
    media_id: str
    product_id: str
    variant_id: str
    product_handle: str | None = None
    variant_explicit: bool = False
    variant_count: int | None = None

    def __post_init__(self) -> None:
        """A mapping must always carry a resolvable variant."""
        if not self.media_id:
            raise ValueError("media_id cannot be empty")
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if not self.variant_id:
            raise ValueError("variant_id cannot be empty")


# ============================================================================
# Inbound events
# ============================================================================


@dataclass(frozen=True)
class WebhookItem:
    """One messaging or change item split out of a webhook envelope."""

    kind: str  # "messaging" or "change"
    business_account_id: str
    payload: Mapping[str, Any]
    field: str | None = None
    entry_time: int | None = None


@dataclass(frozen=True)
class InboundEvent:
    """Canonical normalized event."""

    channel: Channel
    external_id: str
    sender_id: str
    business_account_id: str
    text: str
    timestamp: datetime
    media_id: str | None = None
    sender_username: str | None = None
    is_duplicate: bool = False

    def __post_init__(self) -> None:
        """Validate the channel-specific shape."""
        if not self.external_id:
            raise ValueError("external_id cannot be empty")
        if not self.sender_id:
            raise ValueError("sender_id cannot be empty")
        if self.channel == Channel.DM and self.media_id is not None:
            raise ValueError("Direct messages cannot carry a media id")
        if self.channel == Channel.COMMENT and not self.media_id:
            raise ValueError("Comment events require a media id")

    @property
    def dedup_key(self) -> str:
        """Queue-level deduplication key."""
        return f"{self.channel.value}:{self.external_id}"

    def as_duplicate(self) -> "InboundEvent":
        """Return a copy flagged as a provider re-delivery."""
        return replace(self, is_duplicate=True)


@dataclass(frozen=True)
class Ignored:
    """Webhook item that carries nothing to act on."""

    reason: str
    detail: str | None = None


@dataclass(frozen=True)
class QueuedEvent:
    """Durably queued webhook item awaiting processing."""

    id: UUID
    dedup_key: str
    business_account_id: str
    kind: str
    field: str | None
    payload: Mapping[str, Any]
    attempts: int
    entry_time: int | None = None

    def to_item(self) -> WebhookItem:
        """Rebuild the webhook item for re-normalization."""
        return WebhookItem(
            kind=self.kind,
            business_account_id=self.business_account_id,
            payload=self.payload,
            field=self.field,
            entry_time=self.entry_time,
        )


# ============================================================================
# Classification and decision
# ============================================================================


@dataclass(frozen=True)
class ClassifiedEntities:
    """Product details the classifier extracted from the text."""

    size: str | None = None
    color: str | None = None
    product_name: str | None = None


@dataclass(frozen=True)
class Classification:
    """Classifier output."""

    intent: Intent
    confidence: float
    sentiment: Sentiment
    entities: ClassifiedEntities = field(default_factory=ClassifiedEntities)

    def __post_init__(self) -> None:
        """Validate confidence range."""
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0 and 1: {self.confidence}")


@dataclass(frozen=True)
class AutomationContext:
    """Everything the decision engine needs to know about the merchant side."""

    merchant: MerchantData
    plan: Plan
    settings: AutomationSettings
    product_mapping: ProductMapping | None = None
    post_automation_enabled: bool = True


@dataclass(frozen=True)
class ResolvedLink:
    """Storefront link with its attribution id."""

    kind: LinkKind
    url: str
    link_id: str
    short_url: str | None = None

    @property
    def public_url(self) -> str:
        """URL to put in a reply: the short link when one was minted."""
        return self.short_url or self.url


@dataclass(frozen=True)
class Decision:
    """Outcome of the decision table, filled in with links and text downstream."""

    outcome: DecisionOutcome
    reason: ReasonCode
    channel: Channel
    intent: Intent | None = None
    link_kinds: tuple[LinkKind, ...] = ()
    product_mapping: ProductMapping | None = None
    links: tuple[ResolvedLink, ...] = ()
    reply_text: str | None = None

    def __post_init__(self) -> None:
        """Suppressions never carry reply text."""
        if self.outcome == DecisionOutcome.SUPPRESS and self.reply_text is not None:
            raise ValueError("A suppress decision cannot carry reply text")

    @property
    def is_dispatchable(self) -> bool:
        """True for send and ask_clarifying."""
        return self.outcome != DecisionOutcome.SUPPRESS

    @property
    def target_link(self) -> ResolvedLink | None:
        """Link recorded for attribution: checkout when present, else the first link."""
        for link in self.links:
            if link.kind == LinkKind.CHECKOUT:
                return link
        return self.links[0] if self.links else None

    def with_links(self, links: tuple[ResolvedLink, ...]) -> "Decision":
        """Return a copy carrying resolved links."""
        return replace(self, links=links)

    def with_reply(self, text: str) -> "Decision":
        """Return a copy carrying the composed reply."""
        return replace(self, reply_text=text)


def suppress(channel: Channel, reason: ReasonCode, intent: Intent | None = None) -> Decision:
    """Build a suppress decision."""
    return Decision(
        outcome=DecisionOutcome.SUPPRESS, reason=reason, channel=channel, intent=intent
    )


# ============================================================================
# Catalog and conversation
# ============================================================================


@dataclass(frozen=True)
class VariantSnapshot:
    """One sellable variant of a product."""

    variant_id: str
    title: str
    price: str | None = None
    available: bool = True
    options: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ProductSnapshot:
    """Catalog facts used to ground a reply."""

    product_id: str
    title: str
    handle: str | None = None
    price: str | None = None
    currency: str | None = None
    description: str | None = None
    variants: tuple[VariantSnapshot, ...] = ()

    @property
    def is_single_variant(self) -> bool:
        """True when the product cannot come in other colors or sizes."""
        return len(self.variants) <= 1

    @property
    def first_variant(self) -> VariantSnapshot | None:
        """First listed variant, used to auto-fill mappings."""
        return self.variants[0] if self.variants else None


@dataclass(frozen=True)
class ConversationTurn:
    """One earlier message in the thread with a customer."""

    channel: Channel
    text: str
    from_customer: bool
    created_at: datetime


@dataclass(frozen=True)
class ConversationContext:
    """Thread history handed to the reply composer."""

    origin_channel: Channel
    turns: tuple[ConversationTurn, ...] = ()
    last_link_url: str | None = None


# ============================================================================
# Dispatch and attribution
# ============================================================================


@dataclass(frozen=True)
class DispatchReceipt:
    """Provider acknowledgment of a sent reply."""

    external_message_id: str
    recipient_id: str
    channel: Channel
    auth_variant: AuthVariant


@dataclass(frozen=True)
class MessageRecord:
    """Persisted message log row."""

    id: UUID
    merchant_id: UUID
    external_id: str
    channel: Channel
    sender_id: str
    text: str
    created_at: datetime
    outcome: DecisionOutcome | None = None
    reason: ReasonCode | None = None
    replied_at: datetime | None = None

    @property
    def is_final(self) -> bool:
        """True once a decision outcome has been recorded."""
        return self.outcome is not None


@dataclass(frozen=True)
class LinkSentData:
    """Link actually delivered with a reply."""

    link_id: str
    target_url: str
    message_id: UUID
    merchant_id: UUID
    channel: Channel
    reply_text: str
    product_id: str | None = None
    variant_id: str | None = None
    extra_link_ids: tuple[str, ...] = ()

    @property
    def all_link_ids(self) -> tuple[str, ...]:
        """Every link id delivered with the reply, the primary one first."""
        return (self.link_id, *self.extra_link_ids)

    def __post_init__(self) -> None:
        """Validate link fields."""
        if not self.link_id:
            raise ValueError("link_id cannot be empty")
        if not self.reply_text:
            raise ValueError("reply_text cannot be empty")


@dataclass(frozen=True)
class OrderAttributionData:
    """Storefront order traced back to a sent link."""

    merchant_id: UUID
    order_id: str
    link_id: str
    message_id: UUID | None
    channel: Channel | None
    total_price: str | None = None
    currency: str | None = None


@dataclass(frozen=True)
class FollowupCandidate:
    """Customer DM answered with a link that went unclicked."""

    merchant_id: UUID
    message_id: UUID
    sender_id: str
    link_id: str
    received_at: datetime


@dataclass(frozen=True)
class PipelineResult:
    """What happened to one queued event."""

    outcome: DecisionOutcome
    reason: ReasonCode
    message_id: UUID | None = None
    external_message_id: str | None = None
    retryable: bool = False
    retry_after: float | None = None


@dataclass(frozen=True)
class SubscriptionState:
    """Whether our app receives webhooks for a connected account."""

    subscribed: bool
    subscribed_fields: tuple[str, ...] = ()
