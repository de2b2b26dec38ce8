"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class Channel(str, Enum):
    """Inbound surface an event arrived on."""

    DM = "dm"
    COMMENT = "comment"


class AuthVariant(str, Enum):
    """How the merchant connected their messaging account."""

    PAGE_LOGIN = "page-login"  # Facebook Login, page-linked account
    DIRECT_LOGIN = "direct-login"  # Instagram Login, no page


class PlanTier(str, Enum):
    """Subscription tier enumeration."""

    FREE = "FREE"
    GROWTH = "GROWTH"
    PRO = "PRO"


class Intent(str, Enum):
    """Intent taxonomy returned by the classifier."""

    PURCHASE = "purchase"
    PRODUCT_QUESTION = "product_question"
    VARIANT_INQUIRY = "variant_inquiry"
    PRICE_REQUEST = "price_request"
    STORE_QUESTION = "store_question"
    CLARIFICATION_NEEDED = "clarification_needed"
    NOT_RELEVANT = "not_relevant"


PRODUCT_INTENTS: frozenset[Intent] = frozenset(
    {
        Intent.PURCHASE,
        Intent.PRODUCT_QUESTION,
        Intent.VARIANT_INQUIRY,
        Intent.PRICE_REQUEST,
    }
)
GENERAL_INTENTS: frozenset[Intent] = frozenset({Intent.STORE_QUESTION})
ELIGIBLE_INTENTS: frozenset[Intent] = PRODUCT_INTENTS | GENERAL_INTENTS


class Sentiment(str, Enum):
    """Sentiment enumeration."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class DecisionOutcome(str, Enum):
    """What the pipeline does with an event."""

    SEND = "send"
    ASK_CLARIFYING = "ask_clarifying"
    SUPPRESS = "suppress"


class ReasonCode(str, Enum):
    """Reason codes persisted on every message row."""

    # Decision table
    LOW_CONFIDENCE = "low_confidence"
    INTENT_NOT_ELIGIBLE = "intent_not_eligible"
    AUTOMATION_DISABLED = "automation_disabled"
    STORE_CONTEXT = "store_context"
    PRODUCT_MAPPING = "product_mapping"
    CLARIFYING_QUESTION = "clarifying_question"
    NO_PRODUCT_CONTEXT = "no_product_context"
    UNHANDLED = "unhandled"

    # Pipeline
    CLASSIFICATION_FAILED = "classification_failed"
    DUPLICATE_EVENT = "duplicate_event"
    OPTED_OUT = "opted_out"
    OUTSIDE_MESSAGING_WINDOW = "outside_messaging_window"
    COMMENT_TOO_OLD = "comment_too_old"
    USAGE_CAP_REACHED = "usage_cap_reached"
    CLARIFYING_LIMIT_REACHED = "clarifying_limit_reached"
    MERCHANT_NOT_FOUND = "merchant_not_found"
    MERCHANT_INACTIVE = "merchant_inactive"
    NOT_CONNECTED = "not_connected"
    REAUTH_REQUIRED = "reauth_required"
    PERMISSION_DENIED = "permission_denied"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    RATE_LIMITED = "rate_limited"
    DISPATCH_FAILED = "dispatch_failed"
    COMPOSITION_FAILED = "composition_failed"
    ALREADY_REPLIED = "already_replied"


class LinkKind(str, Enum):
    """Kinds of storefront links the resolver can build."""

    PRODUCT_PAGE = "product_page"
    CHECKOUT = "checkout"
    STOREFRONT = "storefront"


class BrandTone(str, Enum):
    """Preset reply tones."""

    FRIENDLY = "friendly"
    EXPERT = "expert"
    CASUAL = "casual"


class QueueStatus(str, Enum):
    """Webhook queue row status."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


# ============================================================================
# Merchant Models
# ============================================================================


class InstallMerchantRequest(BaseModel):
    """POST /v1/merchants request body (platform install callback)."""

    shop_domain: str = Field(..., min_length=3, max_length=255)
    plan_tier: PlanTier = PlanTier.FREE
    platform_access_token: str | None = Field(None, max_length=255)

    @field_validator("shop_domain")
    @classmethod
    def normalize_shop_domain(cls, v: str) -> str:
        """Store bare lowercase hostnames."""
        v = v.strip().lower()
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix) :]
        v = v.rstrip("/")
        if "/" in v or "." not in v:
            raise ValueError("shop_domain must be a bare hostname like store.myshopify.com")
        return v


class MerchantResponse(BaseModel):
    """Merchant summary."""

    merchant_id: UUID
    shop_domain: str
    is_active: bool
    plan_tier: PlanTier
    usage_count: int


class AutomationSettingsResponse(BaseModel):
    """GET /v1/merchants/{id}/settings response."""

    merchant_id: UUID
    dm_automation_enabled: bool
    comment_automation_enabled: bool
    enabled_post_ids: list[str]
    disabled_post_ids: list[str]
    tone: BrandTone
    custom_instruction: str | None
    followup_enabled: bool


class UpdateSettingsRequest(BaseModel):
    """PUT /v1/merchants/{id}/settings request body. Omitted fields are unchanged."""

    dm_automation_enabled: bool | None = None
    comment_automation_enabled: bool | None = None
    tone: BrandTone | None = None
    custom_instruction: str | None = Field(None, max_length=500)
    followup_enabled: bool | None = None


class PostToggleRequest(BaseModel):
    """POST /v1/merchants/{id}/posts/{media_id}/automation request body."""

    enabled: bool


class ProductMappingRequest(BaseModel):
    """PUT /v1/merchants/{id}/product-mappings/{media_id} request body."""

    product_id: str = Field(..., min_length=1, max_length=255)
    variant_id: str | None = Field(None, min_length=1, max_length=255)
    product_handle: str | None = Field(None, min_length=1, max_length=255)


class ProductMappingResponse(BaseModel):
    """Stored product mapping."""

    media_id: str
    product_id: str
    variant_id: str
    product_handle: str | None
    variant_explicit: bool


class ConnectCredentialRequest(BaseModel):
    """POST /v1/merchants/{id}/connection request body (OAuth callback hand-off)."""

    auth_variant: AuthVariant
    business_account_id: str = Field(..., min_length=1, max_length=64)
    page_id: str | None = Field(None, min_length=1, max_length=64)
    access_token: str = Field(..., min_length=1)
    expires_in: int | None = Field(None, gt=0, description="Token lifetime in seconds")


class ConnectionStatusResponse(BaseModel):
    """Connection state as shown to the merchant."""

    connected: bool
    auth_variant: AuthVariant | None = None
    business_account_id: str | None = None
    expires_at: str | None = None  # ISO 8601 timestamp
    is_valid: bool = False


class SubscriptionStatusResponse(BaseModel):
    """Webhook subscription check/subscribe response."""

    subscribed: bool
    subscribed_fields: list[str] = Field(default_factory=list)


class PlanResponse(BaseModel):
    """Read-only projection of the plan capability table."""

    tier: PlanTier
    monthly_message_cap: int
    comment_automation: bool
    conversational_mode: bool
    brand_voice: bool
    follow_up: bool


class QueueDrainResponse(BaseModel):
    """POST /v1/internal/queue/drain response."""

    claimed: int
    done: int
    requeued: int
    failed: int


class CredentialRefreshResponse(BaseModel):
    """POST /v1/internal/credentials/refresh response."""

    checked: int
    refreshed: int
    failed: int


class FollowupSweepResponse(BaseModel):
    """POST /v1/internal/followups response."""

    checked: int
    sent: int
    skipped: int
    failed: int


class DataDeletionResponse(BaseModel):
    """Meta data-deletion callback response."""

    url: str
    confirmation_code: str


class OrderAttributionResponse(BaseModel):
    """Commerce order webhook response."""

    attributed: bool
    link_id: str | None = None
