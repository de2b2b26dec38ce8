"""
Merchant Routes - administration endpoints for the merchant dashboard.

NO DICTIONARIES - All requests/responses use Pydantic models.

All /v1/merchants and /v1/internal routes require the admin X-API-Key.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from dmtobuy.api.dependencies import ServiceContainer, get_container, require_admin_key
from dmtobuy.exceptions import (
    CatalogUnavailableError,
    MerchantNotFoundError,
    NotConnectedError,
    PermissionDeniedError,
    RateLimitedError,
    ReauthRequiredError,
    TemporarilyUnavailableError,
)
from dmtobuy.models.api import (
    AutomationSettingsResponse,
    ConnectCredentialRequest,
    ConnectionStatusResponse,
    CredentialRefreshResponse,
    FollowupSweepResponse,
    InstallMerchantRequest,
    MerchantResponse,
    PlanResponse,
    PlanTier,
    PostToggleRequest,
    ProductMappingRequest,
    ProductMappingResponse,
    QueueDrainResponse,
    SubscriptionStatusResponse,
    UpdateSettingsRequest,
)
from dmtobuy.models.domain import (
    AutomationSettings,
    Credential,
    MerchantData,
    ProductMapping,
    SubscriptionState,
)
from dmtobuy.services.plans import get_plan

logger = get_logger(__name__)
router = APIRouter(tags=["merchants"])
admin_router = APIRouter(dependencies=[Depends(require_admin_key)], tags=["merchants"])


@asynccontextmanager
async def translate_errors() -> AsyncIterator[None]:
    """Map automation errors raised by admin operations to HTTP responses."""
    try:
        yield
    except MerchantNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Merchant not found",
        ) from exc
    except NotConnectedError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No messaging account connected",
        ) from exc
    except ReauthRequiredError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Re-authentication required: {exc.reason}",
        ) from exc
    except PermissionDeniedError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied by provider: {exc.detail}",
        ) from exc
    except (TemporarilyUnavailableError, RateLimitedError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider temporarily unavailable",
        ) from exc
    except CatalogUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Cannot resolve product {exc.product_id}: {exc.detail}",
        ) from exc


# ============================================================================
# Response builders
# ============================================================================


def _merchant_response(merchant: MerchantData) -> MerchantResponse:
    return MerchantResponse(
        merchant_id=merchant.id,
        shop_domain=merchant.shop_domain,
        is_active=merchant.is_active,
        plan_tier=merchant.plan_tier,
        usage_count=merchant.usage_count,
    )


def _settings_response(settings: AutomationSettings) -> AutomationSettingsResponse:
    return AutomationSettingsResponse(
        merchant_id=settings.merchant_id,
        dm_automation_enabled=settings.dm_automation_enabled,
        comment_automation_enabled=settings.comment_automation_enabled,
        enabled_post_ids=sorted(settings.enabled_post_ids),
        disabled_post_ids=sorted(settings.disabled_post_ids),
        tone=settings.brand_voice.tone,
        custom_instruction=settings.brand_voice.custom_instruction,
        followup_enabled=settings.followup_enabled,
    )


def _mapping_response(mapping: ProductMapping) -> ProductMappingResponse:
    return ProductMappingResponse(
        media_id=mapping.media_id,
        product_id=mapping.product_id,
        variant_id=mapping.variant_id,
        product_handle=mapping.product_handle,
        variant_explicit=mapping.variant_explicit,
    )


def _connection_response(credential: Credential | None) -> ConnectionStatusResponse:
    if credential is None:
        return ConnectionStatusResponse(connected=False)
    return ConnectionStatusResponse(
        connected=True,
        auth_variant=credential.auth_variant,
        business_account_id=credential.business_account_id,
        expires_at=credential.expires_at.isoformat() if credential.expires_at else None,
        is_valid=credential.is_valid,
    )


def _subscription_response(state: SubscriptionState) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        subscribed=state.subscribed, subscribed_fields=list(state.subscribed_fields)
    )


# ============================================================================
# Plans (public, read-only)
# ============================================================================


@router.get("/v1/plans/{tier}", response_model=PlanResponse)
async def get_plan_capabilities(tier: PlanTier) -> PlanResponse:
    """Project the plan capability table for one tier."""
    plan = get_plan(tier)
    return PlanResponse(
        tier=plan.tier,
        monthly_message_cap=plan.monthly_message_cap,
        comment_automation=plan.comment_automation,
        conversational_mode=plan.conversational_mode,
        brand_voice=plan.brand_voice,
        follow_up=plan.follow_up,
    )


# ============================================================================
# Merchants
# ============================================================================


@admin_router.post(
    "/v1/merchants",
    response_model=MerchantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def install_merchant(
    request: InstallMerchantRequest,
    container: ServiceContainer = Depends(get_container),
) -> MerchantResponse:
    """Create a merchant on install, or reactivate it on reinstall."""
    merchant = await container.merchant_admin.install(
        request.shop_domain, request.plan_tier, request.platform_access_token
    )
    return _merchant_response(merchant)


@admin_router.get("/v1/merchants/{merchant_id}", response_model=MerchantResponse)
async def get_merchant(
    merchant_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> MerchantResponse:
    async with translate_errors():
        merchant = await container.merchant_admin.get_merchant(merchant_id)
    return _merchant_response(merchant)


@admin_router.get(
    "/v1/merchants/{merchant_id}/settings", response_model=AutomationSettingsResponse
)
async def get_settings(
    merchant_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> AutomationSettingsResponse:
    async with translate_errors():
        settings = await container.merchant_admin.get_settings(merchant_id)
    return _settings_response(settings)


@admin_router.put(
    "/v1/merchants/{merchant_id}/settings", response_model=AutomationSettingsResponse
)
async def update_settings(
    merchant_id: UUID,
    request: UpdateSettingsRequest,
    container: ServiceContainer = Depends(get_container),
) -> AutomationSettingsResponse:
    """Update channel toggles, follow-ups and brand voice. Omitted fields are unchanged."""
    async with translate_errors():
        settings = await container.merchant_admin.update_settings(
            merchant_id,
            dm_automation_enabled=request.dm_automation_enabled,
            comment_automation_enabled=request.comment_automation_enabled,
            tone=request.tone,
            custom_instruction=request.custom_instruction,
            followup_enabled=request.followup_enabled,
        )
    return _settings_response(settings)


@admin_router.post(
    "/v1/merchants/{merchant_id}/posts/{media_id}/automation",
    response_model=AutomationSettingsResponse,
)
async def toggle_post_automation(
    merchant_id: UUID,
    media_id: str,
    request: PostToggleRequest,
    container: ServiceContainer = Depends(get_container),
) -> AutomationSettingsResponse:
    async with translate_errors():
        settings = await container.merchant_admin.toggle_post(
            merchant_id, media_id, request.enabled
        )
    return _settings_response(settings)


@admin_router.get(
    "/v1/merchants/{merchant_id}/product-mappings/{media_id}",
    response_model=ProductMappingResponse,
)
async def get_product_mapping(
    merchant_id: UUID,
    media_id: str,
    container: ServiceContainer = Depends(get_container),
) -> ProductMappingResponse:
    mapping = await container.merchant_admin.get_product_mapping(merchant_id, media_id)
    if mapping is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No product mapped to this post",
        )
    return _mapping_response(mapping)


@admin_router.put(
    "/v1/merchants/{merchant_id}/product-mappings/{media_id}",
    response_model=ProductMappingResponse,
)
async def put_product_mapping(
    merchant_id: UUID,
    media_id: str,
    request: ProductMappingRequest,
    container: ServiceContainer = Depends(get_container),
) -> ProductMappingResponse:
    """
    Map a post to a product.

    When no variant is given, the previously chosen variant is kept, or the
    catalog's first variant is used for a new product.
    """
    async with translate_errors():
        mapping = await container.merchant_admin.save_product_mapping(
            merchant_id,
            media_id,
            request.product_id,
            variant_id=request.variant_id,
            product_handle=request.product_handle,
        )
    return _mapping_response(mapping)


# ============================================================================
# Connection and webhook subscription
# ============================================================================


@admin_router.get(
    "/v1/merchants/{merchant_id}/connection", response_model=ConnectionStatusResponse
)
async def get_connection(
    merchant_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> ConnectionStatusResponse:
    credential = await container.credentials.get_connection(merchant_id)
    return _connection_response(credential)


@admin_router.post(
    "/v1/merchants/{merchant_id}/connection",
    response_model=ConnectionStatusResponse,
    status_code=status.HTTP_201_CREATED,
)
async def connect_account(
    merchant_id: UUID,
    request: ConnectCredentialRequest,
    container: ServiceContainer = Depends(get_container),
) -> ConnectionStatusResponse:
    """Store the token handed over by the OAuth flow."""
    async with translate_errors():
        await container.merchant_admin.get_merchant(merchant_id)
        credential = await container.credentials.connect(
            merchant_id,
            request.auth_variant,
            request.business_account_id,
            request.access_token,
            page_id=request.page_id,
            expires_in=request.expires_in,
        )
    return _connection_response(credential)


@admin_router.delete(
    "/v1/merchants/{merchant_id}/connection", status_code=status.HTTP_204_NO_CONTENT
)
async def disconnect_account(
    merchant_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> None:
    if not await container.credentials.disconnect(merchant_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No messaging account connected",
        )


@admin_router.get(
    "/v1/merchants/{merchant_id}/subscription", response_model=SubscriptionStatusResponse
)
async def get_subscription(
    merchant_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> SubscriptionStatusResponse:
    async with translate_errors():
        state = await container.subscriptions.status(merchant_id)
    return _subscription_response(state)


@admin_router.post(
    "/v1/merchants/{merchant_id}/subscription", response_model=SubscriptionStatusResponse
)
async def subscribe_webhooks(
    merchant_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> SubscriptionStatusResponse:
    """Subscribe our app to the connected account's webhooks."""
    async with translate_errors():
        state = await container.subscriptions.ensure_subscribed(merchant_id)
    return _subscription_response(state)


# ============================================================================
# Internal (cron)
# ============================================================================


@admin_router.post("/v1/internal/queue/drain", response_model=QueueDrainResponse)
async def drain_queue(
    container: ServiceContainer = Depends(get_container),
) -> QueueDrainResponse:
    """Sweep pending, requeued and stale webhook events."""
    summary = await container.queue.drain()
    return QueueDrainResponse(
        claimed=summary.claimed,
        done=summary.done,
        requeued=summary.requeued,
        failed=summary.failed,
    )


@admin_router.post(
    "/v1/internal/credentials/refresh", response_model=CredentialRefreshResponse
)
async def refresh_credentials(
    limit: int = 100,
    container: ServiceContainer = Depends(get_container),
) -> CredentialRefreshResponse:
    """Refresh tokens expiring inside the refresh window."""
    checked, refreshed, failed = await container.credentials.refresh_expiring(limit)
    return CredentialRefreshResponse(checked=checked, refreshed=refreshed, failed=failed)


@admin_router.post("/v1/internal/followups", response_model=FollowupSweepResponse)
async def send_followups(
    limit: int = 100,
    container: ServiceContainer = Depends(get_container),
) -> FollowupSweepResponse:
    """Send PRO follow-ups for links left unclicked for 23 to 24 hours."""
    summary = await container.followups.run(limit)
    return FollowupSweepResponse(
        checked=summary.checked,
        sent=summary.sent,
        skipped=summary.skipped,
        failed=summary.failed,
    )
