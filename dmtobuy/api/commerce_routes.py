"""
Commerce Routes - storefront platform webhooks.

Topics handled:
    orders/create   -> order attribution via the ref=link_{id} parameter
    app/uninstalled -> deactivate merchant, reset plan, drop credential
"""

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from structlog import get_logger

from dmtobuy.api.dependencies import ServiceContainer, get_container
from dmtobuy.config import settings
from dmtobuy.exceptions import MerchantNotFoundError, WebhookVerificationError
from dmtobuy.models.api import OrderAttributionResponse
from dmtobuy.services.signatures import verify_commerce_signature

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks/commerce", tags=["commerce"])


async def _verified_body(request: Request) -> dict[str, Any]:
    payload = await request.body()
    try:
        verify_commerce_signature(
            payload,
            request.headers.get("X-Shopify-Hmac-Sha256"),
            settings.commerce_webhook_secret,
        )
    except WebhookVerificationError as exc:
        logger.warning("commerce_webhook_signature_rejected", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    try:
        body = json.loads(payload)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Body is not valid JSON",
        ) from exc
    if not isinstance(body, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Body must be a JSON object",
        )
    return body


def _shop_domain(request: Request) -> str:
    shop = request.headers.get("X-Shopify-Shop-Domain")
    if not shop:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Shopify-Shop-Domain header",
        )
    return shop


@router.post("/orders/create", response_model=OrderAttributionResponse)
async def order_created(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> OrderAttributionResponse:
    """Attribute a new order to the sent link it came from, if any."""
    body = await _verified_body(request)
    try:
        merchant = await container.merchant_admin.get_by_shop_domain(_shop_domain(request))
    except MerchantNotFoundError:
        # Acknowledge so the platform stops retrying for shops we do not know.
        logger.info("commerce_order_unknown_shop")
        return OrderAttributionResponse(attributed=False)

    attribution = await container.recorder.record_order(merchant.id, body)
    if attribution is None:
        return OrderAttributionResponse(attributed=False)
    return OrderAttributionResponse(attributed=True, link_id=attribution.link_id)


@router.post("/app/uninstalled", status_code=status.HTTP_200_OK)
async def app_uninstalled(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, str]:
    """Deactivate the merchant. Historical rows are kept."""
    await _verified_body(request)
    try:
        merchant = await container.merchant_admin.uninstall(_shop_domain(request))
    except MerchantNotFoundError:
        logger.info("commerce_uninstall_unknown_shop")
        return {"status": "ignored"}
    return {"status": "deactivated", "merchant_id": str(merchant.id)}
