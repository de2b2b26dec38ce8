"""
Webhook Routes - Meta subscription verification and event delivery.

The POST handler persists every item to the durable queue before answering,
so a crash after the 200 never loses an event. Processing happens in a
background drain. Meta's data-deletion callback lives here as well.
"""

import json
from urllib.parse import parse_qs

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from dmtobuy.api.dependencies import ServiceContainer, get_container
from dmtobuy.config import settings
from dmtobuy.exceptions import WebhookVerificationError
from dmtobuy.models.api import DataDeletionResponse
from dmtobuy.observability import metrics
from dmtobuy.services.signatures import parse_signed_request, verify_meta_signature
from dmtobuy.services.webhook_queue import WebhookQueue

logger = get_logger(__name__)
router = APIRouter(tags=["webhooks"])

EVENT_RECEIVED = "EVENT_RECEIVED"


async def drain_queue(queue: WebhookQueue) -> None:
    """Background task: process whatever the webhook just enqueued."""
    try:
        await queue.drain()
    except Exception as exc:
        # Rows stay pending or processing; the next drain reclaims them.
        metrics.record_error(type(exc).__name__, "background_drain")
        logger.error("background_drain_failed", error=str(exc), exc_info=True)


@router.get("/webhooks/meta", response_class=PlainTextResponse)
async def verify_subscription(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
) -> PlainTextResponse:
    """Answer the provider's subscription handshake by echoing the challenge."""
    if (
        hub_mode == "subscribe"
        and hub_verify_token is not None
        and hub_challenge is not None
        and settings.webhook_verify_token
        and hub_verify_token == settings.webhook_verify_token
    ):
        logger.info("webhook_subscription_verified")
        return PlainTextResponse(hub_challenge)

    logger.warning("webhook_verification_rejected", mode=hub_mode)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhooks/meta", response_class=PlainTextResponse)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    container: ServiceContainer = Depends(get_container),
) -> PlainTextResponse:
    """
    Receive messaging and comment events.

    Returns 401 on a bad signature and 503 when the queue cannot be written,
    which makes the provider redeliver.
    """
    payload = await request.body()
    try:
        verify_meta_signature(
            payload,
            request.headers.get("X-Hub-Signature-256"),
            settings.webhook_app_secrets,
        )
    except WebhookVerificationError as exc:
        logger.warning("webhook_signature_rejected", error=exc.message)
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

    try:
        summary = await container.queue.enqueue_body(body)
    except (SQLAlchemyError, OSError) as exc:
        metrics.record_error(type(exc).__name__, "webhook_enqueue")
        logger.error("webhook_enqueue_failed", error=str(exc), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event store unavailable",
        ) from exc

    logger.info(
        "webhook_received",
        object=body.get("object"),
        queued=summary.queued,
        duplicates=summary.duplicates,
        ignored=summary.ignored,
    )
    if summary.queued:
        background_tasks.add_task(drain_queue, container.queue)
    return PlainTextResponse(EVENT_RECEIVED)


# ============================================================================
# Data deletion callback
# ============================================================================


def _deletion_response(confirmation_code: str, status_code: int) -> JSONResponse:
    body = DataDeletionResponse(
        url=f"{settings.public_base_url}/privacy", confirmation_code=confirmation_code
    )
    return JSONResponse(body.model_dump(), status_code=status_code)


@router.get("/meta/data-deletion", response_class=PlainTextResponse)
async def data_deletion_status() -> PlainTextResponse:
    return PlainTextResponse("Data deletion endpoint is active")


@router.post("/meta/data-deletion", response_model=DataDeletionResponse)
async def delete_customer_data(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> JSONResponse:
    """
    Erase a customer at Meta's request.

    The form field ``signed_request`` must verify against the app secret.
    Failures answer with an ERROR_* confirmation code instead of a detail.
    """
    form = parse_qs((await request.body()).decode("utf-8", errors="replace"))
    signed_request = (form.get("signed_request") or [""])[0]
    if not signed_request:
        logger.warning("data_deletion_rejected", error="missing signed_request")
        return _deletion_response("ERROR_MISSING_REQUEST", status.HTTP_400_BAD_REQUEST)

    try:
        payload = parse_signed_request(signed_request, settings.webhook_app_secrets)
    except WebhookVerificationError as exc:
        logger.warning("data_deletion_rejected", error=exc.message)
        return _deletion_response("ERROR_INVALID_REQUEST", status.HTTP_400_BAD_REQUEST)

    user_id = str(payload.get("user_id") or "")
    if not user_id:
        logger.warning("data_deletion_rejected", error="missing user_id")
        return _deletion_response("ERROR_MISSING_USER_ID", status.HTTP_400_BAD_REQUEST)

    try:
        receipt = await container.data_deletion.delete_customer(user_id)
    except (SQLAlchemyError, OSError) as exc:
        metrics.record_error(type(exc).__name__, "data_deletion")
        logger.error("data_deletion_failed", error=str(exc), exc_info=True)
        return _deletion_response("ERROR_PROCESSING", status.HTTP_500_INTERNAL_SERVER_ERROR)

    return _deletion_response(receipt.confirmation_code, status.HTTP_200_OK)
