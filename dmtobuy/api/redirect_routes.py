"""
Redirect Routes - short links sent in replies.

Registered last: ``/{link_id}`` matches any single-segment path.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from structlog import get_logger

from dmtobuy.api.dependencies import ServiceContainer, get_container
from dmtobuy.services.attribution import client_ip

logger = get_logger(__name__)
router = APIRouter(tags=["redirects"])


async def _redirect(
    link_id: str, request: Request, container: ServiceContainer
) -> RedirectResponse:
    target = await container.link_resolver.resolve_redirect(link_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found")

    counted = await container.recorder.record_click(
        link_id,
        request.headers.get("User-Agent"),
        client_ip(
            request.headers.get("X-Forwarded-For"),
            request.client.host if request.client else None,
        ),
    )
    logger.info("short_link_followed", link_id=link_id, counted=counted)
    return RedirectResponse(target, status_code=status.HTTP_302_FOUND)


@router.get("/c/{link_id}", include_in_schema=False)
async def legacy_redirect(
    link_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> RedirectResponse:
    return await _redirect(link_id, request, container)


@router.get("/{link_id}", include_in_schema=False)
async def short_redirect(
    link_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> RedirectResponse:
    """Follow a short link, logging the click for real browsers."""
    return await _redirect(link_id, request, container)
