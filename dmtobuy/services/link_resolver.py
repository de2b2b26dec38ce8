"""
Link Resolver - storefront links with attribution ids and optional short links.

Every link carries ``ref=link_{id}`` so an order placed through it can be
traced back to the reply that delivered it.
"""

import re
from collections.abc import Callable
from urllib.parse import urlencode
from uuid import uuid4

from structlog import get_logger

from dmtobuy.exceptions import CatalogUnavailableError, LinkBuildError
from dmtobuy.models.api import Channel, LinkKind
from dmtobuy.models.domain import Decision, MerchantData, ResolvedLink
from dmtobuy.services.catalog import CatalogClient, numeric_id
from dmtobuy.services.repositories import LinkRepository

logger = get_logger(__name__)

_DIGITS = re.compile(r"^\d+$")

UTM_SOURCE = "instagram"
UTM_MEDIUM = {Channel.DM: "ig_dm", Channel.COMMENT: "ig_comment"}
CHECKOUT_CAMPAIGN = "dm_to_buy"
PRODUCT_PAGE_CAMPAIGN = "product_question"
STOREFRONT_CAMPAIGN = "store_question"


def new_link_id() -> str:
    return uuid4().hex[:12]


def _numeric_or_none(value: str | None) -> str | None:
    if not value:
        return None
    candidate = numeric_id(value)
    return candidate if _DIGITS.match(candidate) else None


class LinkResolver:
    """Build checkout, product-page and storefront links."""

    def __init__(
        self,
        link_repository: LinkRepository,
        catalog: CatalogClient,
        public_base_url: str,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.link_repository = link_repository
        self.catalog = catalog
        self.public_base_url = public_base_url.rstrip("/")
        self._new_id = id_factory or new_link_id

    def _query(self, link_id: str, channel: Channel, campaign: str, **extra: str) -> str:
        params = {
            **extra,
            "ref": f"link_{link_id}",
            "utm_source": UTM_SOURCE,
            "utm_medium": UTM_MEDIUM[channel],
            "utm_campaign": campaign,
        }
        return urlencode(params)

    def _checkout_url(
        self,
        host: str,
        link_id: str,
        product_id: str | None,
        variant_id: str | None,
        channel: Channel,
        quantity: int,
    ) -> str:
        variant = _numeric_or_none(variant_id)
        if variant:
            base = f"https://{host}/cart/{variant}:{quantity}"
            return f"{base}?{self._query(link_id, channel, CHECKOUT_CAMPAIGN)}"

        product = _numeric_or_none(product_id)
        if not product:
            raise LinkBuildError(LinkKind.CHECKOUT.value, f"invalid product id: {product_id!r}")
        query = self._query(
            link_id, channel, CHECKOUT_CAMPAIGN, id=product, quantity=str(quantity)
        )
        return f"https://{host}/cart/add?{query}"

    async def _product_page_url(
        self,
        merchant: MerchantData,
        link_id: str,
        product_id: str | None,
        variant_id: str | None,
        handle: str | None,
        channel: Channel,
    ) -> str:
        handle = (handle or "").strip() or None
        if handle is None:
            if not product_id:
                raise LinkBuildError(LinkKind.PRODUCT_PAGE.value, "no product id or handle")
            try:
                product = await self.catalog.get_product(merchant, product_id)
            except CatalogUnavailableError as exc:
                raise LinkBuildError(LinkKind.PRODUCT_PAGE.value, exc.detail) from exc
            handle = product.handle
            if not handle:
                raise LinkBuildError(LinkKind.PRODUCT_PAGE.value, "product has no handle")

        extra = {}
        variant = _numeric_or_none(variant_id)
        if variant:
            extra["variant"] = variant
        query = self._query(link_id, channel, PRODUCT_PAGE_CAMPAIGN, **extra)
        return f"https://{merchant.shop_domain}/products/{handle}?{query}"

    async def build_link(
        self,
        kind: LinkKind,
        merchant: MerchantData,
        product_id: str | None = None,
        variant_id: str | None = None,
        handle: str | None = None,
        shorten: bool = False,
        channel: Channel = Channel.DM,
        quantity: int = 1,
    ) -> ResolvedLink:
        """
        Build one link with a freshly minted link id.

        Raises:
            LinkBuildError: Missing or malformed product data
        """
        link_id = self._new_id()
        host = merchant.shop_domain

        if kind == LinkKind.CHECKOUT:
            url = self._checkout_url(host, link_id, product_id, variant_id, channel, quantity)
        elif kind == LinkKind.PRODUCT_PAGE:
            url = await self._product_page_url(
                merchant, link_id, product_id, variant_id, handle, channel
            )
        else:
            query = self._query(link_id, channel, STOREFRONT_CAMPAIGN)
            url = f"https://{host}/collections/all?{query}"

        short_url = await self._shorten(link_id, merchant, kind, url) if shorten else None
        return ResolvedLink(kind=kind, url=url, link_id=link_id, short_url=short_url)

    async def _shorten(
        self, link_id: str, merchant: MerchantData, kind: LinkKind, url: str
    ) -> str | None:
        try:
            await self.link_repository.save_short_link(link_id, merchant.id, kind, url)
        except Exception as exc:
            # The long URL still works; never fail the reply over a short link.
            logger.warning(
                "short_link_failed", link_id=link_id, kind=kind.value, error=str(exc)
            )
            return None
        return f"{self.public_base_url}/{link_id}"

    async def resolve_links(
        self, decision: Decision, merchant: MerchantData
    ) -> tuple[ResolvedLink, ...]:
        """
        Build every link a decision asks for.

        A product page that cannot be built is dropped; checkout and
        storefront failures propagate.
        """
        mapping = decision.product_mapping
        links: list[ResolvedLink] = []
        for kind in decision.link_kinds:
            try:
                link = await self.build_link(
                    kind,
                    merchant,
                    product_id=mapping.product_id if mapping else None,
                    variant_id=mapping.variant_id if mapping else None,
                    handle=mapping.product_handle if mapping else None,
                    shorten=True,
                    channel=decision.channel,
                )
            except LinkBuildError as exc:
                if kind != LinkKind.PRODUCT_PAGE:
                    raise
                logger.warning(
                    "product_page_link_dropped", merchant_id=str(merchant.id), error=exc.detail
                )
                continue
            links.append(link)
        return tuple(links)

    async def resolve_redirect(self, link_id: str) -> str | None:
        """Return the stored target for a short link id, unchanged."""
        return await self.link_repository.get_short_link(link_id)
