"""
Catalog Client - product facts from the storefront's Admin GraphQL API.

Used to ground replies in real product data, to find a product's handle for
product-page links, and to auto-fill a mapping's first variant.
"""

from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from structlog import get_logger

from dmtobuy.exceptions import AutomationError, CatalogUnavailableError, TemporarilyUnavailableError
from dmtobuy.models.domain import MerchantData, ProductSnapshot, VariantSnapshot
from dmtobuy.services.retry import RetryPolicy

logger = get_logger(__name__)

PRODUCT_QUERY = """
query getProduct($id: ID!) {
  product(id: $id) {
    id
    title
    handle
    description
    priceRangeV2 { minVariantPrice { amount currencyCode } }
    variants(first: 25) {
      nodes {
        id
        title
        price
        availableForSale
        selectedOptions { name value }
      }
    }
  }
}
"""


def numeric_id(value: str) -> str:
    """Reduce a commerce GID (gid://shopify/Product/123) to its numeric id."""
    return value.rsplit("/", 1)[-1].split("?", 1)[0]


def product_gid(product_id: str) -> str:
    if product_id.startswith("gid://"):
        return product_id
    return f"gid://shopify/Product/{product_id}"


class CatalogClient(Protocol):
    """Product lookup."""

    async def get_product(self, merchant: MerchantData, product_id: str) -> ProductSnapshot: ...


def _parse_variant(node: Mapping[str, Any]) -> VariantSnapshot:
    options = tuple(
        (str(option.get("name")), str(option.get("value")))
        for option in node.get("selectedOptions") or ()
        if isinstance(option, Mapping)
    )
    price = node.get("price")
    return VariantSnapshot(
        variant_id=str(node["id"]),
        title=str(node.get("title") or ""),
        price=str(price) if price is not None else None,
        available=bool(node.get("availableForSale", True)),
        options=options,
    )


def parse_product(product: Mapping[str, Any]) -> ProductSnapshot:
    """Build a ProductSnapshot from the GraphQL ``product`` node."""
    price_range = product.get("priceRangeV2") or {}
    min_price = price_range.get("minVariantPrice") or {}
    variants = (product.get("variants") or {}).get("nodes") or ()
    return ProductSnapshot(
        product_id=str(product["id"]),
        title=str(product.get("title") or ""),
        handle=product.get("handle") or None,
        price=str(min_price["amount"]) if min_price.get("amount") is not None else None,
        currency=min_price.get("currencyCode"),
        description=product.get("description") or None,
        variants=tuple(_parse_variant(node) for node in variants if isinstance(node, Mapping)),
    )


class ShopifyCatalogClient:
    """Admin GraphQL implementation of CatalogClient."""

    def __init__(
        self,
        api_version: str,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_version = api_version
        self.retry_policy = retry_policy or RetryPolicy()
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _query(self, merchant: MerchantData, product_id: str) -> Mapping[str, Any]:
        url = f"https://{merchant.shop_domain}/admin/api/{self.api_version}/graphql.json"
        try:
            response = await self.http_client.post(
                url,
                json={"query": PRODUCT_QUERY, "variables": {"id": product_gid(product_id)}},
                headers={"X-Shopify-Access-Token": merchant.platform_access_token or ""},
            )
        except httpx.TransportError as exc:
            raise TemporarilyUnavailableError("catalog", type(exc).__name__) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TemporarilyUnavailableError("catalog", f"HTTP {response.status_code}")
        if response.is_error:
            raise CatalogUnavailableError(product_id, f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise CatalogUnavailableError(product_id, "response was not JSON") from exc

    async def get_product(self, merchant: MerchantData, product_id: str) -> ProductSnapshot:
        """
        Fetch one product.

        Raises:
            CatalogUnavailableError: No token, lookup failed, or product missing
        """
        if not merchant.platform_access_token:
            raise CatalogUnavailableError(product_id, "merchant has no platform access token")

        try:
            body = await self.retry_policy.run(
                "catalog", lambda: self._query(merchant, product_id)
            )
        except CatalogUnavailableError:
            raise
        except AutomationError as exc:
            logger.warning("catalog_lookup_failed", product_id=product_id, error=str(exc))
            raise CatalogUnavailableError(product_id, str(exc)) from exc

        product = (body.get("data") or {}).get("product")
        if not isinstance(product, Mapping):
            raise CatalogUnavailableError(product_id, "product not found")
        return parse_product(product)
