"""
Merchant Administration - install, settings and product mappings.

NO DICTIONARIES - Inputs and outputs are typed domain models.

Product mapping variant rule: a variant the merchant chose is never
replaced. The catalog's first variant is filled in only when no variant
is supplied and none was stored explicitly for the same product.
"""

from dataclasses import replace
from uuid import UUID

from structlog import get_logger

from dmtobuy.exceptions import CatalogUnavailableError, MerchantNotFoundError
from dmtobuy.models.api import BrandTone, PlanTier
from dmtobuy.models.domain import (
    AutomationSettings,
    BrandVoice,
    MerchantData,
    ProductMapping,
    ProductSnapshot,
)
from dmtobuy.services.catalog import CatalogClient, numeric_id
from dmtobuy.services.credentials import CredentialService
from dmtobuy.services.plans import get_plan
from dmtobuy.services.repositories import (
    MerchantRepository,
    ProductMappingRepository,
    SettingsRepository,
)

logger = get_logger(__name__)


class MerchantAdminService:
    """Merchant-facing configuration."""

    def __init__(
        self,
        merchants: MerchantRepository,
        settings_repository: SettingsRepository,
        mapping_repository: ProductMappingRepository,
        credentials: CredentialService,
        catalog: CatalogClient,
    ) -> None:
        self.merchants = merchants
        self.settings_repository = settings_repository
        self.mapping_repository = mapping_repository
        self.credentials = credentials
        self.catalog = catalog

    async def get_merchant(self, merchant_id: UUID) -> MerchantData:
        merchant = await self.merchants.get(merchant_id)
        if merchant is None:
            raise MerchantNotFoundError(str(merchant_id))
        return merchant

    async def get_by_shop_domain(self, shop_domain: str) -> MerchantData:
        merchant = await self.merchants.get_by_shop_domain(shop_domain.strip().lower())
        if merchant is None:
            raise MerchantNotFoundError(shop_domain)
        return merchant

    async def install(
        self, shop_domain: str, plan_tier: PlanTier, platform_access_token: str | None
    ) -> MerchantData:
        return await self.merchants.install(shop_domain, plan_tier, platform_access_token)

    async def uninstall(self, shop_domain: str) -> MerchantData:
        """
        Handle an app uninstall: deactivate, reset plan, drop the messaging credential.

        Historical messages and attribution rows are kept.
        """
        merchant = await self.get_by_shop_domain(shop_domain)
        await self.merchants.deactivate(merchant.id)
        await self.credentials.disconnect(merchant.id)
        logger.info("merchant_uninstalled", merchant_id=str(merchant.id))
        return merchant

    # ========================================================================
    # Settings
    # ========================================================================

    async def get_settings(self, merchant_id: UUID) -> AutomationSettings:
        merchant = await self.get_merchant(merchant_id)
        stored = await self.settings_repository.get(merchant_id)
        if stored is not None:
            return stored
        return AutomationSettings.defaults(merchant_id, get_plan(merchant.plan_tier))

    async def update_settings(
        self,
        merchant_id: UUID,
        dm_automation_enabled: bool | None = None,
        comment_automation_enabled: bool | None = None,
        tone: BrandTone | None = None,
        custom_instruction: str | None = None,
        followup_enabled: bool | None = None,
    ) -> AutomationSettings:
        """Apply a partial update. Omitted values are left unchanged."""
        current = await self.get_settings(merchant_id)
        voice = current.brand_voice
        if tone is not None or custom_instruction is not None:
            voice = BrandVoice(
                tone=tone or voice.tone,
                custom_instruction=(
                    custom_instruction.strip() or None
                    if custom_instruction is not None
                    else voice.custom_instruction
                ),
            )
        updated = replace(
            current,
            dm_automation_enabled=(
                current.dm_automation_enabled
                if dm_automation_enabled is None
                else dm_automation_enabled
            ),
            comment_automation_enabled=(
                current.comment_automation_enabled
                if comment_automation_enabled is None
                else comment_automation_enabled
            ),
            followup_enabled=(
                current.followup_enabled if followup_enabled is None else followup_enabled
            ),
            brand_voice=voice,
        )
        await self.settings_repository.save(updated)
        logger.info(
            "settings_updated",
            merchant_id=str(merchant_id),
            dm=updated.dm_automation_enabled,
            comment=updated.comment_automation_enabled,
            followup=updated.followup_enabled,
            tone=updated.brand_voice.tone.value,
        )
        return updated

    async def toggle_post(
        self, merchant_id: UUID, media_id: str, enabled: bool
    ) -> AutomationSettings:
        current = await self.get_settings(merchant_id)
        updated = current.with_post_toggled(media_id, enabled)
        await self.settings_repository.save(updated)
        logger.info(
            "post_automation_toggled",
            merchant_id=str(merchant_id),
            media_id=media_id,
            enabled=enabled,
        )
        return updated

    # ========================================================================
    # Product mappings
    # ========================================================================

    async def get_product_mapping(self, merchant_id: UUID, media_id: str) -> ProductMapping | None:
        return await self.mapping_repository.get(merchant_id, media_id)

    async def save_product_mapping(
        self,
        merchant_id: UUID,
        media_id: str,
        product_id: str,
        variant_id: str | None = None,
        product_handle: str | None = None,
    ) -> ProductMapping:
        """
        Upsert the mapping for a post.

        Raises:
            MerchantNotFoundError: Unknown merchant
            CatalogUnavailableError: A variant had to be looked up and none was found
        """
        merchant = await self.get_merchant(merchant_id)
        product_id = numeric_id(product_id)
        existing = await self.mapping_repository.get(merchant_id, media_id)
        same_product = existing is not None and existing.product_id == product_id

        explicit = variant_id is not None
        variant_count = existing.variant_count if same_product and existing else None
        if variant_id is None and same_product and existing and existing.variant_explicit:
            variant_id = existing.variant_id
            explicit = True
        if product_handle is None and same_product and existing:
            product_handle = existing.product_handle

        if variant_id is None:
            product = await self.catalog.get_product(merchant, product_id)
            first = product.first_variant
            if first is None:
                raise CatalogUnavailableError(product_id, "product has no variants")
            variant_id = first.variant_id
            product_handle = product_handle or product.handle
            variant_count = len(product.variants)
        elif product_handle is None or variant_count is None:
            looked_up = await self._lookup_product(merchant, product_id)
            if looked_up is not None:
                product_handle = product_handle or looked_up.handle
                variant_count = len(looked_up.variants)

        mapping = ProductMapping(
            merchant_id=merchant_id,
            media_id=media_id,
            product_id=product_id,
            variant_id=numeric_id(variant_id),
            product_handle=product_handle,
            variant_explicit=explicit,
            variant_count=variant_count,
        )
        await self.mapping_repository.upsert(mapping)
        logger.info(
            "product_mapping_saved",
            merchant_id=str(merchant_id),
            media_id=media_id,
            product_id=product_id,
            variant_explicit=explicit,
        )
        return mapping

    async def _lookup_product(
        self, merchant: MerchantData, product_id: str
    ) -> ProductSnapshot | None:
        """Best effort; the link resolver looks the handle up again when it is missing."""
        try:
            return await self.catalog.get_product(merchant, product_id)
        except CatalogUnavailableError as exc:
            logger.info("product_lookup_unavailable", product_id=product_id, error=exc.detail)
            return None
