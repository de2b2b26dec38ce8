"""
Context Resolver - gathers the merchant-side facts the decision engine needs.
"""

from structlog import get_logger

from dmtobuy.models.api import Channel
from dmtobuy.models.domain import (
    AutomationContext,
    AutomationSettings,
    InboundEvent,
    MerchantData,
)
from dmtobuy.services.plans import get_plan
from dmtobuy.services.repositories import ProductMappingRepository, SettingsRepository

logger = get_logger(__name__)


class ContextResolver:
    """Resolve plan, settings and (for comments) the post's product mapping."""

    def __init__(
        self,
        settings_repository: SettingsRepository,
        mapping_repository: ProductMappingRepository,
    ) -> None:
        self.settings_repository = settings_repository
        self.mapping_repository = mapping_repository

    async def resolve(self, event: InboundEvent, merchant: MerchantData) -> AutomationContext:
        plan = get_plan(merchant.plan_tier)
        settings = await self.settings_repository.get(merchant.id)
        if settings is None:
            settings = AutomationSettings.defaults(merchant.id, plan)

        if event.channel == Channel.DM or event.media_id is None:
            return AutomationContext(merchant=merchant, plan=plan, settings=settings)

        if not settings.is_post_automation_enabled(event.media_id):
            logger.debug(
                "post_automation_disabled",
                merchant_id=str(merchant.id),
                media_id=event.media_id,
            )
            return AutomationContext(
                merchant=merchant, plan=plan, settings=settings, post_automation_enabled=False
            )

        mapping = await self.mapping_repository.get(merchant.id, event.media_id)
        return AutomationContext(
            merchant=merchant, plan=plan, settings=settings, product_mapping=mapping
        )
