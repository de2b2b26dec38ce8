"""
FastAPI Dependencies - Service wiring and admin authentication.

NO DICTIONARIES - All dependencies return typed objects.

One ServiceContainer is built in the application lifespan and stored on
``app.state``. Routes receive it through ``get_container`` so tests can
swap in a container built over in-memory repositories.
"""

import hmac
from dataclasses import dataclass
from datetime import timedelta

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from dmtobuy.config import Settings, settings
from dmtobuy.db.repositories import (
    SqlAttributionRepository,
    SqlContactRepository,
    SqlCredentialRepository,
    SqlCustomerDataRepository,
    SqlFollowupRepository,
    SqlLinkRepository,
    SqlMerchantRepository,
    SqlMessageRepository,
    SqlProductMappingRepository,
    SqlSettingsRepository,
    SqlWebhookQueueRepository,
)
from dmtobuy.services.attribution import AttributionRecorder
from dmtobuy.services.catalog import ShopifyCatalogClient
from dmtobuy.services.classifier import Classifier
from dmtobuy.services.context_resolver import ContextResolver
from dmtobuy.services.credentials import CredentialService
from dmtobuy.services.data_deletion import DataDeletionService
from dmtobuy.services.dispatcher import Dispatcher
from dmtobuy.services.followups import FollowupService
from dmtobuy.services.guards import ComplianceGuards
from dmtobuy.services.link_resolver import LinkResolver
from dmtobuy.services.merchant_admin import MerchantAdminService
from dmtobuy.services.meta_graph import MetaGraphClient
from dmtobuy.services.openai_service import OpenAIService
from dmtobuy.services.pipeline import AutomationPipeline
from dmtobuy.services.reply_composer import ReplyComposer
from dmtobuy.services.retry import RetryPolicy
from dmtobuy.services.token_cipher import TokenCipher
from dmtobuy.services.webhook_queue import WebhookQueue
from dmtobuy.services.webhook_subscriptions import WebhookSubscriptionService

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Long-lived services shared by all requests and background drains."""

    graph_client: MetaGraphClient
    catalog: ShopifyCatalogClient
    generator: OpenAIService
    credentials: CredentialService
    subscriptions: WebhookSubscriptionService
    merchant_admin: MerchantAdminService
    link_resolver: LinkResolver
    recorder: AttributionRecorder
    pipeline: AutomationPipeline
    queue: WebhookQueue
    followups: FollowupService
    data_deletion: DataDeletionService

    async def close(self) -> None:
        """Release HTTP connection pools."""
        await self.graph_client.close()
        await self.catalog.close()
        await self.generator.close()


def build_container(
    session_factory: async_sessionmaker[AsyncSession], config: Settings = settings
) -> ServiceContainer:
    """Wire the production service graph over PostgreSQL repositories."""
    retry_policy = RetryPolicy(
        timeout_seconds=config.external_call_timeout_seconds,
        attempts=config.retry_attempts,
        base_delay_seconds=config.retry_base_delay_seconds,
        max_delay_seconds=config.retry_max_delay_seconds,
    )

    merchants = SqlMerchantRepository(session_factory)
    settings_repository = SqlSettingsRepository(session_factory)
    mappings = SqlProductMappingRepository(session_factory)
    messages = SqlMessageRepository(session_factory)
    links = SqlLinkRepository(session_factory)
    contacts = SqlContactRepository(session_factory)

    graph_client = MetaGraphClient(
        app_id=config.meta_app_id,
        app_secret=config.meta_app_secret,
        api_version=config.meta_api_version,
        instagram_api_version=config.meta_instagram_api_version,
        retry_policy=retry_policy,
    )
    catalog = ShopifyCatalogClient(config.commerce_api_version, retry_policy=retry_policy)
    generator = OpenAIService(
        config.openai_api_key, model=config.openai_model, retry_policy=retry_policy
    )

    credentials = CredentialService(
        SqlCredentialRepository(session_factory, TokenCipher(config.encryption_keys)),
        graph_client,
        refresh_window=timedelta(days=config.token_refresh_window_days),
    )
    link_resolver = LinkResolver(links, catalog, config.public_base_url)
    recorder = AttributionRecorder(messages, links, SqlAttributionRepository(session_factory))

    pipeline = AutomationPipeline(
        merchants=merchants,
        messages=messages,
        links=links,
        context_resolver=ContextResolver(settings_repository, mappings),
        classifier=Classifier(generator),
        guards=ComplianceGuards(
            contacts,
            messages,
            dm_window=timedelta(hours=config.dm_window_hours),
            comment_max_age=timedelta(days=config.comment_max_age_days),
            clarifying_max_per_day=config.clarifying_max_per_day,
        ),
        credentials=credentials,
        link_resolver=link_resolver,
        catalog=catalog,
        composer=ReplyComposer(generator),
        dispatcher=Dispatcher(graph_client, credentials, messages),
        recorder=recorder,
        confidence_threshold=config.classifier_confidence_threshold,
    )
    queue = WebhookQueue(
        SqlWebhookQueueRepository(session_factory),
        pipeline,
        batch_size=config.queue_batch_size,
        max_attempts=config.queue_max_attempts,
        retry_base_seconds=config.queue_retry_base_seconds,
        visibility_timeout_seconds=config.queue_visibility_timeout_seconds,
        concurrency=config.worker_concurrency,
    )

    return ServiceContainer(
        graph_client=graph_client,
        catalog=catalog,
        generator=generator,
        credentials=credentials,
        subscriptions=WebhookSubscriptionService(
            credentials, graph_client, config.subscribed_fields
        ),
        merchant_admin=MerchantAdminService(
            merchants, settings_repository, mappings, credentials, catalog
        ),
        link_resolver=link_resolver,
        recorder=recorder,
        pipeline=pipeline,
        queue=queue,
        followups=FollowupService(
            SqlFollowupRepository(session_factory),
            merchants,
            settings_repository,
            contacts,
            credentials,
            graph_client,
        ),
        data_deletion=DataDeletionService(SqlCustomerDataRepository(session_factory)),
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built at startup."""
    container: ServiceContainer | None = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting",
        )
    return container


# ============================================================================
# Admin API Key Authentication
# ============================================================================


async def require_admin_key(
    x_api_key: str = Header(..., description="Admin API key"),
) -> None:
    """
    FastAPI dependency guarding merchant administration routes.

    Usage:
        @router.put("/v1/merchants/{merchant_id}/settings")
        async def update(..., _: None = Depends(require_admin_key)):
            pass

    Raises:
        HTTPException 503 if no admin key is configured, 401 on mismatch
    """
    configured = settings.admin_api_key
    if not configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured",
        )
    if not hmac.compare_digest(x_api_key.encode("utf-8"), configured.encode("utf-8")):
        logger.warning("admin_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
