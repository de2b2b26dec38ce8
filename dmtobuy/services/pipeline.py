"""
Automation Pipeline - one inbound event from webhook item to attributed reply.

Stages, in order:
    normalize -> merchant lookup -> message log -> active check -> opt-out -> context
    -> classify -> decide -> guards -> credential -> links -> compose
    -> active check -> dispatch -> attribution -> usage

Every path ends in a PipelineResult; retryable failures carry the flag
(and any Retry-After) so the queue worker can requeue them.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from structlog import get_logger

from dmtobuy.exceptions import (
    AutomationError,
    CatalogUnavailableError,
    ClassificationFailedError,
    CompositionFailedError,
    LinkBuildError,
    RateLimitedError,
)
from dmtobuy.models.api import Channel, DecisionOutcome, ReasonCode
from dmtobuy.models.domain import (
    AutomationContext,
    BrandVoice,
    ConversationContext,
    Decision,
    Ignored,
    InboundEvent,
    MerchantData,
    MessageRecord,
    PipelineResult,
    ProductSnapshot,
    WebhookItem,
)
from dmtobuy.observability import log_context, metrics
from dmtobuy.observability.tracing import trace_operation
from dmtobuy.services.attribution import AttributionRecorder
from dmtobuy.services.catalog import CatalogClient
from dmtobuy.services.classifier import Classifier
from dmtobuy.services.context_resolver import ContextResolver
from dmtobuy.services.credentials import CredentialService
from dmtobuy.services.decision_engine import DEFAULT_CONFIDENCE_THRESHOLD, decide
from dmtobuy.services.dispatcher import Dispatcher
from dmtobuy.services.guards import ComplianceGuards
from dmtobuy.services.link_resolver import LinkResolver
from dmtobuy.services.normalizer import normalize
from dmtobuy.services.reply_composer import MAX_CONTEXT_TURNS, ReplyComposer
from dmtobuy.services.repositories import LinkRepository, MerchantRepository, MessageRepository

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _reason_for(exc: AutomationError) -> ReasonCode:
    if isinstance(exc, LinkBuildError | CompositionFailedError):
        return ReasonCode.COMPOSITION_FAILED
    try:
        return ReasonCode(exc.reason_code)
    except ValueError:
        return ReasonCode.UNHANDLED


class AutomationPipeline:
    """Process queued webhook items."""

    def __init__(
        self,
        merchants: MerchantRepository,
        messages: MessageRepository,
        links: LinkRepository,
        context_resolver: ContextResolver,
        classifier: Classifier,
        guards: ComplianceGuards,
        credentials: CredentialService,
        link_resolver: LinkResolver,
        catalog: CatalogClient,
        composer: ReplyComposer,
        dispatcher: Dispatcher,
        recorder: AttributionRecorder,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.merchants = merchants
        self.messages = messages
        self.links = links
        self.context_resolver = context_resolver
        self.classifier = classifier
        self.guards = guards
        self.credentials = credentials
        self.link_resolver = link_resolver
        self.catalog = catalog
        self.composer = composer
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.confidence_threshold = confidence_threshold
        self._clock = clock or _utc_now

    async def process(self, item: WebhookItem, is_retry: bool = False) -> PipelineResult:
        """Run one webhook item through the pipeline."""
        normalized = normalize(item)
        if isinstance(normalized, Ignored):
            metrics.record_webhook_item("ignored")
            return PipelineResult(DecisionOutcome.SUPPRESS, ReasonCode.UNHANDLED)

        with log_context(event_id=normalized.dedup_key), trace_operation(
            "pipeline.process", channel=normalized.channel.value
        ):
            return await self._process_event(normalized, is_retry)

    async def _process_event(self, event: InboundEvent, is_retry: bool) -> PipelineResult:
        merchant = await self.merchants.get_by_business_account(event.business_account_id)
        if merchant is None:
            logger.warning("merchant_not_found", business_account_id=event.business_account_id)
            return PipelineResult(DecisionOutcome.SUPPRESS, ReasonCode.MERCHANT_NOT_FOUND)
        with log_context(merchant_id=str(merchant.id)):
            message, created = await self.messages.record_inbound(merchant.id, event)
            if not created:
                event = event.as_duplicate()
                if not is_retry or message.replied_at is not None:
                    logger.info("duplicate_event_skipped", message_id=str(message.id))
                    reason = (
                        ReasonCode.ALREADY_REPLIED
                        if message.replied_at is not None
                        else ReasonCode.DUPLICATE_EVENT
                    )
                    return PipelineResult(DecisionOutcome.SUPPRESS, reason, message.id)
            if not merchant.is_active:
                logger.info("merchant_inactive", message_id=str(message.id))
                return await self._suppress(message, ReasonCode.MERCHANT_INACTIVE)

            started = time.perf_counter()
            result = await self._run(event, merchant, message)
            metrics.record_decision(
                event.channel.value,
                result.outcome.value,
                result.reason.value,
                time.perf_counter() - started,
            )
            return result

    async def _suppress(
        self, message: MessageRecord, reason: ReasonCode, exc: AutomationError | None = None
    ) -> PipelineResult:
        await self.recorder.record_suppression(message, reason)
        logger.info("event_suppressed", message_id=str(message.id), reason=reason.value)
        return PipelineResult(
            DecisionOutcome.SUPPRESS,
            reason,
            message.id,
            retryable=bool(exc and exc.retryable),
            retry_after=exc.retry_after if isinstance(exc, RateLimitedError) else None,
        )

    async def _run(
        self, event: InboundEvent, merchant: MerchantData, message: MessageRecord
    ) -> PipelineResult:
        opted_out = await self.guards.check_opt_out(merchant.id, event)
        if opted_out:
            return await self._suppress(message, opted_out)

        context = await self.context_resolver.resolve(event, merchant)

        with trace_operation("pipeline.classify"):
            try:
                classification = await self.classifier.classify(event.text)
            except ClassificationFailedError as exc:
                logger.warning("classification_degraded", error=exc.detail)
                return await self._suppress(message, ReasonCode.CLASSIFICATION_FAILED)
        await self.messages.attach_classification(message.id, classification, self._clock())

        decision = decide(event, context, classification, self.confidence_threshold)
        logger.info(
            "decision_made",
            message_id=str(message.id),
            intent=classification.intent.value,
            confidence=classification.confidence,
            outcome=decision.outcome.value,
            reason=decision.reason.value,
        )
        if not decision.is_dispatchable:
            await self.recorder.record(message, decision, None)
            return PipelineResult(decision.outcome, decision.reason, message.id)

        blocked = await self.guards.check_before_dispatch(merchant, context.plan, event, decision)
        if blocked:
            return await self._suppress(message, blocked)

        try:
            return await self._reply(event, merchant, message, context, decision)
        except AutomationError as exc:
            logger.warning(
                "pipeline_stage_failed",
                message_id=str(message.id),
                error_type=type(exc).__name__,
                retryable=exc.retryable,
            )
            return await self._suppress(message, _reason_for(exc), exc)

    async def _reply(
        self,
        event: InboundEvent,
        merchant: MerchantData,
        message: MessageRecord,
        context: AutomationContext,
        decision: Decision,
    ) -> PipelineResult:
        credential = await self.credentials.get_valid_credential(merchant.id)

        decision = decision.with_links(await self.link_resolver.resolve_links(decision, merchant))
        product = await self._product(merchant, decision)
        conversation = await self._conversation(merchant.id, event, context)
        brand_voice = context.settings.brand_voice if context.plan.brand_voice else BrandVoice()
        text = await self.composer.compose(decision, brand_voice, event.text, conversation, product)
        decision = decision.with_reply(text)

        if not await self.merchants.is_active(merchant.id):
            logger.info("merchant_deactivated_before_dispatch", message_id=str(message.id))
            return await self._suppress(message, ReasonCode.MERCHANT_INACTIVE)

        recipient = event.sender_id if event.channel == Channel.DM else event.external_id
        with trace_operation("pipeline.dispatch", channel=event.channel.value):
            receipt = await self.dispatcher.send(
                credential, recipient, event.channel, text, event.external_id
            )
        if receipt is None:
            return PipelineResult(DecisionOutcome.SUPPRESS, ReasonCode.ALREADY_REPLIED, message.id)

        await self.recorder.record(message, decision, text, receipt)
        await self.merchants.increment_usage(merchant.id, self._clock())
        return PipelineResult(
            decision.outcome,
            decision.reason,
            message.id,
            external_message_id=receipt.external_message_id,
        )

    async def _product(self, merchant: MerchantData, decision: Decision) -> ProductSnapshot | None:
        mapping = decision.product_mapping
        if mapping is None:
            return None
        try:
            return await self.catalog.get_product(merchant, mapping.product_id)
        except CatalogUnavailableError as exc:
            logger.warning(
                "product_facts_unavailable", product_id=mapping.product_id, error=exc.detail
            )
            return None

    async def _conversation(
        self, merchant_id: UUID, event: InboundEvent, context: AutomationContext
    ) -> ConversationContext:
        if not context.plan.conversational_mode:
            return ConversationContext(origin_channel=event.channel)

        turns = await self.messages.recent_turns(
            merchant_id, event.sender_id, MAX_CONTEXT_TURNS + 1
        )
        # The current message is already logged; it is passed to the composer separately.
        if turns and turns[-1].from_customer and turns[-1].text == event.text:
            turns = turns[:-1]
        last_link = await self.links.last_link_for_sender(merchant_id, event.sender_id)
        return ConversationContext(
            origin_channel=event.channel,
            turns=tuple(turns[-MAX_CONTEXT_TURNS:]),
            last_link_url=last_link,
        )
