"""
Decision Engine - decides whether and how to reply to a classified event.

A pure function over the event, its context and the classification. Rules
are evaluated in order and the first match wins:

1. confidence below threshold         -> suppress (low_confidence)
2. intent not eligible                -> suppress (intent_not_eligible)
3. channel or post toggle off         -> suppress (automation_disabled)
4. store question                     -> send storefront link
5. product intent with a mapping      -> send product links
6. product intent without a mapping   -> ask clarifying (follow-up plan, merchant opted in)
                                         or suppress
7. anything else                      -> suppress (unhandled)
"""

from dmtobuy.models.api import (
    ELIGIBLE_INTENTS,
    PRODUCT_INTENTS,
    Channel,
    DecisionOutcome,
    Intent,
    LinkKind,
    ReasonCode,
)
from dmtobuy.models.domain import (
    AutomationContext,
    Classification,
    Decision,
    InboundEvent,
    suppress,
)

DEFAULT_CONFIDENCE_THRESHOLD = 0.70


def _automation_enabled(event: InboundEvent, context: AutomationContext) -> bool:
    if not context.settings.channel_enabled(event.channel):
        return False
    if event.channel == Channel.COMMENT:
        return context.plan.comment_automation and context.post_automation_enabled
    return True


def decide(
    event: InboundEvent,
    context: AutomationContext,
    classification: Classification,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> Decision:
    """Apply the decision table."""
    channel = event.channel
    intent = classification.intent

    if classification.confidence < threshold:
        return suppress(channel, ReasonCode.LOW_CONFIDENCE, intent)

    if intent not in ELIGIBLE_INTENTS:
        return suppress(channel, ReasonCode.INTENT_NOT_ELIGIBLE, intent)

    if not _automation_enabled(event, context):
        return suppress(channel, ReasonCode.AUTOMATION_DISABLED, intent)

    if intent == Intent.STORE_QUESTION:
        return Decision(
            outcome=DecisionOutcome.SEND,
            reason=ReasonCode.STORE_CONTEXT,
            channel=channel,
            intent=intent,
            link_kinds=(LinkKind.STOREFRONT,),
        )

    if intent in PRODUCT_INTENTS:
        mapping = context.product_mapping if channel == Channel.COMMENT else None
        if mapping is not None:
            link_kinds = (
                (LinkKind.CHECKOUT,)
                if intent == Intent.PURCHASE
                else (LinkKind.PRODUCT_PAGE, LinkKind.CHECKOUT)
            )
            return Decision(
                outcome=DecisionOutcome.SEND,
                reason=ReasonCode.PRODUCT_MAPPING,
                channel=channel,
                intent=intent,
                link_kinds=link_kinds,
                product_mapping=mapping,
            )
        if context.plan.follow_up and context.settings.followup_enabled:
            return Decision(
                outcome=DecisionOutcome.ASK_CLARIFYING,
                reason=ReasonCode.CLARIFYING_QUESTION,
                channel=channel,
                intent=intent,
            )
        return suppress(channel, ReasonCode.NO_PRODUCT_CONTEXT, intent)

    return suppress(channel, ReasonCode.UNHANDLED, intent)
