"""
Reply Composer - turns a dispatchable decision into reply text.

Generated text is treated as untrusted: every URL in it is stripped and the
resolved links are appended by us, in canonical order. Single-variant
products get a fixed answer to option questions, and any other generated
reply that claims or names further colors or sizes is replaced with it.
"""

import re

from structlog import get_logger

from dmtobuy.exceptions import AutomationError, CompositionFailedError
from dmtobuy.models.api import BrandTone, Channel, DecisionOutcome, Intent, LinkKind
from dmtobuy.models.domain import (
    BrandVoice,
    ConversationContext,
    Decision,
    ProductSnapshot,
    ResolvedLink,
)
from dmtobuy.services.openai_service import TextGenerator

logger = get_logger(__name__)

MAX_CONTEXT_TURNS = 8

LINK_ORDER = (LinkKind.PRODUCT_PAGE, LinkKind.CHECKOUT, LinkKind.STOREFRONT)
LINK_LABELS = {
    LinkKind.PRODUCT_PAGE: "View product",
    LinkKind.CHECKOUT: "Buy now",
    LinkKind.STOREFRONT: "Shop the store",
}

REPLY_FALLBACKS = {
    BrandTone.FRIENDLY: (
        "Hi! Thanks so much for reaching out{about}. Everything you need is right here:"
    ),
    BrandTone.EXPERT: "Hello, thank you for your inquiry{about}. You will find the details below.",
    BrandTone.CASUAL: "Hey! Glad you asked{about}. Here you go:",
}

CLARIFYING_FALLBACKS = {
    BrandTone.FRIENDLY: "Hi! Thanks for reaching out! Which product are you interested in?",
    BrandTone.EXPERT: "Hello! Could you please specify which product you are referring to?",
    BrandTone.CASUAL: "Hey! Which product are you talking about?",
}

_URL = re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE)
_SENTENCE = re.compile(r"[^.!?\n]+[.!?]*")
_OPTION_NOUN = r"(?:colou?r|size|option|variant|style|shade|version)s?"
_SINGLE_OPTION = re.compile(
    rf"\b(?:(?:only|just)\s+)?(?:one|a\s+single|single)\s+{_OPTION_NOUN}\b"
    rf"|(?:\bno|\bnot|n['’]t)\s+(?:\w+\s+){{0,3}}?(?:other|different|more)\s+{_OPTION_NOUN}\b",
    re.IGNORECASE,
)
_PLURAL_OPTIONS = re.compile(
    r"\b(colou?rs|sizes|options|variants|styles|shades|versions)\b", re.IGNORECASE
)
_OTHER_OPTION = re.compile(
    rf"\b(?:other|another|more|different)\s+{_OPTION_NOUN}\b", re.IGNORECASE
)
_OPTION_VALUES = re.compile(
    r"\b(black|white|navy|red|blue|green|pink|purple|yellow|orange|brown|beige|gr[ae]y"
    r"|silver|gold|cream|ivory|tan|khaki|olive|burgundy|maroon|teal|turquoise|charcoal"
    r"|lavender|coral|mint|natural|xxs|xs|xl|xxl|xxxl|[2-5]xl|small|medium|large|petite)\b",
    re.IGNORECASE,
)
_WORD = re.compile(r"[a-z0-9]+")

_INTENT_GUIDANCE = {
    Intent.PURCHASE: "The customer wants to buy. Point them to checkout.",
    Intent.PRODUCT_QUESTION: (
        "The customer asked about the product. Answer from the product facts only."
    ),
    Intent.VARIANT_INQUIRY: (
        "The customer asked about sizes, colors or options. "
        "Answer from the product facts only."
    ),
    Intent.PRICE_REQUEST: "The customer asked for the price. Use the product facts.",
    Intent.STORE_QUESTION: (
        "The customer asked about the store in general. Invite them to browse the store."
    ),
}


def strip_urls(text: str) -> str:
    """Remove every URL and tidy the whitespace left behind."""
    without = _URL.sub("", text)
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in without.splitlines()]
    return "\n".join(line for line in lines if line).strip()


def claims_other_options(text: str) -> bool:
    """True when any sentence suggests more than one color, size or option."""
    for sentence in _SENTENCE.findall(text):
        rest = _SINGLE_OPTION.sub(" ", sentence)
        if _PLURAL_OPTIONS.search(rest) or _OTHER_OPTION.search(rest):
            return True
    return False


def names_other_option_value(text: str, own: tuple[str, ...] = ()) -> bool:
    """True when the text names a color or size that is not one of ``own``."""
    allowed = {word for value in own for word in _WORD.findall(value.lower())}
    return any(match.lower() not in allowed for match in _OPTION_VALUES.findall(text))


def single_option_label(product: ProductSnapshot) -> str | None:
    variant = product.first_variant
    if variant is None:
        return None
    if variant.options:
        described = ", ".join(
            f"{name}: {value}" for name, value in variant.options if value != "Default Title"
        )
        if described:
            return described
    if variant.title and variant.title != "Default Title":
        return variant.title
    return None


def single_variant_reply(product: ProductSnapshot | None) -> str:
    """Conservative answer for a product that comes in one option only."""
    if product is None:
        return "Thanks for asking! This item comes in one option only."
    label = single_option_label(product)
    suffix = f" ({label})" if label else ""
    return f"Thanks for asking! {product.title} comes in one option only{suffix}."


def _own_option_words(product: ProductSnapshot | None) -> tuple[str, ...]:
    if product is None:
        return ()
    words = [product.title]
    variant = product.first_variant
    if variant is not None:
        words.append(variant.title)
        words.extend(value for _, value in variant.options)
    return tuple(words)


def _is_single_variant(decision: Decision, product: ProductSnapshot | None) -> bool:
    """Known from the catalog, or from the mapping when the catalog was unreachable."""
    if product is not None:
        return product.is_single_variant
    mapping = decision.product_mapping
    return mapping is not None and mapping.variant_count == 1


def order_links(links: tuple[ResolvedLink, ...]) -> list[ResolvedLink]:
    return sorted(links, key=lambda link: LINK_ORDER.index(link.kind))


def format_links(links: tuple[ResolvedLink, ...]) -> str:
    return "\n".join(f"{LINK_LABELS[link.kind]}: {link.public_url}" for link in order_links(links))


def _product_facts(product: ProductSnapshot) -> str:
    lines = [f"Product: {product.title}"]
    if product.price:
        lines.append(f"Price: {product.price} {product.currency or ''}".rstrip())
    if product.description:
        lines.append(f"Description: {product.description[:400]}")
    if product.is_single_variant:
        label = single_option_label(product)
        lines.append(
            "This product comes in ONE option only"
            + (f" ({label})" if label else "")
            + ". It does NOT come in other colors, sizes or options."
        )
    else:
        for variant in product.variants:
            status = "in stock" if variant.available else "sold out"
            lines.append(f"Variant: {variant.title} ({status})")
    return "\n".join(lines)


def _voice_lines(brand_voice: BrandVoice) -> list[str]:
    lines = [f"Tone: {brand_voice.tone.value}."]
    if brand_voice.custom_instruction:
        lines.append(f"Style instruction (follow exactly): {brand_voice.custom_instruction}")
    return lines


def _conversation_lines(conversation: ConversationContext | None) -> list[str]:
    if conversation is None:
        return []
    lines: list[str] = []
    turns = conversation.turns[-MAX_CONTEXT_TURNS:]
    if turns:
        lines.append("Recent conversation (oldest first):")
        for turn in turns:
            speaker = "Customer" if turn.from_customer else "You"
            lines.append(f"{speaker} ({turn.channel.value}): {strip_urls(turn.text)[:300]}")
    if conversation.last_link_url:
        lines.append(
            "A link was already sent earlier in this conversation; do not repeat it "
            "unless the customer asks for it again."
        )
    return lines


class ReplyComposer:
    """Compose reply text with the language model, falling back to templates."""

    SYSTEM_PROMPT = (
        "You write short Instagram direct-message replies for an online store. "
        "Write plain text only, no markdown. Never include URLs; links are added "
        "after your text automatically."
    )

    def __init__(self, generator: TextGenerator) -> None:
        self.generator = generator

    async def compose(
        self,
        decision: Decision,
        brand_voice: BrandVoice,
        original_text: str,
        conversation: ConversationContext | None = None,
        product: ProductSnapshot | None = None,
    ) -> str:
        """
        Compose the reply for a send or ask_clarifying decision.

        Raises:
            CompositionFailedError: Nothing non-empty could be produced
        """
        if decision.outcome == DecisionOutcome.SUPPRESS:
            raise CompositionFailedError("suppress decisions have no reply")
        if decision.outcome == DecisionOutcome.ASK_CLARIFYING:
            text = await self._clarifying(decision, brand_voice, original_text, conversation)
        else:
            text = await self._reply(decision, brand_voice, original_text, conversation, product)

        if not text:
            raise CompositionFailedError("composed reply was empty")
        return text

    async def _generate(self, operation: str, prompt: str) -> str:
        try:
            return await self.generator.complete(operation, self.SYSTEM_PROMPT, prompt)
        except AutomationError as exc:
            logger.warning("reply_generation_failed", operation=operation, error=str(exc))
            return ""

    async def _reply(
        self,
        decision: Decision,
        brand_voice: BrandVoice,
        original_text: str,
        conversation: ConversationContext | None,
        product: ProductSnapshot | None,
    ) -> str:
        single_variant = _is_single_variant(decision, product)
        if single_variant and decision.intent == Intent.VARIANT_INQUIRY:
            body = single_variant_reply(product)
        else:
            body = await self._generated_body(
                decision, brand_voice, original_text, conversation, product
            )
            if single_variant and (
                claims_other_options(body)
                or names_other_option_value(body, _own_option_words(product))
            ):
                logger.info(
                    "single_variant_guard_applied",
                    product_id=product.product_id if product else None,
                )
                body = single_variant_reply(product)
        if not body:
            about = f" about {product.title}" if product is not None else ""
            body = REPLY_FALLBACKS[brand_voice.tone].format(about=about)

        links = format_links(decision.links)
        return f"{body}\n\n{links}".strip() if links else body

    async def _generated_body(
        self,
        decision: Decision,
        brand_voice: BrandVoice,
        original_text: str,
        conversation: ConversationContext | None,
        product: ProductSnapshot | None,
    ) -> str:
        origin = (
            "a comment on one of the store's posts (your reply arrives as a private DM)"
            if decision.channel == Channel.COMMENT
            else "a direct message"
        )
        lines = [
            f"A customer sent {origin}: \"{original_text[:500]}\"",
            _INTENT_GUIDANCE.get(decision.intent, "") if decision.intent else "",
            *_voice_lines(brand_voice),
            *_conversation_lines(conversation),
        ]
        if product is not None:
            lines.append("Product facts (the only facts you may state):")
            lines.append(_product_facts(product))
        lines.append("Keep it to 2-3 sentences.")

        prompt = "\n".join(line for line in lines if line)
        return strip_urls(await self._generate("compose_reply", prompt))

    async def _clarifying(
        self,
        decision: Decision,
        brand_voice: BrandVoice,
        original_text: str,
        conversation: ConversationContext | None,
    ) -> str:
        lines = [
            f"A customer wrote: \"{original_text[:500]}\"",
            "They seem interested in a product but did not say which one. "
            "Ask one short question to find out which product they mean.",
            *_voice_lines(brand_voice),
            *_conversation_lines(conversation),
            "One sentence only.",
        ]
        body = strip_urls(await self._generate("compose_clarifying", "\n".join(lines)))
        return body or CLARIFYING_FALLBACKS[brand_voice.tone]
