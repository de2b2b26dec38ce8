"""
Classifier Adapter - intent, confidence, sentiment and entities for a message.
"""

import json
import re
import time
from collections.abc import Mapping
from typing import Any

from structlog import get_logger

from dmtobuy.exceptions import AutomationError, ClassificationFailedError
from dmtobuy.models.api import Intent, Sentiment
from dmtobuy.models.domain import Classification, ClassifiedEntities
from dmtobuy.observability import metrics
from dmtobuy.services.openai_service import TextGenerator

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.5

SYSTEM_PROMPT = (
    "You are a helpful assistant that classifies customer messages. "
    "Always respond with valid JSON only."
)

CLASSIFY_PROMPT = """You are analyzing an Instagram message or comment from a customer to a business. Classify the message and extract relevant information.

Message: "{text}"

Respond with ONLY a JSON object with this structure:
{{
  "intent": "purchase" | "product_question" | "variant_inquiry" | "price_request" | "store_question" | "clarification_needed" | "not_relevant",
  "confidence": 0.0-1.0,
  "sentiment": "positive" | "neutral" | "negative",
  "entities": {{"size": "string or null", "color": "string or null", "product_name": "string or null"}}
}}

Intent meanings:
- "purchase": wants to buy, or shows strong buying interest ("love this!", "I need this")
- "product_question": asks about a specific product's features or details
- "variant_inquiry": asks about specific variants such as size or color
- "price_request": asks the price of a specific product
- "store_question": asks about the store in general (returns, shipping, sales, policies)
- "clarification_needed": needs more information to proceed
- "not_relevant": not about products or purchasing"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def _entity(entities: Mapping[str, Any], key: str) -> str | None:
    value = entities.get(key)
    return str(value) if value else None


def parse_classification(content: str) -> Classification:
    """Parse and normalize a model response. Raises ValueError when unparseable."""
    try:
        raw = json.loads(content)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(content)
        if not match:
            raise ValueError("response contained no JSON object") from None
        raw = json.loads(match.group(0))
    if not isinstance(raw, Mapping):
        raise ValueError("response JSON was not an object")

    try:
        intent = Intent(raw.get("intent"))
    except ValueError:
        intent = Intent.NOT_RELEVANT

    try:
        sentiment = Sentiment(raw.get("sentiment"))
    except ValueError:
        sentiment = Sentiment.NEUTRAL

    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        confidence = DEFAULT_CONFIDENCE
    confidence = max(0.0, min(1.0, float(confidence)))

    entities = raw.get("entities")
    entities = entities if isinstance(entities, Mapping) else {}

    return Classification(
        intent=intent,
        confidence=confidence,
        sentiment=sentiment,
        entities=ClassifiedEntities(
            size=_entity(entities, "size"),
            color=_entity(entities, "color"),
            product_name=_entity(entities, "product_name"),
        ),
    )


class Classifier:
    """Classify inbound text with the language model."""

    def __init__(self, generator: TextGenerator) -> None:
        self.generator = generator

    async def classify(self, text: str) -> Classification:
        """
        Classify a message.

        Low-confidence results are returned as-is; the decision engine owns
        the threshold.

        Raises:
            ClassificationFailedError: Model unavailable or response unusable
        """
        if not text or not text.strip():
            return Classification(
                intent=Intent.NOT_RELEVANT, confidence=0.0, sentiment=Sentiment.NEUTRAL
            )

        started = time.perf_counter()
        try:
            content = await self.generator.complete(
                "classify",
                SYSTEM_PROMPT,
                CLASSIFY_PROMPT.format(text=text),
                json_mode=True,
                max_tokens=200,
                temperature=0.3,
            )
        except AutomationError as exc:
            logger.warning("classification_failed", error=str(exc))
            raise ClassificationFailedError(str(exc)) from exc
        finally:
            metrics.classifier_duration_seconds.observe(time.perf_counter() - started)

        if not content:
            raise ClassificationFailedError("empty response from model")
        try:
            classification = parse_classification(content)
        except ValueError as exc:
            raise ClassificationFailedError(str(exc)) from exc

        logger.debug(
            "message_classified",
            intent=classification.intent.value,
            confidence=classification.confidence,
        )
        return classification
