"""
Tests for the classifier adapter and the OpenAI wrapper it sits on.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from dmtobuy.exceptions import (
    ClassificationFailedError,
    ModelRequestError,
    RateLimitedError,
    TemporarilyUnavailableError,
)
from dmtobuy.models.api import Intent, Sentiment
from dmtobuy.services.classifier import Classifier, parse_classification
from dmtobuy.services.openai_service import OpenAIService, translate_openai_error
from dmtobuy.services.retry import RetryPolicy

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _status_error(cls, status_code, headers=None):
    response = httpx.Response(status_code, headers=headers or {}, request=REQUEST)
    return cls("error", response=response, body=None)


class TestParseClassification:
    def test_full_response(self):
        result = parse_classification(
            json.dumps(
                {
                    "intent": "variant_inquiry",
                    "confidence": 0.82,
                    "sentiment": "positive",
                    "entities": {"size": "M", "color": "black", "product_name": None},
                }
            )
        )
        assert result.intent == Intent.VARIANT_INQUIRY
        assert result.confidence == 0.82
        assert result.sentiment == Sentiment.POSITIVE
        assert result.entities.size == "M"
        assert result.entities.color == "black"
        assert result.entities.product_name is None

    def test_json_wrapped_in_prose(self):
        content = 'Sure! ```json\n{"intent": "purchase", "confidence": 0.9}\n```'
        assert parse_classification(content).intent == Intent.PURCHASE

    def test_unknown_labels_fall_back(self):
        result = parse_classification('{"intent": "complaint", "sentiment": "angry"}')
        assert result.intent == Intent.NOT_RELEVANT
        assert result.sentiment == Sentiment.NEUTRAL

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(None, 0.5), ("high", 0.5), (True, 0.5), (1.7, 1.0), (-0.2, 0.0), (0, 0.0)],
    )
    def test_confidence_normalized(self, raw, expected):
        content = json.dumps({"intent": "purchase", "confidence": raw})
        assert parse_classification(content).confidence == expected

    def test_non_object_entities_ignored(self):
        result = parse_classification('{"intent": "purchase", "entities": ["M"]}')
        assert result.entities.size is None

    @pytest.mark.parametrize("content", ["no json here", "[1, 2]"])
    def test_unparseable(self, content):
        with pytest.raises(ValueError):
            parse_classification(content)


class TestClassifier:
    @pytest.fixture
    def generator(self, harness):
        return harness.generator

    @pytest.mark.asyncio
    async def test_classifies(self, generator, classification_response):
        generator.responses["classify"] = classification_response("price_request", 0.8)

        result = await Classifier(generator).classify("how much is this?")

        assert result.intent == Intent.PRICE_REQUEST
        [(operation, prompt)] = generator.calls
        assert operation == "classify"
        assert '"how much is this?"' in prompt

    @pytest.mark.asyncio
    async def test_blank_text_not_sent_to_model(self, generator):
        result = await Classifier(generator).classify("   ")
        assert result.intent == Intent.NOT_RELEVANT
        assert result.confidence == 0.0
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_low_confidence_returned_as_is(self, generator, classification_response):
        generator.responses["classify"] = classification_response("purchase", 0.2)
        result = await Classifier(generator).classify("hmm")
        assert result.confidence == 0.2

    @pytest.mark.asyncio
    async def test_model_error_wrapped(self, generator):
        generator.responses["classify"] = TemporarilyUnavailableError("classify", "503")
        with pytest.raises(ClassificationFailedError):
            await Classifier(generator).classify("hi")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "not json"])
    async def test_unusable_response(self, generator, content):
        generator.responses["classify"] = content
        with pytest.raises(ClassificationFailedError):
            await Classifier(generator).classify("hi")


class TestTranslateOpenAIError:
    def test_rate_limit_with_retry_after(self):
        exc = _status_error(openai.RateLimitError, 429, {"retry-after": "12"})
        error = translate_openai_error("classify", exc)
        assert isinstance(error, RateLimitedError)
        assert error.retry_after == 12.0

    def test_rate_limit_unparseable_retry_after(self):
        exc = _status_error(openai.RateLimitError, 429, {"retry-after": "soon"})
        assert translate_openai_error("classify", exc).retry_after is None

    def test_timeout(self):
        error = translate_openai_error("classify", openai.APITimeoutError(request=REQUEST))
        assert isinstance(error, TemporarilyUnavailableError)

    def test_server_error(self):
        exc = _status_error(openai.InternalServerError, 502)
        error = translate_openai_error("classify", exc)
        assert isinstance(error, TemporarilyUnavailableError)
        assert "HTTP 502" in str(error)

    def test_auth_error_not_retryable(self):
        exc = _status_error(openai.AuthenticationError, 401)
        error = translate_openai_error("classify", exc)
        assert isinstance(error, ModelRequestError)
        assert error.status_code == 401
        assert not error.retryable


class TestOpenAIService:
    """OpenAIService over a mocked SDK client."""

    @staticmethod
    def _service(create):
        client = MagicMock()
        client.chat.completions.create = create

        async def no_sleep(_delay):
            return None

        policy = RetryPolicy(attempts=2, sleep=no_sleep)
        return OpenAIService("sk-test", retry_policy=policy, client=client)

    @staticmethod
    def _completion(content):
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    @pytest.mark.asyncio
    async def test_json_mode(self):
        create = AsyncMock(return_value=self._completion('  {"intent": "purchase"}\n'))

        content = await self._service(create).complete("classify", "sys", "p", json_mode=True)

        assert content == '{"intent": "purchase"}'
        kwargs = create.await_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_no_choices(self):
        create = AsyncMock(return_value=SimpleNamespace(choices=[]))
        assert await self._service(create).complete("compose_reply", "sys", "p") == ""

    @pytest.mark.asyncio
    async def test_transient_error_retried(self):
        create = AsyncMock(
            side_effect=[openai.APITimeoutError(request=REQUEST), self._completion("Hi!")]
        )
        assert await self._service(create).complete("compose_reply", "sys", "p") == "Hi!"
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_request_error_not_retried(self):
        create = AsyncMock(side_effect=_status_error(openai.BadRequestError, 400))
        with pytest.raises(ModelRequestError):
            await self._service(create).complete("compose_reply", "sys", "p")
        assert create.await_count == 1
