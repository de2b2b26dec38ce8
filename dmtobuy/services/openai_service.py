"""
OpenAI Service - chat completions shared by the classifier and reply composer.

Wraps ``openai.AsyncOpenAI`` and translates SDK errors into the automation
error taxonomy so the retry policy can decide what to retry.
"""

from typing import Protocol

import openai
from openai import AsyncOpenAI
from structlog import get_logger

from dmtobuy.exceptions import (
    AutomationError,
    ModelRequestError,
    RateLimitedError,
    TemporarilyUnavailableError,
)
from dmtobuy.services.retry import RetryPolicy

logger = get_logger(__name__)


class TextGenerator(Protocol):
    """Anything that can turn a prompt into text."""

    async def complete(
        self,
        operation: str,
        system: str,
        prompt: str,
        json_mode: bool = False,
        max_tokens: int = 300,
        temperature: float = 0.7,
    ) -> str: ...


def _retry_after(exc: openai.APIStatusError) -> float | None:
    value = exc.response.headers.get("retry-after") if exc.response is not None else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def translate_openai_error(operation: str, exc: openai.OpenAIError) -> AutomationError:
    """Map an SDK exception to the taxonomy."""
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(operation, _retry_after(exc))
    if isinstance(exc, openai.APITimeoutError | openai.APIConnectionError):
        return TemporarilyUnavailableError(operation, type(exc).__name__)
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return TemporarilyUnavailableError(operation, f"HTTP {exc.status_code}")
        return ModelRequestError(operation, exc.status_code, exc.message)
    return ModelRequestError(operation, None, str(exc))


class OpenAIService:
    """Chat completion client with retry and error translation."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        retry_policy: RetryPolicy | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()
        # SDK retries are disabled; RetryPolicy owns backoff.
        self.client = client or AsyncOpenAI(api_key=api_key, max_retries=0)

    async def _create(
        self,
        operation: str,
        system: str,
        prompt: str,
        json_mode: bool,
        max_tokens: int,
        temperature: float,
    ) -> str:
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs,
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(operation, exc) from exc

        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def complete(
        self,
        operation: str,
        system: str,
        prompt: str,
        json_mode: bool = False,
        max_tokens: int = 300,
        temperature: float = 0.7,
    ) -> str:
        """Return the completion text (possibly empty)."""
        return await self.retry_policy.run(
            operation,
            lambda: self._create(operation, system, prompt, json_mode, max_tokens, temperature),
        )

    async def close(self) -> None:
        await self.client.close()
