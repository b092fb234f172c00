"""LLM provider abstraction for OpenAI-compatible chat completion APIs."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from bookmark_rag.core.embedding_providers import HealthCheckResult
from bookmark_rag.core.errors import GenerationError

if TYPE_CHECKING:
    from bookmark_rag.core.settings import Settings

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds


@dataclass(frozen=True)
class ChatModelInfo:
    """Information about a chat/completion model."""

    model_id: str
    cost_per_1m_input: float  # USD per 1M input tokens
    cost_per_1m_output: float  # USD per 1M output tokens
    max_context: int


OPENAI_CHAT_MODELS: dict[str, ChatModelInfo] = {
    "gpt-4o-mini": ChatModelInfo("gpt-4o-mini", 0.15, 0.60, 128000),
    "gpt-4o": ChatModelInfo("gpt-4o", 2.50, 10.00, 128000),
    "gpt-4.1-mini": ChatModelInfo("gpt-4.1-mini", 0.40, 1.60, 1047576),
    "gpt-4.1-nano": ChatModelInfo("gpt-4.1-nano", 0.10, 0.40, 1047576),
}


@dataclass
class ChatResponse:
    """Response from a chat completion."""

    content: str
    model: str
    tokens_input: int
    tokens_output: int
    finish_reason: str
    latency_ms: int


class LLMError(GenerationError):
    """Error during LLM API call."""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """The model identifier being used."""
        ...

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> ChatResponse:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            temperature: Sampling temperature (0-2).
            max_tokens: Max tokens to generate (None = model default).
            response_format: Optional structured output hint, e.g. {"type": "json_object"}.

        Raises:
            LLMError: If the API call fails.
        """
        ...

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Check if the provider is available and configured correctly."""
        ...

    def estimate_cost(self, tokens_input: int, tokens_output: int) -> float:
        """Estimate cost in USD for given token counts; 0 for unknown models."""
        info = OPENAI_CHAT_MODELS.get(self.model_id)
        if info is None:
            return 0.0
        return (tokens_input * info.cost_per_1m_input + tokens_output * info.cost_per_1m_output) / 1_000_000


class OpenAIChatProvider(LLMProvider):
    """Chat provider for the OpenAI /chat/completions endpoint and compatible servers."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str = "",
        base_url: str = "https://api.openai.com/v1",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> ChatResponse:
        """Send a chat completion request."""
        if not self._api_key:
            raise LLMError(
                "OPENAI_API_KEY is not set.",
                provider=self.name,
                retriable=False,
            )

        async with httpx.AsyncClient(timeout=120.0, transport=self._transport) as client:
            delay = INITIAL_DELAY
            last_error: Exception | None = None

            for attempt in range(MAX_RETRIES):
                start_time = time.monotonic()
                try:
                    request_body: dict[str, Any] = {
                        "model": self._model,
                        "messages": messages,
                        "temperature": temperature,
                    }
                    if max_tokens:
                        request_body["max_tokens"] = max_tokens
                    if response_format:
                        request_body["response_format"] = response_format

                    response = await client.post(
                        f"{self._base_url}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {self._api_key}",
                            "Content-Type": "application/json",
                        },
                        json=request_body,
                    )
                    response.raise_for_status()
                    data = response.json()

                    latency_ms = int((time.monotonic() - start_time) * 1000)

                    choice = data["choices"][0]
                    usage = data.get("usage") or {}

                    return ChatResponse(
                        content=choice["message"].get("content") or "",
                        model=data.get("model", self._model),
                        tokens_input=usage.get("prompt_tokens", 0),
                        tokens_output=usage.get("completion_tokens", 0),
                        finish_reason=choice.get("finish_reason") or "",
                        latency_ms=latency_ms,
                    )

                except httpx.HTTPStatusError as e:
                    last_error = e
                    if e.response.status_code == 429:
                        if "quota" in e.response.text.lower():
                            raise LLMError(
                                "OpenAI quota exhausted.",
                                provider=self.name,
                                retriable=False,
                            ) from e

                        # Rate limit - retry with backoff
                        logger.warning(
                            f"Rate limit hit, attempt {attempt + 1}/{MAX_RETRIES}. "
                            f"Waiting {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, MAX_DELAY)

                    elif e.response.status_code == 401:
                        raise LLMError(
                            "Chat API key rejected.",
                            provider=self.name,
                            retriable=False,
                        ) from e

                    elif e.response.status_code == 404:
                        raise LLMError(
                            f"Model '{self._model}' is not available.",
                            provider=self.name,
                            retriable=False,
                        ) from e

                    else:
                        raise LLMError(
                            f"API request failed: {e.response.status_code} - {e.response.text}",
                            provider=self.name,
                            retriable=e.response.status_code >= 500,
                        ) from e

                except httpx.RequestError as e:
                    raise LLMError(
                        f"Chat API request failed: {e}",
                        provider=self.name,
                        retriable=True,
                    ) from e

            # All retries exhausted
            raise LLMError(
                f"Rate limit not cleared after {MAX_RETRIES} attempts.",
                provider=self.name,
                retriable=True,
            ) from last_error

    async def health_check(self) -> HealthCheckResult:
        """Check API connectivity and authentication."""
        if not self._api_key:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self._model,
                message="API key not set",
            )

        start = time.monotonic()
        try:
            await self.chat(
                messages=[{"role": "user", "content": "Say 'OK'"}],
                temperature=0,
                max_tokens=5,
            )
        except LLMError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self._model,
                message=str(e),
            )
        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self._model,
            message="OK",
            latency_ms=int((time.monotonic() - start) * 1000),
        )


def get_llm_provider(settings: Settings) -> LLMProvider:
    """Build the configured chat provider."""
    return OpenAIChatProvider(
        model=settings.chat_model,
        api_key=settings.openai_api_key,
        base_url=settings.api_base_url,
    )
