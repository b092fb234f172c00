"""Embedding provider abstraction for OpenAI-compatible APIs."""

from __future__ import annotations

import asyncio
import base64
import logging
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from bookmark_rag.core.errors import GenerationError

if TYPE_CHECKING:
    from bookmark_rag.core.settings import Settings

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int
    cost_per_1m_tokens: float  # USD
    max_tokens: int
    description: str


OPENAI_MODELS: dict[str, ModelInfo] = {
    "text-embedding-3-small": ModelInfo(
        model_id="text-embedding-3-small",
        dimensions=1536,
        cost_per_1m_tokens=0.02,
        max_tokens=8191,
        description="Default. Good balance of quality and cost.",
    ),
    "text-embedding-3-large": ModelInfo(
        model_id="text-embedding-3-large",
        dimensions=3072,
        cost_per_1m_tokens=0.13,
        max_tokens=8191,
        description="Highest precision.",
    ),
}


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None


class EmbeddingError(GenerationError):
    """Error during embedding generation."""


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

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
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Args:
            texts: List of texts to embed.

        Returns:
            List of embedding vectors in the same order as input.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Check if the provider is available and configured correctly."""
        ...


class OpenAIProvider(EmbeddingProvider):
    """Embedding provider for the OpenAI /embeddings endpoint and compatible servers."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str = "",
        base_url: str = "https://api.openai.com/v1",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model = model
        self._model_info = OPENAI_MODELS.get(model)
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._max_chars = 20000  # ~5000 tokens, safe for the 8191 limit

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int | None:
        return self._model_info.dimensions if self._model_info else None

    async def embed(self, texts: list[str], use_base64: bool = True) -> list[list[float]]:
        """Get embeddings for multiple texts in a single API call.

        Args:
            texts: List of texts to embed.
            use_base64: Ask for base64 payloads, roughly 75% smaller responses.
        """
        if not texts:
            return []

        if not self._api_key:
            raise EmbeddingError(
                "OPENAI_API_KEY is not set.",
                provider=self.name,
                retriable=False,
            )

        truncated = [t[: self._max_chars] for t in texts]

        async with httpx.AsyncClient(timeout=120.0, transport=self._transport) as client:
            delay = INITIAL_DELAY
            last_error: Exception | None = None

            for attempt in range(MAX_RETRIES):
                try:
                    request_body: dict[str, Any] = {
                        "model": self._model,
                        "input": truncated,
                    }
                    if use_base64:
                        request_body["encoding_format"] = "base64"

                    response = await client.post(
                        f"{self._base_url}/embeddings",
                        headers={
                            "Authorization": f"Bearer {self._api_key}",
                            "Content-Type": "application/json",
                        },
                        json=request_body,
                    )
                    response.raise_for_status()
                    embeddings = self._parse_response(response)

                    if len(embeddings) != len(texts):
                        raise EmbeddingError(
                            f"Expected {len(texts)} embeddings, got {len(embeddings)}",
                            provider=self.name,
                        )
                    return embeddings

                except httpx.HTTPStatusError as e:
                    last_error = e
                    if e.response.status_code == 429:
                        if "quota" in e.response.text.lower():
                            raise EmbeddingError(
                                "OpenAI quota exhausted.",
                                provider=self.name,
                                retriable=False,
                            ) from e

                        # Rate limit - retry with backoff
                        logger.warning(
                            f"Rate limit hit, attempt {attempt + 1}/{MAX_RETRIES}. " f"Waiting {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, MAX_DELAY)
                    elif e.response.status_code == 401:
                        raise EmbeddingError(
                            "Embedding API key rejected.",
                            provider=self.name,
                            retriable=False,
                        ) from e
                    else:
                        raise EmbeddingError(
                            f"Embedding API error: {e.response.status_code} - {e.response.text}",
                            provider=self.name,
                            retriable=e.response.status_code >= 500,
                        ) from e

                except httpx.RequestError as e:
                    raise EmbeddingError(
                        f"Embedding API request failed: {e}",
                        provider=self.name,
                        retriable=True,
                    ) from e

            # All retries exhausted
            raise EmbeddingError(
                f"Rate limit not cleared after {MAX_RETRIES} attempts.",
                provider=self.name,
                retriable=True,
            ) from last_error

    def _parse_response(self, response: httpx.Response) -> list[list[float]]:
        """Vectors from an /embeddings response, ordered by `index`."""
        try:
            data = response.json()
            embeddings: list[list[float]] = []
            for item in sorted(data["data"], key=lambda d: d["index"]):
                embedding = item["embedding"]
                if isinstance(embedding, str):
                    raw = base64.b64decode(embedding, validate=True)
                    embedding = list(struct.unpack(f"{len(raw) // 4}f", raw))
                embeddings.append(embedding)
        except (KeyError, TypeError, ValueError, struct.error) as e:
            raise EmbeddingError(
                f"Malformed embeddings response: {e!r}",
                provider=self.name,
            ) from e
        return embeddings

    async def health_check(self) -> HealthCheckResult:
        """Check API connectivity with a one-word embedding."""
        if not self._api_key:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self._model,
                message="API key not set",
            )

        start = time.monotonic()
        try:
            vectors = await self.embed(["ok"])
        except EmbeddingError as e:
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
            details={"dimensions": len(vectors[0]) if vectors else None},
        )


def get_provider(settings: Settings) -> EmbeddingProvider:
    """Build the configured embedding provider."""
    return OpenAIProvider(
        model=settings.embedding_model,
        api_key=settings.openai_api_key,
        base_url=settings.api_base_url,
    )
