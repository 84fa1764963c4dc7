"""Embedding generation.

``EmbeddingGenerator`` turns memory content into a single fixed-dimension
vector by averaging per-token vectors from an ``IEmbeddingProvider``.
``OpenAIEmbeddingProvider`` is the production provider for any
OpenAI-compatible embeddings endpoint (OpenAI, Ollama, vLLM...).
"""

import asyncio
import logging
import os
from typing import Optional

import httpx

from ..interfaces import (
    DEFAULT_EMBEDDING_DIMENSIONS,
    EmbeddingUnavailable,
    IEmbeddingProvider,
)
from ..utils import mean_vector, normalize_embedding, zero_vector

logger = logging.getLogger(__name__)

# Only the leading tokens of a memory contribute to its embedding
MAX_EMBEDDING_TOKENS = 100


def tokenize(text: str, max_tokens: int = MAX_EMBEDDING_TOKENS) -> list[str]:
    """Split on whitespace and keep at most ``max_tokens`` tokens."""
    return text.split()[:max_tokens]


class EmbeddingGenerator:
    """Averages token vectors into one normalized content embedding.

    Algorithm:
        1. Whitespace tokenization, first ``max_tokens`` tokens.
        2. One vector per token from the provider; unknown tokens are skipped,
           as are vectors whose width differs from ``dimensions``.
        3. No vectors: the zero vector. Otherwise the element-wise mean,
           L2-normalized (a zero mean stays the zero vector).

    A missing or failing provider, or a timeout, is a soft condition:
    the zero vector is returned and a warning is logged.
    """

    def __init__(
        self,
        provider: Optional[IEmbeddingProvider],
        dimensions: Optional[int] = None,
        max_tokens: int = MAX_EMBEDDING_TOKENS,
    ):
        if dimensions is None:
            dimensions = provider.dimensions if provider is not None else DEFAULT_EMBEDDING_DIMENSIONS
        if dimensions < 1:
            raise ValueError(f"Dimensions must be >= 1, got {dimensions}")
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {max_tokens}")
        self.provider = provider
        self.dimensions = dimensions
        self.max_tokens = max_tokens

    async def generate(self, text: str, timeout: Optional[float] = None) -> list[float]:
        """Embedding for ``text``; never raises for provider trouble."""
        try:
            if timeout is not None:
                return await asyncio.wait_for(self._generate(text), timeout)
            return await self._generate(text)
        except EmbeddingUnavailable as e:
            logger.warning("Embedding unavailable, using zero vector: %s", e)
        except asyncio.TimeoutError:
            logger.warning("Embedding generation exceeded %.2fs, using zero vector", timeout)
        return zero_vector(self.dimensions)

    async def _generate(self, text: str) -> list[float]:
        if self.provider is None:
            raise EmbeddingUnavailable("No embedding provider configured")

        tokens = tokenize(text, self.max_tokens)
        if not tokens:
            return zero_vector(self.dimensions)

        vectors = await self.provider.vectors_for(tokens)

        usable: list[list[float]] = []
        for token, vector in zip(tokens, vectors):
            if vector is None:
                continue
            if len(vector) != self.dimensions:
                logger.warning(
                    "Skipping vector for %r: dimension %d, expected %d",
                    token, len(vector), self.dimensions,
                )
                continue
            usable.append([float(x) for x in vector])

        if not usable:
            return zero_vector(self.dimensions)

        return normalize_embedding(mean_vector(usable))


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """OpenAI-compatible token embedding provider.

    Supports OpenAI, Ollama, and any OpenAI-compatible embedding API.
    All tokens of one memory are sent in a single request.

    Usage:
        # OpenAI
        provider = OpenAIEmbeddingProvider(api_key="sk-...", dimensions=300)

        # Ollama (local)
        provider = OpenAIEmbeddingProvider(
            api_base="http://localhost:11434/v1",
            model="nomic-embed-text",
            dimensions=768,
        )
    """

    DEFAULT_MODEL = "text-embedding-3-small"
    DEFAULT_API_BASE = "https://api.openai.com/v1"
    LOCAL_API_KEY_PLACEHOLDER = "local-no-key-needed"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS,
        max_retries: int = 3,
        timeout_seconds: float = 30.0,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        api_base: Optional[str] = None,
    ):
        """Initialize the provider.

        Args:
            api_key: API key. Falls back to OPENAI_API_KEY env var.
                     Not required when api_base points to a local service.
            model: Embedding model to use.
            dimensions: Output embedding dimensions.
            max_retries: Max retry attempts on transient failures.
            timeout_seconds: Request timeout.
            backoff_base: Base for exponential backoff.
            backoff_max: Maximum backoff delay in seconds.
            api_base: Base URL for the embedding API. Defaults to OpenAI.

        Security Note:
            The API key only lives in the HTTP client headers. Never log
            the _client object.
        """
        if dimensions < 1 or dimensions > 8192:
            raise ValueError(
                f"Dimensions must be between 1 and 8192, got {dimensions}"
            )

        self.api_url = self._resolve_api_url(api_base)

        is_local = (
            api_base is not None
            and api_base.strip() != ""
            and "api.openai.com" not in api_base.lower()
        )

        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            if not is_local:
                raise ValueError(
                    "OpenAI API key required. Pass api_key "
                    "or set OPENAI_API_KEY env var."
                )
            self.api_key = self.LOCAL_API_KEY_PLACEHOLDER

        self.model = model
        self._dimensions = dimensions
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self._client: Optional[httpx.AsyncClient] = None

    @staticmethod
    def _resolve_api_url(api_base: Optional[str] = None) -> str:
        """Full embeddings URL from an optional base.

        Raises:
            ValueError: If api_base is not a valid HTTP(S) URL.
        """
        if api_base is None or api_base.strip() == "":
            return f"{OpenAIEmbeddingProvider.DEFAULT_API_BASE}/embeddings"

        base = api_base.strip().rstrip("/")
        if not base.startswith(("http://", "https://")):
            raise ValueError(f"api_base must be an HTTP(S) URL, got: {base}")
        if base.endswith("/embeddings"):
            return base
        return f"{base}/embeddings"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def __repr__(self) -> str:
        return f"OpenAIEmbeddingProvider(model={self.model!r}, api_key=***)"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def vector_for(self, token: str) -> Optional[list[float]]:
        results = await self.vectors_for([token])
        return results[0]

    async def vectors_for(self, tokens: list[str]) -> list[Optional[list[float]]]:
        """One request for all distinct tokens; results re-aligned to input."""
        if not tokens:
            return []

        unique = list(dict.fromkeys(t for t in tokens if t.strip()))
        if not unique:
            return [None] * len(tokens)

        embeddings = await self._request(unique)
        by_token = dict(zip(unique, embeddings))
        return [by_token.get(t) for t in tokens]

    async def _request(self, inputs: list[str]) -> list[list[float]]:
        client = await self._get_client()
        payload = {
            "model": self.model,
            "input": inputs,
            "dimensions": self._dimensions,
        }

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = await client.post(self.api_url, json=payload)

                if response.status_code == 200:
                    data = response.json()
                    rows = sorted(data["data"], key=lambda x: x["index"])
                    return [normalize_embedding(r["embedding"]) for r in rows]

                if response.status_code == 429:
                    retry_after = int(response.headers.get("Retry-After", 5))
                    await asyncio.sleep(min(retry_after, self.backoff_max))
                    continue

                if response.status_code >= 500:
                    last_error = RuntimeError(f"HTTP {response.status_code}")
                    await asyncio.sleep(min(self.backoff_base ** attempt, self.backoff_max))
                    continue

                try:
                    error = response.json().get("error", {})
                    detail = error.get("message", response.text) if isinstance(error, dict) else error
                except ValueError:
                    detail = response.text[:200]
                raise EmbeddingUnavailable(
                    f"Embedding API error ({response.status_code}): {detail}"
                )

            except httpx.TimeoutException as e:
                last_error = e
                await asyncio.sleep(min(self.backoff_base ** attempt, self.backoff_max))
            except httpx.RequestError as e:
                last_error = e
                await asyncio.sleep(min(self.backoff_base ** attempt, self.backoff_max))

        raise EmbeddingUnavailable(
            f"Embedding API failed after {self.max_retries} retries: {last_error}"
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
