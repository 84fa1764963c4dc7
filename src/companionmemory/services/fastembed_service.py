"""FastEmbed token embedding provider.

Local ONNX-based embeddings using the fastembed library.
CPU-optimized, no external API calls, no API key needed.

Supported models:
    BAAI/bge-small-en-v1.5   384 dims  ~130MB  Good quality
    BAAI/bge-base-en-v1.5    768 dims  ~440MB  Better quality
    nomic-ai/nomic-embed-text-v1.5  768 dims  ~560MB  Great quality

Usage:
    provider = FastEmbedProvider()  # defaults to bge-small-en-v1.5
    vector = await provider.vector_for("hiking")
"""

import asyncio
import logging
from typing import Optional

from ..interfaces import EmbeddingUnavailable, IEmbeddingProvider
from ..utils import normalize_embedding

logger = logging.getLogger(__name__)

# Model name → default dimensions mapping
_MODEL_DIMENSIONS: dict[str, int] = {
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
}

DEFAULT_MODEL = "BAAI/bge-small-en-v1.5"


class FastEmbedProvider(IEmbeddingProvider):
    """FastEmbed local embedding provider.

    The underlying ``TextEmbedding`` model is initialized lazily on first
    use to avoid slow imports at construction time. Model inference is
    CPU-bound, so it runs in a worker thread.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        dimensions: Optional[int] = None,
        cache_dir: Optional[str] = None,
    ):
        """Initialize FastEmbed provider.

        Args:
            model: FastEmbed model name (e.g. "BAAI/bge-small-en-v1.5").
            dimensions: Output embedding dimensions. When ``None``,
                inferred from the model name.
            cache_dir: Directory for downloaded model files.
        """
        if dimensions is not None and dimensions < 1:
            raise ValueError(f"Dimensions must be >= 1, got {dimensions}")

        self.model_name = model
        self._dimensions = (
            dimensions if dimensions is not None else _MODEL_DIMENSIONS.get(model, 384)
        )
        self._cache_dir = cache_dir
        self._model = None

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _get_model(self):
        """Lazy-initialize the TextEmbedding model."""
        if self._model is None:
            from fastembed import TextEmbedding

            kwargs: dict = {"model_name": self.model_name}
            if self._cache_dir is not None:
                kwargs["cache_dir"] = self._cache_dir
            self._model = TextEmbedding(**kwargs)
            logger.info(
                "FastEmbed model loaded: %s (%d dims)",
                self.model_name,
                self._dimensions,
            )
        return self._model

    def __repr__(self) -> str:
        return (
            f"FastEmbedProvider(model={self.model_name!r}, "
            f"dimensions={self._dimensions})"
        )

    async def vector_for(self, token: str) -> Optional[list[float]]:
        results = await self.vectors_for([token])
        return results[0]

    async def vectors_for(self, tokens: list[str]) -> list[Optional[list[float]]]:
        if not tokens:
            return []
        try:
            return await asyncio.to_thread(self._embed_sync, tokens)
        except (ImportError, OSError, RuntimeError, ValueError) as e:
            raise EmbeddingUnavailable(f"FastEmbed failed: {e}") from e

    def _embed_sync(self, tokens: list[str]) -> list[Optional[list[float]]]:
        model = self._get_model()
        # fastembed returns a generator of numpy arrays
        raw = list(model.embed(tokens))
        return [normalize_embedding(vec.tolist()) for vec in raw]
