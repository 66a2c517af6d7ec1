"""
Embedding model integration.

The embedding model is an external collaborator: it turns text into a
fixed-dimension vector. The default implementation calls OpenAI's embedding
API. Anything with the same two coroutines can stand in for it (tests use a
deterministic local model).

Availability is checked up front so callers get a FeatureUnavailableError
instead of an exception from deep inside an HTTP client.
"""

from typing import Protocol, Sequence

import numpy as np

from plaintrack.core.config import Settings, settings, get_logger
from plaintrack.core.errors import FeatureUnavailableError

logger = get_logger("core.embedding")

SEMANTIC_SEARCH = "semantic search"


class EmbeddingModel(Protocol):
    """Anything that can embed text."""
    
    name: str
    dimensions: int
    
    async def embed(self, text: str) -> list[float]: ...
    
    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...


class OpenAIEmbeddingModel:
    """Embedding model backed by the OpenAI embeddings endpoint."""
    
    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        batch_size: int = 32,
    ):
        from openai import AsyncOpenAI
        
        self.name = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self._client = AsyncOpenAI(api_key=api_key)
    
    async def embed(self, text: str) -> list[float]:
        from openai import OpenAIError
        
        try:
            response = await self._client.embeddings.create(
                model=self.name,
                input=text[:8000],  # Truncate to avoid token limits
                dimensions=self.dimensions,
            )
        except OpenAIError as e:
            raise FeatureUnavailableError(SEMANTIC_SEARCH, f"embedding request failed: {e}") from e
        return response.data[0].embedding
    
    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        from openai import OpenAIError
        
        all_embeddings: list[list[float]] = []
        
        for i in range(0, len(texts), self.batch_size):
            batch = [t[:8000] for t in texts[i:i + self.batch_size]]
            try:
                response = await self._client.embeddings.create(
                    model=self.name,
                    input=batch,
                    dimensions=self.dimensions,
                )
            except OpenAIError as e:
                raise FeatureUnavailableError(SEMANTIC_SEARCH, f"embedding request failed: {e}") from e
            all_embeddings.extend([d.embedding for d in response.data])
        
        return all_embeddings


def load_embedding_model(config: Settings | None = None) -> EmbeddingModel:
    """
    Build the configured embedding model.
    
    Raises FeatureUnavailableError if semantic search is disabled, no API key
    is configured, or the client fails to initialize.
    """
    config = config or settings
    
    if not config.semantic_search_enabled:
        raise FeatureUnavailableError(
            SEMANTIC_SEARCH,
            "disabled by configuration (set PLAINTRACK_SEMANTIC_SEARCH_ENABLED=true)",
        )
    
    if not config.openai_api_key:
        raise FeatureUnavailableError(
            SEMANTIC_SEARCH,
            "no API key configured (set PLAINTRACK_OPENAI_API_KEY)",
        )
    
    try:
        return OpenAIEmbeddingModel(
            api_key=config.openai_api_key,
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            batch_size=config.embedding_batch_size,
        )
    except Exception as e:
        logger.warning(f"Failed to initialize embedding model: {e}")
        raise FeatureUnavailableError(SEMANTIC_SEARCH, f"model failed to initialize: {e}") from e


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or zero vectors."""
    if a.shape != b.shape:
        return 0.0
    
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    
    return float(np.dot(a, b) / (norm_a * norm_b))
