import logging
from collections.abc import Sequence
from typing import Protocol

import openai

from obracalc.config import get_config
from obracalc.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Embedding service contract: text in, fixed-length vector out."""

    async def embed(self, text: str) -> list[float]: ...

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]: ...


class OpenAIEmbedder:
    """Generate embeddings using OpenAI at the catalog's fixed dimensionality."""

    def __init__(
        self,
        client: openai.AsyncOpenAI | None = None,
        model: str | None = None,
        dimensions: int | None = None,
    ):
        llm_config = get_config().llm
        self.client = client or openai.AsyncOpenAI(api_key=llm_config.api_key)
        self.model = model or llm_config.embeddings_model
        self.dimensions = dimensions or llm_config.embedding_dimensions

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        response = await self.client.embeddings.create(
            model=self.model, input=list(texts), dimensions=self.dimensions
        )
        vectors = [d.embedding for d in sorted(response.data, key=lambda d: d.index)]

        if len(vectors) != len(texts):
            raise ExternalServiceError(
                f"Embedding count mismatch: sent {len(texts)}, got {len(vectors)}"
            )
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise ExternalServiceError(
                    f"Embedding dimension {len(vector)} != expected {self.dimensions}"
                )

        logger.debug(f"Embedded {len(texts)} texts with {self.model}")
        return vectors
