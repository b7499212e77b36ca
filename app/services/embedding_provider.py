from __future__ import annotations

import logging
import time
from functools import lru_cache
from typing import List, Optional, Protocol, Sequence

from openai import AsyncOpenAI, OpenAIError

from app.core.config import get_settings
from app.core.errors import EmbeddingProviderError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    model: str
    dimensions: int

    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class OpenAIEmbeddingProvider:
    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        base_url: Optional[str] = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._api_key = api_key
        self._base_url = base_url
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise EmbeddingProviderError("OPENAI_API_KEY is required for embeddings")
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        client = self._get_client()
        t0 = time.perf_counter()
        try:
            response = await client.embeddings.create(
                model=self.model,
                input=list(texts),
                encoding_format="float",
            )
        except OpenAIError as exc:
            raise EmbeddingProviderError(f"Embedding request failed: {exc}") from exc

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise EmbeddingProviderError(
                f"Embedding response size mismatch: sent={len(texts)} received={len(data)}"
            )
        vectors = [list(d.embedding) for d in data]
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingProviderError(
                    f"Embedding dimension mismatch: expected={self.dimensions} got={len(vector)}"
                )

        logger.debug(
            "Embeddings done model=%s inputs=%s ms=%s",
            self.model,
            len(texts),
            int((time.perf_counter() - t0) * 1000),
        )
        return vectors


@lru_cache
def get_embedding_provider() -> EmbeddingProvider:
    settings = get_settings()
    return OpenAIEmbeddingProvider(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
    )
