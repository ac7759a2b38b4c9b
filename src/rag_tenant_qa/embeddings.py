"""
Embeddings module with support for multiple provider backends.
Converts text into fixed-length vectors and provides similarity helpers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import List, Optional, Sequence

import numpy as np
from openai import AsyncOpenAI, OpenAIError

from rag_tenant_qa.config import EmbeddingConfig
from rag_tenant_qa.errors import ProviderError

logger = logging.getLogger(__name__)

# OpenAI accepts at most this many inputs per request
MAX_BATCH_SIZE = 100


@dataclass
class EmbeddingResult:
    """Embedding vector plus the tokens billed for it."""
    vector: np.ndarray
    tokens: int = 0


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity between a query vector and each row of a matrix."""
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    denom[denom == 0] = 1.0
    return (matrix @ query) / denom


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is all zeros."""
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


class EmbeddingProvider(ABC):
    """Interface every embedding backend implements."""

    name = "base"

    @abstractmethod
    async def embed(self, text: str) -> EmbeddingResult:
        """Embed a single text."""

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        """Embed several texts. Backends with native batching override this."""
        return list(await asyncio.gather(*(self.embed(text) for text in texts)))

    async def close(self) -> None:
        """Release network resources."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings through the OpenAI API."""

    name = "openai"

    def __init__(self, config: Optional[EmbeddingConfig] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or EmbeddingConfig()
        if client is None:
            if not self.config.openai_api_key:
                raise ValueError("OpenAI API key not provided")
            client = AsyncOpenAI(api_key=self.config.openai_api_key, max_retries=0)
        self.client = client
        self.batch_size = min(self.config.batch_size, MAX_BATCH_SIZE)
        logger.info(f"OpenAI embeddings initialized with model: {self.config.openai_model}")

    async def _create(self, inputs: List[str]):
        try:
            return await self.client.embeddings.create(
                model=self.config.openai_model,
                input=inputs,
                dimensions=self.config.dimensions,
            )
        except OpenAIError as e:
            raise ProviderError(f"Embedding request failed: {e}", provider=self.name) from e

    async def embed(self, text: str) -> EmbeddingResult:
        if not text.strip():
            raise ValueError("Cannot generate embedding for empty text")

        response = await self._create([text])
        return EmbeddingResult(
            vector=np.asarray(response.data[0].embedding, dtype=np.float32),
            tokens=response.usage.total_tokens,
        )

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        results = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            response = await self._create(batch)

            # Usage is reported per request; spread it over the batch.
            per_item = response.usage.total_tokens // max(1, len(batch))
            ordered = sorted(response.data, key=lambda item: item.index)
            results.extend(
                EmbeddingResult(vector=np.asarray(item.embedding, dtype=np.float32), tokens=per_item)
                for item in ordered
            )
        return results

    async def close(self) -> None:
        await self.client.close()


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers model, run in a worker thread."""

    name = "sentence-transformers"

    def __init__(self, config: Optional[EmbeddingConfig] = None, model=None):
        self.config = config or EmbeddingConfig()
        if model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                logger.error(
                    "sentence-transformers not installed. Install with: pip install rag-tenant-qa[local]"
                )
                raise

            logger.info(f"Loading embedding model: {self.config.local_model_name}")
            model = SentenceTransformer(self.config.local_model_name, device=self.config.device)
        self.model = model

    async def _encode(self, texts: List[str]) -> np.ndarray:
        loop = asyncio.get_running_loop()
        encode = partial(
            self.model.encode,
            texts,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize_embeddings,
            show_progress_bar=False,
        )
        try:
            return await loop.run_in_executor(None, encode)
        except Exception as e:
            raise ProviderError(f"Local embedding failed: {e}", provider=self.name) from e

    async def embed(self, text: str) -> EmbeddingResult:
        vectors = await self._encode([text])
        return EmbeddingResult(vector=vectors[0].astype(np.float32), tokens=len(text) // 4)

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        if not texts:
            return []
        vectors = await self._encode(texts)
        return [
            EmbeddingResult(vector=vector.astype(np.float32), tokens=len(text) // 4)
            for text, vector in zip(texts, vectors)
        ]


def create_embedding_provider(config: Optional[EmbeddingConfig] = None) -> EmbeddingProvider:
    """Create the configured embedding backend."""
    config = config or EmbeddingConfig()
    if config.use_openai and config.openai_api_key:
        return OpenAIEmbeddingProvider(config)
    if config.use_openai:
        logger.warning("OPENAI_API_KEY not set; falling back to local embedding model")
    return SentenceTransformerEmbeddingProvider(config)
