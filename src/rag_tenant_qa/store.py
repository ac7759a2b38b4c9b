"""
Chunk storage for retrieval.
Defines the chunk record, the store interface and an in-memory store with
numpy cosine search and BM25 keyword search, partitioned by tenant.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Optional, Iterable, Union

import numpy as np
from rank_bm25 import BM25Okapi

from rag_tenant_qa.embeddings import cosine_similarities

logger = logging.getLogger(__name__)

_STOP_WORDS = {'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
               'of', 'with', 'by', 'from', 'as', 'is', 'was', 'are', 'were'}


@dataclass(frozen=True)
class Chunk:
    """A contiguous span of a source document, embedded at ingestion time."""
    chunk_id: str
    document_id: str
    document_title: str
    text: str
    embedding: np.ndarray = field(compare=False, repr=False)
    chunk_index: int = 0
    start_char: Optional[int] = None
    end_char: Optional[int] = None
    token_count: Optional[int] = None
    source: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        """Build from a stored record, accepting camelCase or snake_case keys."""
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        return cls(
            chunk_id=str(pick("chunk_id", "chunkId", "id")),
            document_id=str(pick("document_id", "documentId")),
            document_title=pick("document_title", "documentTitle", "title", default=""),
            text=pick("text", "content", default=""),
            embedding=np.asarray(pick("embedding", default=[]), dtype=np.float32),
            chunk_index=int(pick("chunk_index", "chunkIndex", default=0)),
            start_char=pick("start_char", "startChar"),
            end_char=pick("end_char", "endChar"),
            token_count=pick("token_count", "tokenCount"),
            source=pick("source", "document_source", "documentSource"),
        )

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "document_title": self.document_title,
            "text": self.text,
            "chunk_index": self.chunk_index,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "token_count": self.token_count,
            "source": self.source,
        }
        if include_embedding:
            data["embedding"] = self.embedding.tolist()
        return data


@dataclass(frozen=True)
class ScoredChunkId:
    """One entry of a ranked search list."""
    chunk_id: str
    score: float


def tokenize(text: str) -> List[str]:
    """Tokenization shared by BM25 indexing and keyword queries."""
    text = text.lower()
    tokens = re.findall(r'\b\w+\b', text)
    return [t for t in tokens if t not in _STOP_WORDS and len(t) > 1]


class ChunkStore(ABC):
    """Read-side interface onto a tenant's chunk corpus."""

    @abstractmethod
    async def vector_search(self,
                            tenant_id: str,
                            embedding: np.ndarray,
                            limit: int) -> List[ScoredChunkId]:
        """Nearest chunks by cosine similarity, best first."""

    @abstractmethod
    async def keyword_search(self,
                             tenant_id: str,
                             keywords: List[str],
                             limit: int) -> List[ScoredChunkId]:
        """Chunks matching any keyword, best first."""

    @abstractmethod
    async def get_chunks_by_ids(self, tenant_id: str, chunk_ids: List[str]) -> List[Chunk]:
        """Chunks in the order requested; unknown ids are skipped."""

    @abstractmethod
    async def get_document_full_text(self, tenant_id: str, document_id: str) -> str:
        """Whole document text, or an empty string when unknown."""


class _TenantCorpus:
    """Search structures for one tenant, rebuilt when chunks are added."""

    def __init__(self):
        self.chunks: List[Chunk] = []
        self.by_id: Dict[str, Chunk] = {}
        self.matrix: Optional[np.ndarray] = None
        self.tokens: List[List[str]] = []
        self.bm25: Optional[BM25Okapi] = None

    def add(self, chunks: Iterable[Chunk]) -> int:
        added = 0
        for chunk in chunks:
            if chunk.chunk_id in self.by_id:
                continue
            self.chunks.append(chunk)
            self.by_id[chunk.chunk_id] = chunk
            added += 1
        if added:
            self._rebuild()
        return added

    def _rebuild(self) -> None:
        self.matrix = np.vstack([c.embedding.astype(np.float32) for c in self.chunks])
        self.tokens = [tokenize(f"{c.document_title} {c.text}") for c in self.chunks]
        # BM25Okapi cannot be built over an all-empty corpus
        self.bm25 = BM25Okapi(self.tokens) if any(self.tokens) else None


class InMemoryChunkStore(ChunkStore):
    """
    Chunk store held in process memory.

    Suitable for local runs, tests and small corpora. Each tenant has its own
    embedding matrix and BM25 index; searches never cross tenants.
    """

    def __init__(self):
        self._tenants: Dict[str, _TenantCorpus] = {}

    def add_chunks(self, tenant_id: str, chunks: Iterable[Chunk]) -> int:
        """Add chunks to a tenant corpus; chunks with known ids are ignored."""
        corpus = self._tenants.setdefault(tenant_id, _TenantCorpus())
        added = corpus.add(chunks)
        logger.info(f"Added {added} chunks for tenant {tenant_id} ({len(corpus.chunks)} total)")
        return added

    def clear(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._tenants.clear()
        else:
            self._tenants.pop(tenant_id, None)

    def has_tenant(self, tenant_id: str) -> bool:
        return tenant_id in self._tenants

    def tenant_ids(self) -> List[str]:
        return sorted(self._tenants)

    def count(self, tenant_id: str) -> int:
        corpus = self._tenants.get(tenant_id)
        return len(corpus.chunks) if corpus else 0

    @staticmethod
    def _ranked(corpus: _TenantCorpus, scores: np.ndarray, indices: Iterable[int], limit: int) -> List[ScoredChunkId]:
        # Ties fall back to chunk position and id so ordering is reproducible
        order = sorted(
            indices,
            key=lambda i: (-float(scores[i]), corpus.chunks[i].chunk_index, corpus.chunks[i].chunk_id),
        )
        return [
            ScoredChunkId(chunk_id=corpus.chunks[i].chunk_id, score=float(scores[i]))
            for i in order[:limit]
        ]

    async def vector_search(self,
                            tenant_id: str,
                            embedding: np.ndarray,
                            limit: int) -> List[ScoredChunkId]:
        corpus = self._tenants.get(tenant_id)
        if not corpus or not corpus.chunks or limit <= 0:
            return []

        query = np.asarray(embedding, dtype=np.float32)
        scores = cosine_similarities(query, corpus.matrix)
        return self._ranked(corpus, scores, range(len(corpus.chunks)), limit)

    async def keyword_search(self,
                             tenant_id: str,
                             keywords: List[str],
                             limit: int) -> List[ScoredChunkId]:
        corpus = self._tenants.get(tenant_id)
        if not corpus or corpus.bm25 is None or limit <= 0:
            return []

        query_tokens = tokenize(" ".join(keywords))
        if not query_tokens:
            return []

        scores = corpus.bm25.get_scores(query_tokens)
        # BM25 idf can go negative on tiny corpora, so matching is decided by
        # term presence and the score only orders the matches.
        wanted = set(query_tokens)
        matching = [i for i, tokens in enumerate(corpus.tokens) if wanted.intersection(tokens)]
        return self._ranked(corpus, scores, matching, limit)

    async def get_chunks_by_ids(self, tenant_id: str, chunk_ids: List[str]) -> List[Chunk]:
        corpus = self._tenants.get(tenant_id)
        if not corpus:
            return []
        return [corpus.by_id[cid] for cid in chunk_ids if cid in corpus.by_id]

    async def get_document_full_text(self, tenant_id: str, document_id: str) -> str:
        corpus = self._tenants.get(tenant_id)
        if not corpus:
            return ""
        parts = sorted(
            (c for c in corpus.chunks if c.document_id == document_id),
            key=lambda c: c.chunk_index,
        )
        return "\n\n".join(c.text for c in parts)

    @classmethod
    def from_records(cls, records: Union[Dict[str, List[Dict[str, Any]]], List[Dict[str, Any]]]) -> "InMemoryChunkStore":
        """
        Build a store from chunk records.

        Accepts either {"tenant_id": [record, ...]} or a flat list of records
        that each carry a "tenant_id" key.
        """
        store = cls()
        if isinstance(records, dict):
            for tenant_id, items in records.items():
                store.add_chunks(tenant_id, (Chunk.from_dict(item) for item in items))
            return store

        grouped: Dict[str, List[Chunk]] = {}
        for item in records:
            tenant_id = item.get("tenant_id") or item.get("tenantId")
            if not tenant_id:
                raise ValueError(f"Chunk record without tenant_id: {item.get('chunk_id')}")
            grouped.setdefault(tenant_id, []).append(Chunk.from_dict(item))
        for tenant_id, chunks in grouped.items():
            store.add_chunks(tenant_id, chunks)
        return store

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> "InMemoryChunkStore":
        """Load a corpus file written as JSON (see from_records for layout)."""
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if isinstance(data, dict) and "tenants" in data:
            data = data["tenants"]
        store = cls.from_records(data)
        logger.info(f"Loaded corpus from {path} with {len(store.tenant_ids())} tenants")
        return store

    def save_json(self, path: Union[str, Path]) -> None:
        """Write every tenant corpus, embeddings included, as JSON."""
        data = {
            "tenants": {
                tenant_id: [c.to_dict(include_embedding=True) for c in corpus.chunks]
                for tenant_id, corpus in self._tenants.items()
            }
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f)
        logger.info(f"Saved corpus to {path}")
