"""
Hybrid retrieval combining vector and keyword search.
Rankings are merged with Reciprocal Rank Fusion, then a second pass selects
a document-diverse final set.
"""

import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass, replace
from typing import List, Dict, Any, Optional

import numpy as np

from rag_tenant_qa.completion import TokenUsage
from rag_tenant_qa.config import (
    RERANK_FIRST_CHUNK_BOOST,
    RERANK_MIN_TERM_LENGTH,
    RERANK_TERM_BOOST,
    RetrieverConfig,
    TenantRAGConfig,
)
from rag_tenant_qa.confidence import ConfidenceScorer
from rag_tenant_qa.embeddings import cosine_similarity
from rag_tenant_qa.query_expansion import KeywordExtractor
from rag_tenant_qa.store import Chunk, ChunkStore, ScoredChunkId

logger = logging.getLogger(__name__)


@dataclass
class RetrievalCandidate:
    """A chunk with the scores it earned for one query."""
    chunk: Chunk
    vector_score: float = 0.0
    keyword_score: float = 0.0
    vector_rank: Optional[int] = None
    keyword_rank: Optional[int] = None
    fused_score: float = 0.0
    normalized_score: float = 0.0
    fused_rank: int = 0
    keyword_boost: float = 0.0
    rerank_boost: float = 0.0
    confidence: float = 0.0

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def document_id(self) -> str:
        return self.chunk.document_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "chunk_id": self.chunk.chunk_id,
            "document_id": self.chunk.document_id,
            "document_title": self.chunk.document_title,
            "chunk_index": self.chunk.chunk_index,
            "scores": {
                "vector": self.vector_score,
                "keyword": self.keyword_score,
                "fused": self.fused_score,
                "normalized": self.normalized_score,
                "keyword_boost": self.keyword_boost,
                "rerank_boost": self.rerank_boost,
            },
            "ranks": {
                "vector": self.vector_rank,
                "keyword": self.keyword_rank,
                "fused": self.fused_rank,
            },
            "confidence": self.confidence,
        }


def reciprocal_rank_fusion(ranked_lists: List[List[ScoredChunkId]], k: int) -> Dict[str, float]:
    """Sum of 1/(k + rank) over every list a chunk appears in (rank is 1-based)."""
    fused: Dict[str, float] = {}
    for ranked in ranked_lists:
        for rank, entry in enumerate(ranked, start=1):
            fused[entry.chunk_id] = fused.get(entry.chunk_id, 0.0) + 1.0 / (k + rank)
    return fused


_QUERY_TERM = re.compile(r"\w+")


def rerank(candidates: List[RetrievalCandidate],
           query: str,
           term_boost: float = RERANK_TERM_BOOST,
           first_chunk_boost: float = RERANK_FIRST_CHUNK_BOOST) -> List[RetrievalCandidate]:
    """
    Re-order candidates by confidence after lexical boosts.

    Every distinct query term of RERANK_MIN_TERM_LENGTH or more characters
    found in the chunk text adds term_boost, and the first chunk of a
    document adds first_chunk_boost. Confidence is capped at 1.0; equal
    confidences keep their incoming order. Returns new candidates.
    """
    terms = [t for t in dict.fromkeys(_QUERY_TERM.findall(query.lower())) if len(t) >= RERANK_MIN_TERM_LENGTH]

    reranked = []
    for candidate in candidates:
        text = candidate.chunk.text.lower()
        boost = term_boost * sum(1 for term in terms if term in text)
        if candidate.chunk.chunk_index == 0:
            boost += first_chunk_boost
        reranked.append(replace(
            candidate,
            rerank_boost=boost,
            confidence=min(1.0, candidate.confidence + boost),
        ))

    reranked.sort(key=lambda c: -c.confidence)
    return reranked


class HybridRetriever:
    """
    Two-pass hybrid retriever.

    Pass 1 runs vector and keyword search concurrently over a wide pool and
    fuses the rankings. Pass 2 trims the pool to top_k while guaranteeing
    coverage of several documents.
    """

    def __init__(self,
                 store: ChunkStore,
                 keyword_extractor: Optional[KeywordExtractor] = None,
                 scorer: Optional[ConfidenceScorer] = None,
                 config: Optional[RetrieverConfig] = None):
        self.store = store
        self.keyword_extractor = keyword_extractor or KeywordExtractor(provider=None)
        self.scorer = scorer or ConfidenceScorer()
        self.config = config or RetrieverConfig()

    async def retrieve(self,
                       tenant_id: str,
                       query_text: str,
                       query_embedding: np.ndarray,
                       tenant_config: Optional[TenantRAGConfig] = None,
                       usage: Optional[TokenUsage] = None) -> List[RetrievalCandidate]:
        """
        Retrieve up to top_k candidates for a query.

        Args:
            tenant_id: Tenant whose corpus is searched
            query_text: Original question, used for keyword extraction
            query_embedding: Embedding of the (possibly expanded) query
            tenant_config: Per-tenant tunables and feature flags
            usage: Token accumulator for the keyword extraction call

        Returns:
            Candidates in fused order; empty when nothing matches
        """
        tenant_config = tenant_config or TenantRAGConfig()
        features = tenant_config.features
        top_k = tenant_config.top_k
        pool_size = max(self.config.first_pass_top_k, top_k)

        branches = [
            asyncio.ensure_future(self.store.vector_search(tenant_id, query_embedding, pool_size)),
            asyncio.ensure_future(
                self._keyword_branch(tenant_id, query_text, pool_size, tenant_config, usage)
            ),
        ]
        try:
            vector_hits, keyword_hits = await asyncio.gather(*branches)
        except BaseException:
            # gather leaves the sibling running when one branch fails
            for branch in branches:
                branch.cancel()
            raise

        active_lists = 2 if features.keyword_search_enabled else 1
        candidates = await self._fuse(tenant_id, query_embedding, vector_hits, keyword_hits, active_lists)

        # The threshold applies to the normalized fused score, a prefix cut
        before = len(candidates)
        candidates = [c for c in candidates if c.normalized_score >= tenant_config.confidence_threshold]

        if features.two_pass_enabled:
            selected = self.select_diverse(candidates, top_k)
        else:
            selected = candidates[:top_k]

        if features.debug_enabled:
            documents = Counter(c.document_id for c in selected)
            logger.info(
                f"[retrieval] tenant={tenant_id} vector={len(vector_hits)} keyword={len(keyword_hits)} "
                f"fused={before} above_threshold={len(candidates)} selected={len(selected)} "
                f"documents={dict(documents)}"
            )
        return selected

    async def _keyword_branch(self,
                              tenant_id: str,
                              query_text: str,
                              limit: int,
                              tenant_config: TenantRAGConfig,
                              usage: Optional[TokenUsage]) -> List[ScoredChunkId]:
        features = tenant_config.features
        if not features.keyword_search_enabled:
            return []

        keywords = await self.keyword_extractor.extract(
            query_text, usage, enabled=features.keyword_extraction_enabled
        )
        if not keywords:
            return []

        try:
            return await self.store.keyword_search(tenant_id, keywords, limit)
        except Exception as e:
            logger.warning(f"Keyword search failed, continuing with vector results only: {e}")
            return []

    async def _fuse(self,
                    tenant_id: str,
                    query_embedding: np.ndarray,
                    vector_hits: List[ScoredChunkId],
                    keyword_hits: List[ScoredChunkId],
                    active_lists: int) -> List[RetrievalCandidate]:
        """Merge both ranked lists into candidates sorted by fused score."""
        k = self.config.rrf_k
        fused = reciprocal_rank_fusion([vector_hits, keyword_hits], k)
        if not fused:
            return []

        vector_info = {hit.chunk_id: (rank, hit.score) for rank, hit in enumerate(vector_hits, start=1)}
        keyword_info = {hit.chunk_id: (rank, hit.score) for rank, hit in enumerate(keyword_hits, start=1)}

        chunks = await self.store.get_chunks_by_ids(tenant_id, list(fused))
        max_score = active_lists / (k + 1)

        candidates = []
        for chunk in chunks:
            candidate = RetrievalCandidate(chunk=chunk, fused_score=fused[chunk.chunk_id])
            candidate.normalized_score = min(1.0, candidate.fused_score / max_score)

            if chunk.chunk_id in vector_info:
                candidate.vector_rank, candidate.vector_score = vector_info[chunk.chunk_id]
            else:
                # Keyword-only hit: similarity is computed locally
                candidate.vector_score = cosine_similarity(query_embedding, chunk.embedding)

            if chunk.chunk_id in keyword_info:
                candidate.keyword_rank, candidate.keyword_score = keyword_info[chunk.chunk_id]

            candidates.append(candidate)

        candidates.sort(
            key=lambda c: (-c.fused_score, -c.vector_score, c.chunk.chunk_index, c.chunk.chunk_id)
        )

        for rank, candidate in enumerate(candidates, start=1):
            candidate.fused_rank = rank
            candidate.keyword_boost = self.scorer.keyword_boost(candidate.keyword_rank)
            candidate.confidence = self.scorer.candidate_confidence(
                candidate.vector_score, rank, candidate.keyword_rank
            )
        return candidates

    def select_diverse(self, candidates: List[RetrievalCandidate], top_k: int) -> List[RetrievalCandidate]:
        """
        Select top_k candidates spread across documents.

        1. Seed with the best chunk of each of the first min_documents documents.
        2. Add chunks in fused order while their document is under the cap.
        3. Fill any remaining slots in fused order, ignoring the cap.

        The result keeps fused order.
        """
        if top_k <= 0 or not candidates:
            return []
        if len(candidates) <= top_k:
            return list(candidates)

        cap = self.config.max_chunks_per_document
        selected: Dict[int, RetrievalCandidate] = {}
        per_document: Counter = Counter()

        def take(index: int, candidate: RetrievalCandidate) -> None:
            selected[index] = candidate
            per_document[candidate.document_id] += 1

        seeded_documents = set()
        for index, candidate in enumerate(candidates):
            if len(seeded_documents) >= self.config.min_documents or len(selected) >= top_k:
                break
            if candidate.document_id not in seeded_documents:
                seeded_documents.add(candidate.document_id)
                take(index, candidate)

        for index, candidate in enumerate(candidates):
            if len(selected) >= top_k:
                break
            if index not in selected and per_document[candidate.document_id] < cap:
                take(index, candidate)

        for index, candidate in enumerate(candidates):
            if len(selected) >= top_k:
                break
            if index not in selected:
                take(index, candidate)

        return [selected[index] for index in sorted(selected)]
