"""
Unit tests for hybrid retrieval, fusion and diversity selection.
"""

import asyncio

import pytest
import numpy as np

from rag_tenant_qa.config import FeatureFlags, RetrieverConfig, TenantRAGConfig
from rag_tenant_qa.query_expansion import KeywordExtractor
from rag_tenant_qa.retriever import HybridRetriever, RetrievalCandidate, reciprocal_rank_fusion, rerank
from rag_tenant_qa.store import InMemoryChunkStore, ScoredChunkId

from fakes import FakeCompletionProvider, StubChunkStore, embed_text, make_chunk


def flags(**overrides):
    values = dict(
        hyde_enabled=True,
        keyword_extraction_enabled=False,
        keyword_search_enabled=True,
        two_pass_enabled=True,
        summarization_enabled=True,
        verification_enabled=False,
        debug_enabled=False,
    )
    values.update(overrides)
    return FeatureFlags(**values)


class TestReciprocalRankFusion:
    """Test the fusion formula."""

    def test_scores_sum_over_lists(self):
        vector = [ScoredChunkId("a", 0.9), ScoredChunkId("b", 0.8)]
        keyword = [ScoredChunkId("b", 3.0), ScoredChunkId("c", 1.0)]

        fused = reciprocal_rank_fusion([vector, keyword], k=60)

        assert fused["a"] == pytest.approx(1 / 61)
        assert fused["b"] == pytest.approx(1 / 62 + 1 / 61)
        assert fused["c"] == pytest.approx(1 / 62)

    def test_empty_lists(self):
        assert reciprocal_rank_fusion([[], []], k=60) == {}


class TestFusionOrdering:
    """Test fused ranks, boosts and keyword-only similarity."""

    @pytest.fixture
    def stub_store(self):
        query = np.array([1.0, 0.0], dtype=np.float32)
        chunks = [
            make_chunk("a", "d1", "alpha", 0, embedding=[0.9, 0.1]),
            make_chunk("b", "d1", "beta", 1, embedding=[0.8, 0.2]),
            make_chunk("c", "d2", "gamma", 0, embedding=[0.0, 1.0]),
        ]
        store = StubChunkStore(
            chunks,
            vector_hits=[ScoredChunkId("a", 0.99), ScoredChunkId("b", 0.97)],
            keyword_hits=[ScoredChunkId("b", 5.0), ScoredChunkId("c", 2.0)],
        )
        return store, query

    @pytest.mark.asyncio
    async def test_chunk_in_both_lists_ranks_first(self, stub_store):
        store, query = stub_store
        retriever = HybridRetriever(store)
        config = TenantRAGConfig(top_k=10, confidence_threshold=0.0, features=flags())

        results = await retriever.retrieve("t1", "beta question", query, config)

        assert [r.chunk_id for r in results] == ["b", "a", "c"]
        assert [r.fused_rank for r in results] == [1, 2, 3]
        assert results[0].vector_rank == 2
        assert results[0].keyword_rank == 1

    @pytest.mark.asyncio
    async def test_keyword_only_candidate_gets_local_similarity(self, stub_store):
        store, query = stub_store
        retriever = HybridRetriever(store)
        config = TenantRAGConfig(top_k=10, confidence_threshold=0.0, features=flags())

        results = await retriever.retrieve("t1", "gamma", query, config)
        gamma = next(r for r in results if r.chunk_id == "c")

        assert gamma.vector_rank is None
        assert gamma.vector_score == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_keyword_boost_applied(self, stub_store):
        store, query = stub_store
        retriever = HybridRetriever(store)
        config = TenantRAGConfig(top_k=10, confidence_threshold=0.0, features=flags())

        results = await retriever.retrieve("t1", "beta", query, config)
        by_id = {r.chunk_id: r for r in results}

        assert by_id["b"].keyword_boost == pytest.approx(0.15)
        assert by_id["a"].keyword_boost == 0.0

    @pytest.mark.asyncio
    async def test_normalized_score_and_threshold(self, stub_store):
        store, query = stub_store
        retriever = HybridRetriever(store)
        # a and c each appear in one list and normalize to about 0.5
        config = TenantRAGConfig(top_k=10, confidence_threshold=0.6, features=flags())

        results = await retriever.retrieve("t1", "beta", query, config)

        assert [r.chunk_id for r in results] == ["b"]
        assert 0.0 < results[0].normalized_score <= 1.0

    @pytest.mark.asyncio
    async def test_keyword_search_disabled_uses_vector_only(self, stub_store):
        store, query = stub_store
        retriever = HybridRetriever(store)
        config = TenantRAGConfig(
            top_k=10, confidence_threshold=0.0, features=flags(keyword_search_enabled=False)
        )

        results = await retriever.retrieve("t1", "beta", query, config)

        assert [r.chunk_id for r in results] == ["a", "b"]
        assert store.keyword_queries == []
        assert results[0].normalized_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_keyword_extraction_uses_provider_when_enabled(self, stub_store):
        store, query = stub_store
        provider = FakeCompletionProvider({"keywords": "Beta, Revenue beta"})
        retriever = HybridRetriever(store, KeywordExtractor(provider))
        config = TenantRAGConfig(
            top_k=10, confidence_threshold=0.0, features=flags(keyword_extraction_enabled=True)
        )

        await retriever.retrieve("t1", "what about beta?", query, config)

        assert store.keyword_queries == [["beta", "revenue"]]


class TestDiversitySelection:
    """Test two-pass document-diverse selection."""

    @pytest.fixture
    def skewed_store(self):
        """One document with 40 strongly matching chunks and three weaker documents."""
        store = InMemoryChunkStore()
        chunks = []
        for i in range(40):
            vector = np.zeros(8, dtype=np.float32)
            vector[0] = 1.0
            vector[1] = 0.001 * i
            chunks.append(make_chunk(f"big-{i}", "big", f"big chunk {i}", i, embedding=vector))
        for d in range(3):
            for i in range(2):
                vector = np.zeros(8, dtype=np.float32)
                vector[0] = 0.5
                vector[2 + d] = 0.5 + 0.01 * i
                chunks.append(make_chunk(f"small{d}-{i}", f"small{d}", f"small chunk {d} {i}", i, embedding=vector))
        store.add_chunks("t1", chunks)
        query = np.zeros(8, dtype=np.float32)
        query[0] = 1.0
        return store, query

    @pytest.mark.asyncio
    async def test_dominant_document_is_capped(self, skewed_store):
        store, query = skewed_store
        retriever = HybridRetriever(store)
        config = TenantRAGConfig(
            top_k=8, confidence_threshold=0.0, features=flags(keyword_search_enabled=False)
        )

        results = await retriever.retrieve("t1", "question", query, config)
        documents = {r.document_id for r in results}

        assert len(results) == 8
        assert len(documents) >= 3
        assert sum(1 for r in results if r.document_id == "big") <= RetrieverConfig().max_chunks_per_document

    @pytest.mark.asyncio
    async def test_output_keeps_fused_order(self, skewed_store):
        store, query = skewed_store
        retriever = HybridRetriever(store)
        config = TenantRAGConfig(
            top_k=8, confidence_threshold=0.0, features=flags(keyword_search_enabled=False)
        )

        results = await retriever.retrieve("t1", "question", query, config)
        ranks = [r.fused_rank for r in results]

        assert ranks == sorted(ranks)

    @pytest.mark.asyncio
    async def test_single_pass_returns_prefix(self, skewed_store):
        store, query = skewed_store
        retriever = HybridRetriever(store)
        config = TenantRAGConfig(
            top_k=8,
            confidence_threshold=0.0,
            features=flags(keyword_search_enabled=False, two_pass_enabled=False),
        )

        results = await retriever.retrieve("t1", "question", query, config)

        assert {r.document_id for r in results} == {"big"}

    def test_fills_past_cap_when_only_one_document(self):
        retriever = HybridRetriever(StubChunkStore([], [], []))
        candidates = []
        for i in range(10):
            candidates.append(RetrievalCandidate(chunk=make_chunk(f"c{i}", "only", "text", i), fused_rank=i + 1))

        selected = retriever.select_diverse(candidates, 8)

        assert len(selected) == 8
        assert [c.chunk_id for c in selected] == [f"c{i}" for i in range(8)]


class TestRetrieval:
    """Test retrieval against the in-memory store."""

    @pytest.mark.asyncio
    async def test_deterministic(self, corpus_store):
        retriever = HybridRetriever(corpus_store)
        config = TenantRAGConfig(top_k=5, features=flags())
        query = embed_text("Q3 2024 revenue")

        first = await retriever.retrieve("acme", "Q3 2024 revenue", query, config)
        second = await retriever.retrieve("acme", "Q3 2024 revenue", query, config)

        assert [r.chunk_id for r in first] == [r.chunk_id for r in second]
        assert [r.fused_score for r in first] == [r.fused_score for r in second]
        assert first[0].chunk_id == "q3-0"

    @pytest.mark.asyncio
    async def test_empty_corpus_returns_empty(self):
        retriever = HybridRetriever(InMemoryChunkStore())
        config = TenantRAGConfig(features=flags())

        results = await retriever.retrieve("nobody", "anything", embed_text("anything"), config)

        assert results == []

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, corpus_store):
        retriever = HybridRetriever(corpus_store)
        config = TenantRAGConfig(top_k=10, features=flags())

        results = await retriever.retrieve("globex", "revenue", embed_text("revenue"), config)

        assert {r.document_id for r in results} == {"d-globex"}


class FailingVectorStore(StubChunkStore):
    async def vector_search(self, tenant_id, embedding, limit):
        raise RuntimeError("vector index unavailable")


class StalledCompletionProvider(FakeCompletionProvider):
    """Completion that never returns unless cancelled."""

    def __init__(self):
        super().__init__()
        self.cancelled = False

    async def complete(self, messages, options=None):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class TestBranchFailure:

    @pytest.mark.asyncio
    async def test_vector_failure_cancels_keyword_branch(self):
        provider = StalledCompletionProvider()
        store = FailingVectorStore([], vector_hits=[], keyword_hits=[])
        retriever = HybridRetriever(store, KeywordExtractor(provider))
        config = TenantRAGConfig(features=flags(keyword_extraction_enabled=True))

        with pytest.raises(RuntimeError, match="vector index unavailable"):
            await retriever.retrieve("acme", "quarterly revenue", np.zeros(2, dtype=np.float32), config)
        await asyncio.sleep(0.01)

        assert provider.cancelled


def scored(chunk_id, text, chunk_index, confidence):
    return RetrievalCandidate(chunk=make_chunk(chunk_id, f"doc-{chunk_id}", text, chunk_index),
                              confidence=confidence)


class TestRerank:
    """Test lexical re-ranking of retrieved candidates."""

    def test_term_matches_reorder_candidates(self):
        first = scored("a", "Unrelated notes about office plants.", 2, 0.50)
        second = scored("b", "Quarterly revenue grew strongly.", 0, 0.48)

        reranked = rerank([first, second], "What was quarterly revenue?")

        assert [c.chunk_id for c in reranked] == ["b", "a"]
        assert reranked[0].rerank_boost == pytest.approx(0.05)
        assert reranked[0].confidence == pytest.approx(0.53)
        assert reranked[1].confidence == pytest.approx(0.50)

    def test_input_candidates_unchanged(self):
        candidate = scored("b", "Quarterly revenue grew.", 0, 0.48)

        rerank([candidate], "quarterly revenue")

        assert candidate.confidence == 0.48
        assert candidate.rerank_boost == 0.0

    def test_short_terms_ignored_and_ties_keep_order(self):
        first = scored("a", "q3 figures", 1, 0.6)
        second = scored("b", "q3 figures", 1, 0.6)

        reranked = rerank([first, second], "q3")

        assert [c.chunk_id for c in reranked] == ["a", "b"]
        assert reranked[0].rerank_boost == 0.0

    def test_confidence_capped(self):
        reranked = rerank([scored("a", "revenue revenue", 0, 0.99)], "revenue")

        assert reranked[0].confidence == 1.0

    def test_empty(self):
        assert rerank([], "anything") == []
