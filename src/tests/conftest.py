"""
Shared fixtures for the test suite.
"""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rag_tenant_qa.cache import RAGCache, InMemoryCacheBackend
from rag_tenant_qa.config import CacheConfig, FeatureFlags, SystemConfig, TenantRAGConfig
from rag_tenant_qa.pipeline import RAGOrchestrator
from rag_tenant_qa.store import InMemoryChunkStore

from fakes import FakeCompletionProvider, FakeEmbeddingProvider, make_chunk

Q3_REVENUE_TEXT = (
    "Total revenue for Q3 2024 was 150 million dollars, an increase of 12 percent over Q3 2023."
)


@pytest.fixture
def corpus_store():
    """Two tenants with a handful of small documents each."""
    store = InMemoryChunkStore()
    store.add_chunks("acme", [
        make_chunk("q3-0", "d-q3", Q3_REVENUE_TEXT, 0, title="Q3 2024 Financial Results"),
        make_chunk("q3-1", "d-q3", "Operating expenses in the third quarter rose to 90 million dollars driven by hiring.",
                   1, title="Q3 2024 Financial Results"),
        make_chunk("st-0", "d-strategy", "The company plans to expand into European markets during 2025.",
                   0, title="Strategy Overview"),
        make_chunk("st-1", "d-strategy", "Product investments focus on cloud analytics and security.",
                   1, title="Strategy Overview"),
        make_chunk("hr-0", "d-hr", "Employees receive twenty days of paid vacation per year.",
                   0, title="Employee Handbook"),
    ])
    store.add_chunks("globex", [
        make_chunk("gx-0", "d-globex", "Globex revenue reached 900 million dollars in fiscal 2024.",
                   0, title="Globex Annual Report"),
    ])
    return store


@pytest.fixture
def tenant_config():
    """Tenant settings with every optional feature on except verification."""
    return TenantRAGConfig(
        top_k=5,
        features=FeatureFlags(
            hyde_enabled=True,
            keyword_extraction_enabled=True,
            keyword_search_enabled=True,
            two_pass_enabled=True,
            summarization_enabled=True,
            verification_enabled=False,
            debug_enabled=False,
        ),
    )


@pytest.fixture
def revenue_completion():
    return FakeCompletionProvider({
        "hyde": "Revenue for Q3 2024 was reported in the quarterly results.",
        "keywords": "revenue q3 2024 sales",
        "answer": "Total revenue for Q3 2024 was 150 million dollars [Citation 1].",
    })


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def make_orchestrator(corpus_store, embedder):
    """Factory building an orchestrator over the shared corpus with a fresh cache."""

    def build(completion, store=None, cache_enabled=True, embedding_provider=None):
        config = SystemConfig(cache=CacheConfig(enabled=cache_enabled, ttl_seconds=3600, key_prefix="rag:qa:"))
        return RAGOrchestrator(
            store=store if store is not None else corpus_store,
            embedding_provider=embedding_provider or embedder,
            completion_provider=completion,
            config=config,
            cache=RAGCache(InMemoryCacheBackend(), config.cache),
        )

    return build
