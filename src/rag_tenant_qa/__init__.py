"""
RAG Tenant QA

Multi-tenant retrieval-augmented question answering with hybrid search and cited answers.
"""

__version__ = "1.0.0"

from .config import (
    SystemConfig,
    TenantRAGConfig,
    FeatureFlags,
    EmbeddingConfig,
    GeneratorConfig,
    RetrieverConfig,
    load_config,
)
from .errors import (
    RAGError,
    InputValidationError,
    ProviderError,
    MalformedProviderOutputError,
    RAGPipelineError,
)
from .embeddings import EmbeddingProvider, OpenAIEmbeddingProvider, create_embedding_provider
from .completion import CompletionProvider, OpenAICompletionProvider, MockCompletionProvider, TokenUsage
from .store import Chunk, ChunkStore, InMemoryChunkStore
from .retriever import HybridRetriever, RetrievalCandidate
from .confidence import ConfidenceScorer
from .citations import Citation
from .cache import RAGCache, InMemoryCacheBackend
from .pipeline import RAGOrchestrator, RAGQuery, RAGResponse, StreamEvent, run_with_callbacks

__all__ = [
    # Core classes
    "RAGOrchestrator",
    "RAGQuery",
    "RAGResponse",
    "StreamEvent",
    "run_with_callbacks",
    "HybridRetriever",
    "RetrievalCandidate",
    "ConfidenceScorer",
    "Citation",
    "Chunk",
    "ChunkStore",
    "InMemoryChunkStore",
    "RAGCache",
    "InMemoryCacheBackend",
    "TokenUsage",
    # Providers
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "create_embedding_provider",
    "CompletionProvider",
    "OpenAICompletionProvider",
    "MockCompletionProvider",
    # Errors
    "RAGError",
    "InputValidationError",
    "ProviderError",
    "MalformedProviderOutputError",
    "RAGPipelineError",
    # Config classes
    "SystemConfig",
    "TenantRAGConfig",
    "FeatureFlags",
    "EmbeddingConfig",
    "GeneratorConfig",
    "RetrieverConfig",
    "load_config",
    # Version
    "__version__",
]
