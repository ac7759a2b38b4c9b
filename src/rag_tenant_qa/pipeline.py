"""
Question answering pipeline orchestration.

Sequences validation, caching, query expansion, embedding, hybrid retrieval,
summarization, generation, citation parsing and optional verification for one
request, either as a single response or as a stream of events.
"""

import inspect
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional, AsyncIterator, Callable, Tuple

from rag_tenant_qa.cache import RAGCache
from rag_tenant_qa.citations import Citation, format_sources_section, parse
from rag_tenant_qa.completion import CompletionProvider, TokenUsage, create_completion_provider
from rag_tenant_qa.config import FALLBACK_ANSWER, SystemConfig, TenantRAGConfig
from rag_tenant_qa.confidence import ConfidenceScore, ConfidenceScorer
from rag_tenant_qa.embeddings import EmbeddingProvider, create_embedding_provider
from rag_tenant_qa.errors import RAGError, RAGPipelineError
from rag_tenant_qa.generator import AnswerGenerator, ContextItem, build_context_items, conversational_reply
from rag_tenant_qa.query_expansion import KeywordExtractor, QueryExpander
from rag_tenant_qa.retriever import HybridRetriever, RetrievalCandidate, rerank
from rag_tenant_qa.sanitize import validate_question
from rag_tenant_qa.store import ChunkStore
from rag_tenant_qa.summarizer import DocumentSummarizer, is_broad_question
from rag_tenant_qa.verifier import AnswerVerifier

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Failed to generate an answer. Please try again."


class PipelineState(Enum):
    IDLE = "idle"
    CACHE_CHECK = "cache_check"
    EXPANDING = "expanding"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    SUMMARIZING = "summarizing"
    GENERATING = "generating"
    CITING = "citing"
    VERIFYING = "verifying"
    CACHE_WRITE = "cache_write"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class RAGQuery:
    question: str
    tenant_id: str
    session_id: Optional[str] = None
    trace_id: Optional[str] = None


@dataclass
class RAGResponse:
    """Answer with citations and accounting. Metadata fields do not take part in equality."""
    answer: str
    citations: List[Citation] = field(default_factory=list)
    confidence: float = 0.0
    confidence_label: str = "low"
    retrieved_chunks: int = 0
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    timing: Dict[str, float] = field(default_factory=dict)
    trace_id: str = field(default="", compare=False)
    cache_hit: bool = field(default=False, compare=False)
    diagnostics: Dict[str, Any] = field(default_factory=dict, compare=False)

    def sources_section(self) -> str:
        return format_sources_section(self.citations)

    def to_dict(self, include_metadata: bool = True) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "answer": self.answer,
            "citations": [c.to_dict() for c in self.citations],
            "confidence": self.confidence,
            "confidence_label": self.confidence_label,
            "retrieved_chunks": self.retrieved_chunks,
            "tokens_used": self.tokens_used.to_dict(),
            "timing": dict(self.timing),
        }
        if include_metadata:
            data["trace_id"] = self.trace_id
            data["cache_hit"] = self.cache_hit
            if self.diagnostics:
                data["diagnostics"] = self.diagnostics
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RAGResponse":
        return cls(
            answer=data["answer"],
            citations=[Citation.from_dict(c) for c in data.get("citations", [])],
            confidence=float(data.get("confidence", 0.0)),
            confidence_label=data.get("confidence_label", "low"),
            retrieved_chunks=int(data.get("retrieved_chunks", 0)),
            tokens_used=TokenUsage.from_dict(data.get("tokens_used", {})),
            timing={k: float(v) for k, v in data.get("timing", {}).items()},
            trace_id=data.get("trace_id", ""),
            cache_hit=bool(data.get("cache_hit", False)),
            diagnostics=data.get("diagnostics", {}),
        )


@dataclass
class StreamEvent:
    """One event of a streamed answer: start, chunk, citations, complete or error."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamCallbacks:
    """Callbacks for consumers that prefer push-style streaming. Each may be sync or async."""
    on_chunk: Optional[Callable[[str], Any]] = None
    on_citations: Optional[Callable[[List[Citation]], Any]] = None
    on_complete: Optional[Callable[[RAGResponse], Any]] = None
    on_error: Optional[Callable[[RAGError], Any]] = None


class Timer:
    """Wall-clock timing of named pipeline stages, in milliseconds."""

    def __init__(self):
        self._start = time.perf_counter()
        self.stages: Dict[str, float] = {}

    @contextmanager
    def stage(self, name: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            self.stages[name] = round((time.perf_counter() - started) * 1000, 2)

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self._start) * 1000, 2)

    def to_dict(self) -> Dict[str, float]:
        return {**self.stages, "total_ms": self.elapsed_ms()}


@dataclass
class _RequestContext:
    query: RAGQuery
    question: str
    tenant_config: TenantRAGConfig
    trace_id: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    timer: Timer = field(default_factory=Timer)
    state: PipelineState = PipelineState.IDLE

    def transition(self, state: PipelineState) -> None:
        logger.debug(f"[{self.trace_id}] {self.state.value} -> {state.value}")
        self.state = state


class RAGOrchestrator:
    """
    Runs the question answering pipeline for any tenant.

    Providers, store and cache are injected; the orchestrator owns no global
    state and one instance serves concurrent requests.
    """

    def __init__(self,
                 store: ChunkStore,
                 embedding_provider: EmbeddingProvider,
                 completion_provider: CompletionProvider,
                 config: Optional[SystemConfig] = None,
                 cache: Optional[RAGCache] = None,
                 expansion_provider: Optional[CompletionProvider] = None):
        self.config = config or SystemConfig()
        self.store = store
        self.embedding_provider = embedding_provider
        self.completion_provider = completion_provider
        self.expansion_provider = expansion_provider or completion_provider

        self.scorer = ConfidenceScorer()
        self.expander = QueryExpander(self.expansion_provider, self.config.expansion)
        self.keyword_extractor = KeywordExtractor(self.expansion_provider, self.config.expansion)
        self.retriever = HybridRetriever(store, self.keyword_extractor, self.scorer, self.config.retriever)
        self.summarizer = DocumentSummarizer(completion_provider, store, self.config.summarizer)
        self.generator = AnswerGenerator(completion_provider, self.config.generator)
        self.verifier = AnswerVerifier(completion_provider)
        self.cache = cache if cache is not None else RAGCache(config=self.config.cache)

    @classmethod
    def from_config(cls,
                    store: ChunkStore,
                    config: Optional[SystemConfig] = None,
                    cache: Optional[RAGCache] = None) -> "RAGOrchestrator":
        """Build providers from configuration."""
        config = config or SystemConfig()
        logger.info("Initializing RAG pipeline components...")
        return cls(
            store=store,
            embedding_provider=create_embedding_provider(config.embedding),
            completion_provider=create_completion_provider(config.generator),
            config=config,
            cache=cache,
        )

    # ------------------------------------------------------------------
    # Request setup
    # ------------------------------------------------------------------

    def _start(self, request: RAGQuery, tenant_config: Optional[TenantRAGConfig]) -> _RequestContext:
        # Raises InputValidationError before any provider call
        question = validate_question(request.question, self.config.max_question_length)
        ctx = _RequestContext(
            query=request,
            question=question,
            tenant_config=tenant_config or TenantRAGConfig(),
            trace_id=request.trace_id or uuid.uuid4().hex,
        )
        logger.info(
            f"[{ctx.trace_id}] Query for tenant {request.tenant_id} ({len(question)} chars)"
        )
        return ctx

    def _fail(self, ctx: _RequestContext, error: Exception) -> RAGPipelineError:
        ctx.transition(PipelineState.ERROR)
        logger.error(f"[{ctx.trace_id}] Pipeline failed in {ctx.timer.elapsed_ms()}ms: {error!r}")
        return RAGPipelineError(GENERIC_ERROR_MESSAGE, trace_id=ctx.trace_id)

    def _conversational_response(self, ctx: _RequestContext, reply: str) -> RAGResponse:
        ctx.transition(PipelineState.DONE)
        return RAGResponse(
            answer=reply,
            confidence=1.0,
            confidence_label="high",
            timing=ctx.timer.to_dict(),
            trace_id=ctx.trace_id,
        )

    def _fallback_response(self, ctx: _RequestContext) -> RAGResponse:
        ctx.transition(PipelineState.DONE)
        logger.info(f"[{ctx.trace_id}] No context retrieved; returning fallback answer")
        return RAGResponse(
            answer=FALLBACK_ANSWER,
            confidence=0.0,
            confidence_label="low",
            retrieved_chunks=0,
            tokens_used=ctx.usage,
            timing=ctx.timer.to_dict(),
            trace_id=ctx.trace_id,
        )

    async def _check_cache(self, ctx: _RequestContext) -> Optional[RAGResponse]:
        ctx.transition(PipelineState.CACHE_CHECK)
        cached = await self.cache.get(ctx.query.tenant_id, ctx.question)
        if cached is None:
            return None

        try:
            response = RAGResponse.from_dict(cached)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[{ctx.trace_id}] Ignoring unreadable cache entry: {e}")
            return None

        response.trace_id = ctx.trace_id
        response.cache_hit = True
        ctx.transition(PipelineState.DONE)
        return response

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def _prepare_context(self, ctx: _RequestContext) -> Tuple[List[RetrievalCandidate], List[ContextItem]]:
        features = ctx.tenant_config.features
        tenant_id = ctx.query.tenant_id

        ctx.transition(PipelineState.EXPANDING)
        with ctx.timer.stage("expansion_ms"):
            search_text = await self.expander.expand(ctx.question, ctx.usage, enabled=features.hyde_enabled)

        ctx.transition(PipelineState.EMBEDDING)
        with ctx.timer.stage("embedding_ms"):
            embedded = await self.embedding_provider.embed(search_text)
        ctx.usage.embedding += embedded.tokens

        ctx.transition(PipelineState.RETRIEVING)
        with ctx.timer.stage("retrieval_ms"):
            candidates = await self.retriever.retrieve(
                tenant_id, ctx.question, embedded.vector, ctx.tenant_config, ctx.usage
            )
            if candidates and features.rerank_enabled:
                candidates = rerank(candidates, ctx.question)
        logger.info(f"[{ctx.trace_id}] Retrieved {len(candidates)} chunks")

        summaries = []
        if candidates and features.summarization_enabled and is_broad_question(ctx.question):
            ctx.transition(PipelineState.SUMMARIZING)
            with ctx.timer.stage("summarization_ms"):
                summaries = await self.summarizer.summarize(tenant_id, ctx.question, candidates, ctx.usage)

        return candidates, build_context_items(candidates, summaries)

    async def _finish(self,
                      ctx: _RequestContext,
                      answer_text: str,
                      candidates: List[RetrievalCandidate],
                      context_items: List[ContextItem]) -> RAGResponse:
        """Citation, verification and cache stages. Failures here degrade, never raise."""
        features = ctx.tenant_config.features
        diagnostics: Dict[str, Any] = {}

        ctx.transition(PipelineState.CITING)
        try:
            parsed = parse(answer_text, context_items, snippet_length=self.config.snippet_length)
            answer, citations = parsed.text, parsed.citations
        except Exception as e:
            logger.warning(f"[{ctx.trace_id}] Citation parsing failed, returning uncited answer: {e}")
            answer, citations = answer_text, []

        score = self.scorer.overall(citations, candidates)

        if features.verification_enabled:
            ctx.transition(PipelineState.VERIFYING)
            try:
                with ctx.timer.stage("verification_ms"):
                    verdict = await self.verifier.verify(answer, context_items, ctx.usage)
                diagnostics["verification"] = verdict.model_dump()
                if not verdict.supported:
                    value = min(score.value, verdict.confidence)
                    score = ConfidenceScore(value=value, label=self.scorer.label(value))
            except Exception as e:
                logger.warning(f"[{ctx.trace_id}] Answer verification skipped: {e}")
                diagnostics["verification"] = {"error": getattr(e, "code", type(e).__name__)}

        if features.debug_enabled:
            diagnostics["candidates"] = [c.to_dict() for c in candidates]
            diagnostics["context"] = [item.to_dict() for item in context_items]

        response = RAGResponse(
            answer=answer,
            citations=citations,
            confidence=score.value,
            confidence_label=score.label,
            retrieved_chunks=len(candidates),
            tokens_used=ctx.usage,
            timing=ctx.timer.to_dict(),
            trace_id=ctx.trace_id,
            diagnostics=diagnostics,
        )

        ctx.transition(PipelineState.CACHE_WRITE)
        await self.cache.set(ctx.query.tenant_id, ctx.question, response.to_dict(include_metadata=False))

        ctx.transition(PipelineState.DONE)
        logger.info(
            f"[{ctx.trace_id}] Answered with {len(citations)} citations, "
            f"confidence {response.confidence:.2f}, {response.tokens_used.total} tokens, "
            f"{response.timing['total_ms']}ms"
        )
        return response

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def query(self,
                    request: RAGQuery,
                    tenant_config: Optional[TenantRAGConfig] = None) -> RAGResponse:
        """
        Answer a question in one call.

        Raises:
            InputValidationError: empty, oversized or malformed question
            RAGPipelineError: a provider or store failure before an answer existed
        """
        ctx = self._start(request, tenant_config)

        reply = conversational_reply(ctx.question)
        if reply is not None:
            return self._conversational_response(ctx, reply)

        cached = await self._check_cache(ctx)
        if cached is not None:
            return cached

        try:
            candidates, context_items = await self._prepare_context(ctx)
            if not context_items:
                return self._fallback_response(ctx)

            ctx.transition(PipelineState.GENERATING)
            with ctx.timer.stage("generation_ms"):
                result = await self.generator.generate(ctx.question, context_items, ctx.usage)
        except Exception as e:
            raise self._fail(ctx, e) from e

        return await self._finish(ctx, result.text, candidates, context_items)

    async def query_stream(self,
                           request: RAGQuery,
                           tenant_config: Optional[TenantRAGConfig] = None) -> AsyncIterator[StreamEvent]:
        """
        Answer a question as a stream of events.

        Yields start, then chunk events as text arrives, then citations and
        complete. A failure yields a single terminal error event. Closing the
        iterator early closes the provider stream.
        """
        ctx = self._start(request, tenant_config)
        yield StreamEvent("start", {"status": "processing", "trace_id": ctx.trace_id})

        reply = conversational_reply(ctx.question)
        response = None
        if reply is not None:
            response = self._conversational_response(ctx, reply)
        else:
            response = await self._check_cache(ctx)

        if response is not None:
            yield StreamEvent("chunk", {"content": response.answer})
            yield StreamEvent("citations", {"citations": [c.to_dict() for c in response.citations]})
            yield StreamEvent("complete", response.to_dict())
            return

        parts: List[str] = []
        try:
            candidates, context_items = await self._prepare_context(ctx)
            if not context_items:
                response = self._fallback_response(ctx)
                yield StreamEvent("chunk", {"content": response.answer})
                yield StreamEvent("citations", {"citations": []})
                yield StreamEvent("complete", response.to_dict())
                return

            ctx.transition(PipelineState.GENERATING)
            stream = self.generator.stream(ctx.question, context_items)
            try:
                with ctx.timer.stage("generation_ms"):
                    async for piece in stream:
                        if piece.usage is not None:
                            ctx.usage.add_completion(piece.usage)
                        if piece.text:
                            parts.append(piece.text)
                            yield StreamEvent("chunk", {"content": piece.text})
            finally:
                await stream.aclose()
        except Exception as e:
            error = self._fail(ctx, e)
            yield StreamEvent("error", error.to_dict())
            return

        response = await self._finish(ctx, "".join(parts), candidates, context_items)
        yield StreamEvent("citations", {"citations": [c.to_dict() for c in response.citations]})
        yield StreamEvent("complete", response.to_dict())

    async def close(self) -> None:
        """Release provider clients."""
        await self.embedding_provider.close()
        await self.completion_provider.close()
        if self.expansion_provider is not self.completion_provider:
            await self.expansion_provider.close()


async def _call(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def run_with_callbacks(orchestrator: RAGOrchestrator,
                             request: RAGQuery,
                             callbacks: StreamCallbacks,
                             tenant_config: Optional[TenantRAGConfig] = None) -> Optional[RAGResponse]:
    """Drive query_stream and dispatch its events to callbacks. Returns the final response, if any."""
    response = None
    try:
        async for event in orchestrator.query_stream(request, tenant_config):
            if event.type == "chunk":
                await _call(callbacks.on_chunk, event.data["content"])
            elif event.type == "citations":
                await _call(callbacks.on_citations, [Citation.from_dict(c) for c in event.data["citations"]])
            elif event.type == "complete":
                response = RAGResponse.from_dict(event.data)
                await _call(callbacks.on_complete, response)
            elif event.type == "error":
                error = RAGPipelineError(
                    event.data["error"], trace_id=event.data.get("trace_id", ""), code=event.data.get("code")
                )
                await _call(callbacks.on_error, error)
    except RAGError as e:
        await _call(callbacks.on_error, e)
    return response
