"""
FastAPI interface for the question answering service.
Exposes POST /api/qa (JSON or Server-Sent Events) and GET /health.
"""

import inspect
import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field

from rag_tenant_qa import __version__
from rag_tenant_qa.config import SystemConfig, TenantRAGConfig, load_config
from rag_tenant_qa.errors import InputValidationError, RAGPipelineError
from rag_tenant_qa.pipeline import RAGOrchestrator, RAGQuery
from rag_tenant_qa.sanitize import MAX_QUESTION_LENGTH, check_input
from rag_tenant_qa.store import InMemoryChunkStore

logger = logging.getLogger(__name__)

TenantConfigLoader = Callable[[str], Any]


class QARequest(BaseModel):
    """Body of POST /api/qa."""
    question: str = Field(..., min_length=1, max_length=MAX_QUESTION_LENGTH, description="User question")
    tenant_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("tenant_id", "tenantSlug", "tenantId"),
        description="Tenant whose documents are searched",
    )
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    stream: bool = Field(default=True, description="Respond with Server-Sent Events")


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def error_response(status_code: int, message: str, code: str, trace_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": code, "trace_id": trace_id},
        headers={"X-Trace-Id": trace_id},
    )


def load_tenant_configs(path: Union[str, Path]) -> Dict[str, TenantRAGConfig]:
    """Read {"tenant_id": {...tenant config...}} from a JSON file."""
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    return {tenant_id: TenantRAGConfig.from_dict(values or {}) for tenant_id, values in data.items()}


def default_tenant_loader(store: InMemoryChunkStore,
                          configs: Optional[Dict[str, TenantRAGConfig]] = None) -> TenantConfigLoader:
    """Tenants are the explicitly configured ones plus any tenant present in the store."""
    configs = configs or {}

    def load(tenant_id: str) -> Optional[TenantRAGConfig]:
        if tenant_id in configs:
            return configs[tenant_id]
        if store.has_tenant(tenant_id):
            return TenantRAGConfig()
        return None

    return load


async def _resolve_tenant(loader: TenantConfigLoader, tenant_id: str) -> Optional[TenantRAGConfig]:
    result = loader(tenant_id)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _sse_events(orchestrator: RAGOrchestrator, query: RAGQuery, tenant_config: TenantRAGConfig):
    try:
        async for event in orchestrator.query_stream(query, tenant_config):
            yield format_sse(event.type, event.data)
    except Exception as e:
        logger.error(f"[{query.trace_id}] Stream failed: {e!r}")
        yield format_sse(
            "error",
            {"error": "Stream processing failed", "code": "STREAM_ERROR", "trace_id": query.trace_id},
        )


def create_app(orchestrator: RAGOrchestrator,
               tenant_loader: TenantConfigLoader,
               close_on_shutdown: bool = False) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        orchestrator: Pipeline used for every request
        tenant_loader: Maps a tenant id to its TenantRAGConfig, or None when unknown.
            May be sync or async.
        close_on_shutdown: Close provider clients when the app shuts down
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if close_on_shutdown:
            await orchestrator.close()

    app = FastAPI(
        title="RAG Tenant QA",
        description="Cited question answering over tenant document corpora",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.tenant_loader = tenant_loader

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        request.state.trace_id = trace_id
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        trace_id = getattr(request.state, "trace_id", uuid.uuid4().hex)
        logger.warning(f"[{trace_id}] Invalid request body: {len(exc.errors())} error(s)")
        return error_response(400, "Invalid request body", "INVALID_REQUEST", trace_id)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": __version__}

    @app.post("/api/qa")
    async def answer_question(body: QARequest, request: Request):
        trace_id = request.state.trace_id

        reason = check_input(body.question, orchestrator.config.max_question_length)
        if reason is not None:
            logger.warning(f"[{trace_id}] Blocked question: {reason}")
            return error_response(400, "Invalid question format", "INVALID_INPUT", trace_id)

        tenant_config = await _resolve_tenant(app.state.tenant_loader, body.tenant_id)
        if tenant_config is None:
            logger.warning(f"[{trace_id}] Tenant not found: {body.tenant_id}")
            return error_response(404, "Tenant not found", "TENANT_NOT_FOUND", trace_id)

        query = RAGQuery(
            question=body.question,
            tenant_id=body.tenant_id,
            session_id=body.session_id,
            trace_id=trace_id,
        )

        if body.stream:
            return StreamingResponse(
                _sse_events(orchestrator, query, tenant_config),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Trace-Id": trace_id},
            )

        try:
            response = await orchestrator.query(query, tenant_config)
        except InputValidationError as e:
            return error_response(400, e.message, e.code, trace_id)
        except RAGPipelineError as e:
            return error_response(500, e.message, e.code, trace_id)

        payload = response.to_dict()
        payload["sources"] = response.sources_section()
        return JSONResponse(content=payload, headers={"X-Trace-Id": trace_id})

    return app


def build_app(config: Optional[SystemConfig] = None) -> FastAPI:
    """Application wired from environment configuration."""
    config = config or load_config()

    if config.corpus_path:
        store = InMemoryChunkStore.load_json(config.corpus_path)
    else:
        logger.warning("CORPUS_PATH not set; starting with an empty corpus")
        store = InMemoryChunkStore()

    configs = load_tenant_configs(config.tenant_config_path) if config.tenant_config_path else {}
    orchestrator = RAGOrchestrator.from_config(store, config)
    return create_app(orchestrator, default_tenant_loader(store, configs), close_on_shutdown=True)


def main():
    """Main entry point for the application."""
    config = load_config()
    app = build_app(config)
    logger.info(f"Configuration: {json.dumps(config.to_dict())}")
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level="info")


if __name__ == "__main__":
    main()
