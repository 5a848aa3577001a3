"""
FastAPI Application
Search, orchestrated chat and ingestion over the retrieval core.
"""
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ragcore.config import get_settings
from ragcore.container import Services, build_services
from ragcore.errors import (
    ConfigurationError,
    RateLimitExceededError,
    RetrievalError,
    UpstreamServiceError,
)
from ragcore.models.schemas import (
    ChatMessage,
    OrchestrationMetadata,
    OrchestrationResult,
    RAGContext,
    SearchFilters,
    SearchResult,
)
from ragcore.reasoning.prompt_guard import (
    QUERY_MAX_LENGTH,
    sanitize_for_prompt,
    sanitize_history,
    validate_message,
)
from ragcore.services.rate_limiter import rate_limits_from_settings


def configure_logging(level: str) -> None:
    """Configure logging for terminal readability."""
    logging.basicConfig(format="%(message)s", level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer()  # Human-readable format in terminal
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


configure_logging(get_settings().log_level)
logger = structlog.get_logger()


# ─────────────────────────────────────────────────────────────
# Request/Response Models
# ─────────────────────────────────────────────────────────────

class SearchRequest(BaseModel):
    user_id: str
    query: str = Field(min_length=1, max_length=QUERY_MAX_LENGTH)
    filters: Optional[SearchFilters] = None
    limit: int = Field(default=5, ge=1, le=20)


class SearchResponse(BaseModel):
    results: List[SearchResult]
    count: int


class ChatRequest(BaseModel):
    user_id: str
    message: str
    conversation_history: List[dict] = Field(default_factory=list)  # sanitized server-side
    filters: Optional[SearchFilters] = None
    session_id: Optional[str] = None


class ChatContextResponse(BaseModel):
    system_prompt: str
    contexts: List[RAGContext]
    metadata: OrchestrationMetadata


class IngestRequest(BaseModel):
    user_id: str
    document_id: str
    file_path: str       # Local path, already downloaded
    file_name: str
    file_type: Optional[str] = None


class IngestResponse(BaseModel):
    status: str          # "Done"
    document_id: str
    chunk_count: int
    message: str


# ─────────────────────────────────────────────────────────────
# App wiring
# ─────────────────────────────────────────────────────────────

def get_services(request: Request) -> Services:
    return request.app.state.services


async def enforce_rate_limit(services: Services, limit_name: str, user_id: str) -> None:
    config = rate_limits_from_settings(services.settings)[limit_name]
    result = await services.rate_limiter.check(
        f"{limit_name}:{user_id}", config.max_requests, config.window_ms
    )
    if not result.allowed:
        logger.warning("Rate limit exceeded", limit=limit_name, user_id=user_id)
        raise RateLimitExceededError(limit=result.limit, reset_timestamp=result.reset_timestamp)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the API. Pass ``services`` to skip building real clients."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            app.state.services = build_services(get_settings())
        yield
        await app.state.services.aclose()

    app = FastAPI(
        title="ragcore",
        description="Adaptive retrieval and reasoning over private documents",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RateLimitExceededError)
    async def rate_limited(request: Request, exc: RateLimitExceededError):
        retry_after = max(int((exc.reset_timestamp - time.time() * 1000) / 1000), 0)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many requests. Please try again later."},
            headers={
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(exc.reset_timestamp),
                "Retry-After": str(retry_after),
            },
        )

    @app.exception_handler(RetrievalError)
    async def retrieval_failed(request: Request, exc: RetrievalError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(UpstreamServiceError)
    async def upstream_failed(request: Request, exc: UpstreamServiceError):
        return JSONResponse(status_code=502, content={"detail": str(exc), "service": exc.service})

    @app.exception_handler(ConfigurationError)
    async def misconfigured(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    register_routes(app)
    return app


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check(services: Services = Depends(get_services)):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "cache": services.cache.name,
            "rate_limiter": services.rate_limiter.name,
        }

    @app.post("/search", response_model=SearchResponse)
    async def search(request: SearchRequest, services: Services = Depends(get_services)):
        """Retrieve reranked chunks for a query."""
        await enforce_rate_limit(services, "search", request.user_id)
        results = await services.retrieval.retrieve(
            sanitize_for_prompt(request.query, QUERY_MAX_LENGTH),
            request.user_id,
            request.filters,
            limit=request.limit,
        )
        return SearchResponse(results=results, count=len(results))

    @app.post("/chat/context", response_model=ChatContextResponse)
    async def chat_context(request: ChatRequest, services: Services = Depends(get_services)):
        """Run reasoning and retrieval, returning the prompt that generation would use."""
        await enforce_rate_limit(services, "chat", request.user_id)
        result = await _orchestrate(services, request)
        return ChatContextResponse(
            system_prompt=result.system_prompt,
            contexts=result.contexts,
            metadata=result.metadata,
        )

    @app.post("/chat")
    async def chat(request: ChatRequest, services: Services = Depends(get_services)):
        """Answer a message as a server-sent event stream."""
        await enforce_rate_limit(services, "chat", request.user_id)
        error = validate_message(request.message)
        if error:
            raise HTTPException(status_code=400, detail=error)
        return StreamingResponse(_answer_stream(services, request), media_type="text/event-stream")

    @app.post("/ingest", response_model=IngestResponse)
    async def ingest(request: IngestRequest, services: Services = Depends(get_services)):
        """Ingest a local file into the vector database."""
        await enforce_rate_limit(services, "process", request.user_id)
        logger.info("Stage: Starting ingestion", file_name=request.file_name, document_id=request.document_id)
        try:
            chunk_count = await services.ingestion.run(
                file_path=request.file_path,
                user_id=request.user_id,
                document_id=request.document_id,
                filename=request.file_name,
                file_type=request.file_type or "",
            )
        except Exception as e:
            logger.error("Stage: Ingestion failed", document_id=request.document_id, error=str(e))
            raise HTTPException(status_code=500, detail=f"Ingestion failed: {str(e)}")

        return IngestResponse(
            status="Done",
            document_id=request.document_id,
            chunk_count=chunk_count,
            message=f"Successfully ingested {chunk_count} chunks",
        )


async def _orchestrate(services: Services, request: ChatRequest) -> OrchestrationResult:
    error = validate_message(request.message)
    if error:
        raise HTTPException(status_code=400, detail=error)
    return await services.orchestrator.orchestrate(
        sanitize_for_prompt(request.message),
        request.user_id,
        sanitize_history(request.conversation_history),
        request.filters,
    )


async def _answer_stream(services: Services, request: ChatRequest):
    started = time.perf_counter()
    message = sanitize_for_prompt(request.message)
    history = sanitize_history(request.conversation_history)

    try:
        result = await services.orchestrator.orchestrate(message, request.user_id, history, request.filters)
    except Exception as e:
        logger.error("Orchestration failed", user_id=request.user_id, error=str(e))
        yield _sse("error", {"error": "Could not retrieve context for this question.", "detail": str(e)})
        return

    yield _sse("metadata", {
        "reasoning": result.metadata.model_dump(),
        "sources": [c.model_dump() for c in result.contexts],
    })

    answer = ""
    messages = history + [ChatMessage(role="user", content=message)]
    async for event in services.llm.stream(result.system_prompt, messages):
        if event.type == "token":
            yield _sse("token", {"content": event.content})
        elif event.type == "error":
            yield _sse("error", {"error": event.error})
            return
        else:
            answer = event.content

    yield _sse("done", {"content": answer})
    _schedule_followups(services, request, message, answer, result, started)


def _schedule_followups(
    services: Services,
    request: ChatRequest,
    message: str,
    answer: str,
    result: OrchestrationResult,
    started: float,
) -> None:
    settings = services.settings
    category = result.metadata.query_category

    services.background.fire_and_forget(
        services.analytics.track_query(
            user_id=request.user_id,
            query=message,
            model=settings.answer_model,
            embedding_provider=settings.embedding_provider,
            response_time_ms=int((time.perf_counter() - started) * 1000),
            sources=result.contexts,
            session_id=request.session_id,
        ),
        name="analytics",
    )

    async def evaluate_and_store():
        evaluation = await services.evaluator.evaluate(message, answer, result.contexts, category)
        await services.evaluation_store.save(
            user_id=request.user_id,
            query=message,
            category=category,
            model=settings.answer_model,
            result=evaluation,
            session_id=request.session_id,
        )

    if category != "conversational":
        services.background.fire_and_forget(evaluate_and_store(), name="evaluation")


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ragcore.main:app", host="0.0.0.0", port=8000, reload=True)
