"""
FastAPI application: session and knowledge APIs, UI WebSocket and health.

Run with ``python -m assistant``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from knowledge.blob_store import FileBlobStore, InMemoryBlobStore
from knowledge.embedding_cache import EmbeddingCache
from knowledge.engine import RetrievalEngine
from knowledge.providers import OpenAICompletionProvider, OpenAIEmbedder, OpenAITextToSpeech
from knowledge.store import DocumentConflictError, EmbeddingDimensionError, RetrievalStore
from logging_setup import get_logger, Component

from .api import knowledge_router, sessions_router
from .config import AssistantConfig, get_config
from .errors import ErrorKind, VoiceError
from .instructions import get_texts
from .orchestrator import SessionOrchestrator
from .recovery import ErrorClassifier, ErrorHandler, RecoveryPolicy


logger = get_logger(Component.API)

_STATUS_BY_KIND = {
    ErrorKind.SESSION_NOT_FOUND: 404,
    ErrorKind.SESSION_EXPIRED: 410,
    ErrorKind.SESSION_ENDED: 410,
    ErrorKind.SESSION_PAUSED: 409,
    ErrorKind.SESSION_ALREADY_EXISTS: 409,
    ErrorKind.API_RATE_LIMITED: 429,
    ErrorKind.API_QUOTA_EXCEEDED: 503,
    ErrorKind.EMBEDDING_UNAVAILABLE: 503,
    ErrorKind.COMPLETION_UNAVAILABLE: 503,
    ErrorKind.RAG_SEARCH_FAILED: 503,
}


def status_for_error(error: VoiceError) -> int:
    return _STATUS_BY_KIND.get(error.kind, 500 if not error.recoverable else 400)


def build_orchestrator(config: AssistantConfig) -> SessionOrchestrator:
    """Wire the knowledge engine, providers and recovery policy from config."""
    blob_store = FileBlobStore(config.knowledge_dir) if config.knowledge_dir else InMemoryBlobStore()
    embedder = OpenAIEmbedder(
        config.openai_base_url, config.openai_api_key, config.embedding_model, config.http_timeout_seconds
    )
    cache = EmbeddingCache(embedder, max_entries=config.embedding_cache_size)
    store = RetrievalStore(blob_store, cache, dimension=config.embedding_dimension)
    engine = RetrievalEngine(store, cache, chunk_size=config.chunk_size, chunk_overlap=config.chunk_overlap)

    completion = None
    tts = None
    if config.openai_api_key:
        completion = OpenAICompletionProvider(
            config.openai_base_url, config.openai_api_key, config.completion_model, config.http_timeout_seconds
        )
        tts = OpenAITextToSpeech(
            config.openai_base_url, config.openai_api_key, config.tts_model, config.http_timeout_seconds
        )
    else:
        logger.warning("OPENAI_API_KEY not set; answers are extractive and speech synthesis is off")

    error_handler = ErrorHandler(
        ErrorClassifier(),
        RecoveryPolicy(
            rate_limit_backoff_seconds=config.rate_limit_backoff_seconds,
            quota_backoff_seconds=config.quota_backoff_seconds,
        ),
    )
    return SessionOrchestrator(
        engine,
        completion,
        tts,
        error_handler=error_handler,
        texts=get_texts(config.scenario),
        top_k=config.top_k,
        min_similarity=config.min_similarity,
        idle_timeout_seconds=config.session_idle_timeout_seconds,
        sweep_interval_seconds=config.idle_sweep_interval_seconds,
        turn_hold_seconds=config.turn_hold_seconds,
    )


def _closeables(orchestrator: SessionOrchestrator) -> List[object]:
    providers = (orchestrator.engine.embedding_cache.embedder, orchestrator.completion, orchestrator.tts)
    return [p for p in providers if hasattr(p, "aclose")]


def create_app(
    orchestrator: Optional[SessionOrchestrator] = None,
    *,
    start_sweeper: bool = True,
    load_knowledge: bool = True,
) -> FastAPI:
    """Build the app. Without an orchestrator one is wired from the environment."""
    if orchestrator is None:
        orchestrator = build_orchestrator(get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if load_knowledge:
            try:
                loaded = await orchestrator.engine.load_all()
                logger.info("Knowledge bases loaded", client_count=loaded)
            except Exception as e:
                logger.error("Failed to load knowledge bases", error=str(e), error_type=type(e).__name__)
        if start_sweeper:
            orchestrator.start_idle_sweeper()
        try:
            yield
        finally:
            await orchestrator.stop_idle_sweeper()
            for provider in _closeables(orchestrator):
                await provider.aclose()

    app = FastAPI(title="Voice Assistant", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.include_router(sessions_router)
    app.include_router(knowledge_router)

    @app.exception_handler(VoiceError)
    async def voice_error_handler(request: Request, exc: VoiceError):
        status_code = status_for_error(exc)
        logger.warning(
            "Request failed",
            path=request.url.path,
            error_code=exc.code,
            kind=exc.kind.value,
            status_code=status_code,
        )
        content = {
            "error_code": exc.code,
            "kind": exc.kind.value,
            "message": str(exc),
            "user_message": exc.user_message,
            "recoverable": exc.recoverable,
        }
        if exc.retry_after is not None:
            content["retry_after"] = exc.retry_after
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(DocumentConflictError)
    async def conflict_handler(request: Request, exc: DocumentConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(EmbeddingDimensionError)
    async def dimension_handler(request: Request, exc: EmbeddingDimensionError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.websocket("/ws/ui/{session_id}")
    async def ui_websocket(websocket: WebSocket, session_id: str):
        """UI clients receive ui_command / voice_feedback and send state updates."""
        channel = orchestrator.ui_channel
        await websocket.accept()
        channel.connect(session_id, websocket)
        try:
            while True:
                message = await websocket.receive_json()
                if isinstance(message, dict):
                    channel.handle_message(session_id, message)
                else:
                    logger.warning("Ignoring non-object UI message", session_id=session_id)
        except WebSocketDisconnect:
            pass
        finally:
            channel.disconnect(session_id, websocket)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "component": "assistant",
            "active_sessions": len(orchestrator.registry),
            "completion_enabled": orchestrator.completion is not None,
            "tts_enabled": orchestrator.tts is not None,
        }

    return app
