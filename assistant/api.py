"""
HTTP API.

This module exposes:
- Session API: start, process input, pause/resume/end, turn release,
  error reporting, stats, and the session's structured events
- Knowledge API: initialize, add/delete documents, delete client, stats, query

Typed ``VoiceError``s raised by the orchestrator are mapped to HTTP status
codes by the exception handler installed in ``assistant.server``.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from knowledge.engine import RetrievalEngine
from knowledge.models import Document, DocumentSource
from logging_setup import get_logger, Component
from observability.event_store import event_store

from .errors import ErrorContext, ErrorKind
from .orchestrator import SessionOrchestrator
from .session import Session, SessionConfig, SessionState


logger = get_logger(Component.API)

sessions_router = APIRouter(prefix="/sessions", tags=["sessions"])
knowledge_router = APIRouter(prefix="/knowledge", tags=["knowledge"])


def get_orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def get_engine(request: Request) -> RetrievalEngine:
    return request.app.state.orchestrator.engine


# --- Session API ---


class StartSessionRequest(BaseModel):
    session_id: Optional[str] = Field(None, min_length=1, description="Opaque session id; generated when omitted")
    client_id: str = Field(..., min_length=1)
    config: SessionConfig = Field(default_factory=SessionConfig)


class SessionSummary(BaseModel):
    session_id: str
    client_id: str
    state: str
    started_at: float
    last_activity: float
    interaction_count: int
    current_speaker: Optional[str] = None


class StartSessionResponse(BaseModel):
    session_id: str
    client_id: str
    state: str
    welcome_message: str
    config: SessionConfig


class ProcessInputRequest(BaseModel):
    transcript: str = ""
    current_context: Optional[Any] = None
    speaker_id: Optional[str] = None


class ProcessInputResponse(BaseModel):
    success: bool
    session_id: str
    response_text: str
    response_type: str
    ui_commands: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    recovered_errors: List[Dict[str, Any]] = Field(default_factory=list)
    turn_info: Optional[Dict[str, Any]] = None
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    audio_base64: Optional[str] = None
    speaker_id: Optional[str] = None
    session_state: Optional[str] = None


class EndSessionRequest(BaseModel):
    reason: str = "user_requested"


class ReleaseTurnRequest(BaseModel):
    speaker_id: str = Field(..., min_length=1)


class ReportErrorRequest(BaseModel):
    kind: ErrorKind
    message: Optional[str] = None
    operation: Optional[str] = None


def _summary(session: Session) -> SessionSummary:
    return SessionSummary(
        session_id=session.session_id,
        client_id=session.client_id,
        state=session.state.value,
        started_at=session.started_at,
        last_activity=session.last_activity,
        interaction_count=len(session.history),
        current_speaker=session.current_speaker_id,
    )


@sessions_router.post("", response_model=StartSessionResponse, status_code=201)
async def start_session(
    req: StartSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> StartSessionResponse:
    started = await orchestrator.start(req.session_id, req.client_id, req.config)
    return StartSessionResponse(
        session_id=started.session.session_id,
        client_id=started.session.client_id,
        state=started.session.state.value,
        welcome_message=started.welcome_message,
        config=started.session.config,
    )


@sessions_router.get("", response_model=List[SessionSummary])
async def list_sessions(
    state: Optional[str] = Query(None, description="Filter by state (active, paused)"),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> List[SessionSummary]:
    state_filter: Optional[SessionState] = None
    if state:
        try:
            state_filter = SessionState(state.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid state: {state}")
    return [_summary(s) for s in orchestrator.list_sessions(state_filter)]


@sessions_router.post("/{session_id}/input", response_model=ProcessInputResponse)
async def process_input(
    session_id: str,
    req: ProcessInputRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ProcessInputResponse:
    """
    Process one transcribed utterance.

    Always 200: failures are reported in the ``error`` field with the
    recovery decision, so the client can render the user message.
    """
    result = await orchestrator.process_input(
        session_id, req.transcript, req.current_context, req.speaker_id
    )
    return ProcessInputResponse(**result.to_dict())


@sessions_router.post("/{session_id}/pause", response_model=SessionSummary)
async def pause_session(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> SessionSummary:
    return _summary(await orchestrator.pause(session_id))


@sessions_router.post("/{session_id}/resume", response_model=SessionSummary)
async def resume_session(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> SessionSummary:
    return _summary(await orchestrator.resume(session_id))


@sessions_router.post("/{session_id}/end")
async def end_session(
    session_id: str,
    req: Optional[EndSessionRequest] = None,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    stats = await orchestrator.end(session_id, reason=req.reason if req else "user_requested")
    return stats.to_dict()


@sessions_router.post("/{session_id}/turn/release")
async def release_turn(
    session_id: str,
    req: ReleaseTurnRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    released = await orchestrator.release_turn(session_id, req.speaker_id)
    return {"session_id": session_id, "speaker_id": req.speaker_id, "released": released}


@sessions_router.post("/{session_id}/errors")
async def report_error(
    session_id: str,
    req: ReportErrorRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Report a speech-to-text / audio / speaker-id failure and get the recovery decision."""
    decision = orchestrator.report_error(
        session_id, req.kind, req.message, ErrorContext(operation=req.operation or req.kind.value)
    )
    return decision.to_dict()


@sessions_router.get("/{session_id}/stats")
async def session_stats(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    return orchestrator.stats(session_id).to_dict()


def _parse_ts(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        # "+" in a query string may arrive as a space
        clean = value.replace(" ", "+").replace("Z", "+00:00")
        if "+" not in clean and "-" not in clean[-6:]:
            clean += "+00:00"
        return datetime.fromisoformat(clean)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


@sessions_router.get("/{session_id}/events")
async def get_session_events(
    session_id: str,
    event_type: Optional[str] = Query(None, description="Filter by event_type; \"session.*\" selects a family"),
    component: Optional[str] = Query(None, description="Filter by component"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
    latest: bool = Query(False, description="With limit, return the newest events"),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Structured events of a live or ended session."""
    orchestrator.stats(session_id)

    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        since=_parse_ts(since, "since"),
        until=_parse_ts(until, "until"),
        limit=limit,
        latest=latest,
    )
    return {
        "session_id": session_id,
        "events": events,
        "count": len(events),
        "counts_by_type": event_store.counts_by_type(session_id),
    }


# --- Knowledge API ---


class DocumentIn(BaseModel):
    id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    source: DocumentSource = DocumentSource.API
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> Document:
        try:
            return Document(id=self.id, content=self.content, source=self.source, metadata=self.metadata)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))


class InitializeRequest(BaseModel):
    documents: List[DocumentIn] = Field(default_factory=list)


class QueryRequest(BaseModel):
    text: str
    top_k: Optional[int] = Field(None, ge=1, le=50)
    min_similarity: Optional[float] = Field(None, ge=-1.0, le=1.0)


@knowledge_router.post("/clients/{client_id}")
async def initialize_knowledge_base(
    client_id: str,
    req: InitializeRequest,
    engine: RetrievalEngine = Depends(get_engine),
) -> dict:
    """Replace the client's whole knowledge base."""
    start_ts = time.time()
    documents = [d.to_document() for d in req.documents]
    chunk_count = await engine.initialize_knowledge_base(client_id, documents)
    logger.info(
        "Knowledge base initialized via API",
        client_id=client_id,
        document_count=len(documents),
        latency_ms=int((time.time() - start_ts) * 1000),
    )
    return {"client_id": client_id, "document_count": len(documents), "chunk_count": chunk_count}


@knowledge_router.post("/clients/{client_id}/documents", status_code=201)
async def add_document(
    client_id: str,
    req: DocumentIn,
    engine: RetrievalEngine = Depends(get_engine),
) -> dict:
    chunk_count = await engine.ingest(client_id, req.to_document())
    return {"client_id": client_id, "document_id": req.id, "chunk_count": chunk_count}


@knowledge_router.delete("/clients/{client_id}/documents/{document_id}")
async def delete_document(
    client_id: str,
    document_id: str,
    engine: RetrievalEngine = Depends(get_engine),
) -> dict:
    removed = await engine.delete_document(client_id, document_id)
    return {"client_id": client_id, "document_id": document_id, "deleted": removed}


@knowledge_router.delete("/clients/{client_id}")
async def delete_client(
    client_id: str,
    engine: RetrievalEngine = Depends(get_engine),
) -> dict:
    removed = await engine.delete_client(client_id)
    return {"client_id": client_id, "deleted": removed}


@knowledge_router.get("/clients/{client_id}/stats")
async def client_stats(
    client_id: str,
    engine: RetrievalEngine = Depends(get_engine),
) -> dict:
    return (await engine.stats(client_id)).to_dict()


@knowledge_router.get("/stats")
async def all_stats(engine: RetrievalEngine = Depends(get_engine)) -> dict:
    return await engine.stats_all()


@knowledge_router.post("/clients/{client_id}/query")
async def query_knowledge_base(
    client_id: str,
    req: QueryRequest,
    request: Request,
) -> dict:
    orchestrator: SessionOrchestrator = request.app.state.orchestrator
    hits = await orchestrator.engine.query(
        client_id,
        req.text,
        top_k=req.top_k or orchestrator.top_k,
        min_similarity=req.min_similarity if req.min_similarity is not None else orchestrator.min_similarity,
    )
    return {
        "client_id": client_id,
        "results": [
            {
                "document_id": hit.chunk.source_document_id,
                "sequence_index": hit.chunk.sequence_index,
                "content": hit.chunk.content,
                "score": hit.score,
                "metadata": hit.chunk.metadata,
            }
            for hit in hits
        ],
        "count": len(hits),
    }
