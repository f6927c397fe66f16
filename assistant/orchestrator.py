"""
SessionOrchestrator: one voice input in, one structured response out.

Flow of ``process_input``:
    session lookup -> control phrases -> paused check -> speaker / turn check
    -> client-scoped retrieval -> knowledge-grounded or general response
    -> UI actions -> optional TTS -> history + activity update

Inputs of one session are serialized by the session lock; different sessions
run concurrently. ``end`` never waits for that lock: work in flight re-checks
the session state after every external call and discards its result once the
session has ended.
"""
from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from knowledge.engine import DEFAULT_MIN_SIMILARITY, DEFAULT_TOP_K, RetrievalEngine
from knowledge.models import ScoredChunk
from knowledge.providers import CompletionProvider, TextToSpeech, encode_audio
from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter

from .errors import (
    AudioTooShortError,
    ErrorContext,
    ErrorKind,
    SessionEndedError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionPausedError,
    SpeakerIdFailedError,
    TurnNotAllowedError,
    VoiceError,
    error_for_kind,
)
from .instructions import (
    AssistantTexts,
    build_general_context,
    build_rag_context,
    extractive_answer,
)
from .recovery import ErrorClassifier, ErrorHandler, RecoveryDecision, RecoveryPolicy
from .session import (
    ConversationTurn,
    Session,
    SessionConfig,
    SessionRegistry,
    SessionState,
    SessionStats,
)
from .turns import ConversationMode, TurnDecision, TurnManager
from .ui_actions import UICommand, extract_ui_commands
from .ui_channel import UIChannel


logger = get_logger(Component.ORCHESTRATOR)
emitter = EventEmitter(ObsComponent.ORCHESTRATOR)

IDLE_TIMEOUT_REASON = "idle_timeout"


class ResponseType(str, Enum):
    RAG_RESPONSE = "rag_response"
    GENERAL_RESPONSE = "general_response"
    CONTROL = "control"
    HELP = "help"
    REPEAT = "repeat"
    TURN_MANAGEMENT = "turn_management"
    ERROR = "error"


class ControlCommand(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    END = "end"
    HELP = "help"
    REPEAT = "repeat"


# Single words only match the whole utterance; phrases also match as a prefix.
_CONTROL_PHRASES = [
    (ControlCommand.PAUSE, ("pause", "stop listening", "pause listening", "pause session")),
    (ControlCommand.RESUME, ("resume", "continue", "continue listening", "start listening", "resume session")),
    (ControlCommand.END, ("goodbye", "end session", "stop session", "end the session")),
    (ControlCommand.HELP, ("help", "what can you do")),
    (ControlCommand.REPEAT, ("repeat", "repeat that", "say that again")),
]

# Allowed while the session is paused.
_PAUSED_COMMANDS = (ControlCommand.PAUSE, ControlCommand.RESUME, ControlCommand.END, ControlCommand.HELP)

# Only the speaker holding the turn may stop the conversation.
_TURN_CHECKED_COMMANDS = (ControlCommand.PAUSE, ControlCommand.END)


def _manages_turns(config: SessionConfig) -> bool:
    return config.enable_speaker_identification and config.enable_turn_management


def _normalize_utterance(text: str) -> str:
    text = re.sub(r"[^\w\s']", " ", text.lower())
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"^(?:please|hey assistant|assistant) ", "", text)
    return re.sub(r" please$", "", text)


def match_control_phrase(text: str) -> Optional[ControlCommand]:
    """The session-control command spoken in ``text``, if any."""
    normalized = _normalize_utterance(text)
    for command, phrases in _CONTROL_PHRASES:
        for phrase in phrases:
            if normalized == phrase:
                return command
            if " " in phrase and normalized.startswith(phrase + " "):
                return command
    return None


@dataclass
class ProcessResult:
    """Structured outcome of one voice input."""

    success: bool
    session_id: str
    response_text: str
    response_type: ResponseType
    ui_commands: List[UICommand] = field(default_factory=list)
    error: Optional[RecoveryDecision] = None
    recovered_errors: List[RecoveryDecision] = field(default_factory=list)
    turn_info: Optional[TurnDecision] = None
    sources: List[Dict[str, Any]] = field(default_factory=list)
    audio: Optional[bytes] = None
    speaker_id: Optional[str] = None
    session_state: Optional[SessionState] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "response_text": self.response_text,
            "response_type": self.response_type.value,
            "ui_commands": [c.to_dict() for c in self.ui_commands],
            "error": self.error.to_dict() if self.error else None,
            "recovered_errors": [d.to_dict() for d in self.recovered_errors],
            "turn_info": self.turn_info.to_dict() if self.turn_info else None,
            "sources": self.sources,
            "audio_base64": encode_audio(self.audio) if self.audio else None,
            "speaker_id": self.speaker_id,
            "session_state": self.session_state.value if self.session_state else None,
        }


@dataclass(frozen=True)
class SessionStarted:
    session: Session
    welcome_message: str


def _sources(hits: List[ScoredChunk]) -> List[Dict[str, Any]]:
    return [
        {
            "document_id": hit.chunk.source_document_id,
            "sequence_index": hit.chunk.sequence_index,
            "source": hit.source,
            "score": round(hit.score, 4),
        }
        for hit in hits
    ]


def _current_page(current_context: Any) -> Optional[str]:
    if isinstance(current_context, dict):
        page = current_context.get("page") or current_context.get("current_page")
        return str(page) if page else None
    if isinstance(current_context, str):
        return current_context or None
    return None


class SessionOrchestrator:
    """Owns live sessions and turns transcripts into responses."""

    def __init__(
        self,
        engine: RetrievalEngine,
        completion: Optional[CompletionProvider] = None,
        tts: Optional[TextToSpeech] = None,
        *,
        error_handler: Optional[ErrorHandler] = None,
        ui_channel: Optional[UIChannel] = None,
        texts: Optional[AssistantTexts] = None,
        top_k: int = DEFAULT_TOP_K,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        idle_timeout_seconds: float = 1800.0,
        sweep_interval_seconds: float = 60.0,
        turn_hold_seconds: float = 2.0,
        now: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.completion = completion
        self.tts = tts
        self._now = now
        self.error_handler = error_handler or ErrorHandler(ErrorClassifier(now=now), RecoveryPolicy())
        self.ui_channel = ui_channel or UIChannel()
        if self.ui_channel.is_known_session is None:
            self.ui_channel.is_known_session = lambda sid: self.registry.get(sid) is not None
        self.texts = texts or AssistantTexts()
        self.top_k = top_k
        self.min_similarity = min_similarity
        self.idle_timeout_seconds = idle_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.turns = TurnManager(hold_seconds=turn_hold_seconds, now=now)
        self.registry = SessionRegistry()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def classifier(self) -> ErrorClassifier:
        return self.error_handler.classifier

    # --- lifecycle ---

    async def start(
        self,
        session_id: Optional[str],
        client_id: str,
        config: Optional[SessionConfig] = None,
    ) -> SessionStarted:
        """
        Start a session.

        Raises:
            SessionAlreadyExistsError: a live session already uses ``session_id``
        """
        config = config or SessionConfig()
        now = self._now()
        session = Session(
            session_id=session_id or str(uuid.uuid4()),
            client_id=client_id,
            config=config,
            started_at=now,
            last_activity=now,
        )
        self.registry.add(session)
        self.classifier.clear(session.session_id)

        if config.welcome_message:
            welcome = config.welcome_message
        elif config.conversation_mode is ConversationMode.MULTI_SPEAKER:
            welcome = self.texts.multi_speaker_welcome_text
        else:
            welcome = self.texts.welcome_text

        logger.with_session(session.session_id, client_id=client_id).info(
            "Session started",
            conversation_mode=config.conversation_mode.value,
            speaker_identification=config.enable_speaker_identification,
            turn_management=config.enable_turn_management,
        )
        emitter.session_started(session.session_id, client_id, config.conversation_mode.value)
        return SessionStarted(session=session, welcome_message=welcome)

    def _live_session(self, session_id: str) -> Session:
        session = self.registry.get(session_id)
        if session is not None:
            return session
        archived = self.registry.archived(session_id)
        if archived is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        if archived.end_reason == IDLE_TIMEOUT_REASON:
            raise SessionExpiredError(f"session {session_id} expired")
        raise SessionEndedError(f"session {session_id} has ended")

    def _set_state(self, session: Session, new_state: SessionState) -> None:
        old_state = session.transition_to(new_state)
        if old_state is not new_state:
            emitter.session_state_changed(session.session_id, old_state.value, new_state.value)
            logger.with_session(session.session_id).info(
                "Session state changed", from_state=old_state.value, to_state=new_state.value
            )

    async def pause(self, session_id: str) -> Session:
        session = self._live_session(session_id)
        async with session.lock:
            if session.is_terminal():
                raise SessionEndedError(f"session {session_id} has ended")
            self._set_state(session, SessionState.PAUSED)
            session.last_activity = self._now()
        return session

    async def resume(self, session_id: str) -> Session:
        session = self._live_session(session_id)
        async with session.lock:
            if session.is_terminal():
                raise SessionEndedError(f"session {session_id} has ended")
            self._set_state(session, SessionState.ACTIVE)
            session.last_activity = self._now()
        return session

    async def end(self, session_id: str, reason: str = "user_requested") -> SessionStats:
        """End a session immediately. Ending an already ended session returns its final stats."""
        session = self.registry.get(session_id)
        if session is None:
            archived = self.registry.archived(session_id)
            if archived is not None:
                return archived
            raise SessionNotFoundError(f"session {session_id} not found")
        return self._end(session, reason)

    def _end(self, session: Session, reason: str) -> SessionStats:
        # No awaits: takes effect before any in-flight input resumes.
        if session.is_terminal():
            archived = self.registry.archived(session.session_id)
            if archived is not None:
                return archived
        old_state = session.state
        now = self._now()
        session.end(reason, now)
        stats = session.stats(now, self._error_summary(session.session_id))
        self.classifier.clear(session.session_id)
        self.registry.archive(session, stats)
        self.ui_channel.forget(session.session_id)

        emitter.session_state_changed(session.session_id, old_state.value, SessionState.ENDED.value)
        emitter.session_ended(session.session_id, reason=reason, interaction_count=stats.interaction_count)
        logger.with_session(session.session_id).info(
            "Session ended",
            reason=reason,
            interaction_count=stats.interaction_count,
            duration_seconds=round(stats.duration_seconds, 3),
        )
        return stats

    async def release_turn(self, session_id: str, speaker_id: str) -> bool:
        session = self._live_session(session_id)
        async with session.lock:
            released = self.turns.release(session.turn_state, speaker_id)
            if released and session.current_speaker_id == speaker_id:
                session.current_speaker_id = None
        return released

    def _error_summary(self, session_id: str) -> Dict[str, Any]:
        state = self.classifier.peek(session_id)
        return state.to_dict() if state else {"consecutive": {}, "totals": {}, "total_errors": 0}

    def stats(self, session_id: str) -> SessionStats:
        session = self.registry.get(session_id)
        if session is not None:
            return session.stats(self._now(), self._error_summary(session_id))
        archived = self.registry.archived(session_id)
        if archived is not None:
            return archived
        raise SessionNotFoundError(f"session {session_id} not found")

    def list_sessions(self, state: Optional[SessionState] = None) -> List[Session]:
        return self.registry.list_sessions(state)

    # --- errors reported by the transport layer ---

    def report_error(
        self,
        session_id: str,
        kind: ErrorKind,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
    ) -> RecoveryDecision:
        """
        Record a failure of a collaborator the core does not call itself
        (speech-to-text, audio validation, speaker identification).

        Raises:
            SessionNotFoundError / SessionEndedError / SessionExpiredError
        """
        session = self._live_session(session_id)
        context = context or ErrorContext(operation=kind.value)
        decision = self.error_handler.handle(session_id, error_for_kind(kind, message), context)
        if decision.terminates_session:
            self._end(session, reason=f"error:{decision.kind.value}")
        return decision

    def report_success(self, session_id: str, kind: ErrorKind) -> None:
        self._live_session(session_id)
        self.classifier.record_success(session_id, kind)

    # --- idle expiry ---

    def sweep_idle_sessions(self) -> List[str]:
        """End sessions idle longer than the timeout. Busy sessions are skipped."""
        now = self._now()
        expired = []
        for session in self.registry.list_sessions():
            if session.lock.locked():
                continue
            if now - session.last_activity >= self.idle_timeout_seconds:
                self._end(session, IDLE_TIMEOUT_REASON)
                expired.append(session.session_id)
        return expired

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                expired = self.sweep_idle_sessions()
            except Exception as e:
                logger.error("Idle sweep failed", error=str(e), error_type=type(e).__name__)
                continue
            if expired:
                logger.info("Idle sessions expired", count=len(expired))

    def start_idle_sweeper(self) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())
        return self._sweeper

    async def stop_idle_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    # --- input processing ---

    def _result_for_error(
        self,
        session_id: str,
        session: Optional[Session],
        error: BaseException,
        context: ErrorContext,
        response_type: ResponseType = ResponseType.ERROR,
        turn_info: Optional[TurnDecision] = None,
        track: bool = True,
    ) -> ProcessResult:
        decision = self.error_handler.handle(session_id, error, context, track=track)
        if session is not None and decision.terminates_session and not session.is_terminal():
            self._end(session, reason=f"error:{decision.kind.value}")
        return ProcessResult(
            success=False,
            session_id=session_id,
            response_text=decision.user_message,
            response_type=response_type,
            error=decision,
            turn_info=turn_info,
            speaker_id=context.speaker_id,
            session_state=session.state if session is not None else None,
        )

    def _ended_result(self, session: Session, context: ErrorContext) -> ProcessResult:
        return self._result_for_error(
            session.session_id, session,
            SessionEndedError(f"session {session.session_id} ended during processing"),
            context, track=False,
        )

    def _recover(self, session: Session, error: BaseException, context: ErrorContext, operation: str) -> RecoveryDecision:
        decision = self.error_handler.handle(
            session.session_id, error, replace(context, operation=operation), track=not session.is_terminal()
        )
        if decision.terminates_session and not session.is_terminal():
            self._end(session, reason=f"error:{decision.kind.value}")
        return decision

    def _record_success(self, session: Session, *kinds: ErrorKind) -> None:
        # results arriving after end() must not touch a reused session id
        if not session.is_terminal():
            self.classifier.record_success(session.session_id, *kinds)

    async def process_input(
        self,
        session_id: str,
        transcript: Optional[str],
        current_context: Any = None,
        speaker_id: Optional[str] = None,
    ) -> ProcessResult:
        """Process one transcribed utterance. Never raises."""
        context = ErrorContext(
            operation="process_input",
            user_input=transcript,
            current_page=_current_page(current_context),
            speaker_id=speaker_id,
        )
        try:
            session = self._live_session(session_id)
        except VoiceError as e:
            return self._result_for_error(session_id, None, e, context, track=False)

        async with session.lock:
            if session.is_terminal():
                return self._ended_result(session, context)
            try:
                return await self._process_locked(session, transcript or "", current_context, speaker_id, context)
            except Exception as e:
                logger.with_session(session_id).exception("Unexpected error while processing input")
                return self._result_for_error(session_id, session, e, context, track=not session.is_terminal())

    async def _process_locked(
        self,
        session: Session,
        transcript: str,
        current_context: Any,
        speaker_id: Optional[str],
        context: ErrorContext,
    ) -> ProcessResult:
        started = time.time()
        session_id = session.session_id
        text = transcript.strip()
        logger.with_session(session_id, client_id=session.client_id).debug_pii(
            "Transcript received", transcript=text, speaker_id=speaker_id
        )
        if not text:
            return self._result_for_error(
                session_id, session, AudioTooShortError("empty transcript"), context
            )
        self._record_success(
            session, ErrorKind.STT_FAILED, ErrorKind.AUDIO_INVALID, ErrorKind.AUDIO_TOO_SHORT
        )

        command = match_control_phrase(text)
        if command is not None and (session.state is SessionState.ACTIVE or command in _PAUSED_COMMANDS):
            if command in _TURN_CHECKED_COMMANDS and speaker_id and _manages_turns(session.config):
                turn_info = self.turns.check(session.turn_state, session.config.conversation_mode, speaker_id)
                if not turn_info.allowed:
                    return self._turn_rejected(session, speaker_id, turn_info, context)
            return self._handle_control(session, command, text, speaker_id)
        if session.state is SessionState.PAUSED:
            return self._result_for_error(
                session_id, session, SessionPausedError("input while paused"), context
            )

        if current_context is None:
            current_context = self.ui_channel.current_context(session_id)
            context.current_page = _current_page(current_context)

        recovered: List[RecoveryDecision] = []
        turn_info: Optional[TurnDecision] = None
        config = session.config

        if config.enable_speaker_identification:
            if not speaker_id:
                recovered.append(self._recover(
                    session, SpeakerIdFailedError("no speaker claimed"), context, "speaker_id"
                ))
            else:
                self._record_success(session, ErrorKind.SPEAKER_ID_FAILED)
                if config.enable_turn_management:
                    turn_info = self.turns.check(session.turn_state, config.conversation_mode, speaker_id)
                    if not turn_info.allowed:
                        return self._turn_rejected(session, speaker_id, turn_info, context)
                    self._record_success(session, ErrorKind.TURN_NOT_ALLOWED)
                session.current_speaker_id = speaker_id

        hits: List[ScoredChunk] = []
        try:
            hits = await self.engine.query(session.client_id, text, self.top_k, self.min_similarity)
            self._record_success(
                session, ErrorKind.RAG_SEARCH_FAILED, ErrorKind.EMBEDDING_UNAVAILABLE,
                ErrorKind.API_RATE_LIMITED,
            )
        except Exception as e:
            if session.is_terminal():
                return self._ended_result(session, context)
            decision = self._recover(session, e, context, "retrieval")
            if session.is_terminal():
                return self._terminated_result(session, decision, context)
            recovered.append(decision)
        if session.is_terminal():
            return self._ended_result(session, context)

        if hits:
            response_type = ResponseType.RAG_RESPONSE
            fallback = extractive_answer(hits)
            prompt = self.texts.rag_prompt
            user_context = build_rag_context(session.client_id, current_context, hits, text)
        else:
            response_type = ResponseType.GENERAL_RESPONSE
            fallback = self.texts.fallback_text
            prompt = self.texts.general_prompt
            user_context = build_general_context(current_context, text)

        response_text = fallback
        if self.completion is not None:
            try:
                response_text = await self.completion.complete(prompt, user_context)
                self._record_success(session, ErrorKind.COMPLETION_UNAVAILABLE)
            except Exception as e:
                if session.is_terminal():
                    return self._ended_result(session, context)
                decision = self._recover(session, e, context, "completion")
                if session.is_terminal():
                    return self._terminated_result(session, decision, context)
                recovered.append(decision)
                if not hits:
                    response_text = decision.user_message
            if session.is_terminal():
                return self._ended_result(session, context)

        commands = extract_ui_commands(response_text) or extract_ui_commands(text)

        audio: Optional[bytes] = None
        if config.tts_enabled and self.tts is not None:
            try:
                audio = await self.tts.synthesize(response_text, config.voice_model)
                self._record_success(session, ErrorKind.TTS_FAILED)
            except Exception as e:
                if session.is_terminal():
                    return self._ended_result(session, context)
                decision = self._recover(session, e, context, "tts")
                if session.is_terminal():
                    return self._terminated_result(session, decision, context)
                recovered.append(decision)
            if session.is_terminal():
                return self._ended_result(session, context)

        now = self._now()
        session.append_turn(ConversationTurn(
            speaker_id=speaker_id,
            transcript=text,
            response_text=response_text,
            response_type=response_type.value,
            timestamp=now,
        ))

        emitter.turn_processed(
            session_id,
            turn_id=f"{session_id}:{len(session.history)}",
            response_type=response_type.value,
            speaker_id=speaker_id,
            chunk_count=len(hits),
            latency_ms=int((time.time() - started) * 1000),
        )
        await self.ui_channel.publish(session_id, commands, response_text)

        return ProcessResult(
            success=True,
            session_id=session_id,
            response_text=response_text,
            response_type=response_type,
            ui_commands=commands,
            recovered_errors=recovered,
            turn_info=turn_info,
            sources=_sources(hits),
            audio=audio,
            speaker_id=speaker_id,
            session_state=session.state,
        )

    def _turn_rejected(
        self, session: Session, speaker_id: str, turn_info: TurnDecision, context: ErrorContext
    ) -> ProcessResult:
        emitter.turn_rejected(
            session.session_id, speaker_id, turn_info.current_speaker, turn_info.queue_position
        )
        error = TurnNotAllowedError(
            turn_info.message,
            current_speaker=turn_info.current_speaker,
            queue_position=turn_info.queue_position,
        )
        return self._result_for_error(
            session.session_id, session, error, context,
            response_type=ResponseType.TURN_MANAGEMENT, turn_info=turn_info,
        )

    def _terminated_result(self, session: Session, decision: RecoveryDecision, context: ErrorContext) -> ProcessResult:
        return ProcessResult(
            success=False,
            session_id=session.session_id,
            response_text=decision.user_message,
            response_type=ResponseType.ERROR,
            error=decision,
            speaker_id=context.speaker_id,
            session_state=session.state,
        )

    def _handle_control(
        self,
        session: Session,
        command: ControlCommand,
        text: str,
        speaker_id: Optional[str],
    ) -> ProcessResult:
        response_type = ResponseType.CONTROL
        repeatable = False
        if command is ControlCommand.PAUSE:
            self._set_state(session, SessionState.PAUSED)
            response_text = self.texts.paused_text
        elif command is ControlCommand.RESUME:
            self._set_state(session, SessionState.ACTIVE)
            response_text = self.texts.resumed_text
        elif command is ControlCommand.HELP:
            response_type = ResponseType.HELP
            response_text = self.texts.help_text
            repeatable = True
        elif command is ControlCommand.REPEAT:
            response_type = ResponseType.REPEAT
            response_text = session.last_response or self.texts.nothing_to_repeat_text
        else:
            response_text = self.texts.goodbye_text

        session.append_turn(
            ConversationTurn(
                speaker_id=speaker_id,
                transcript=text,
                response_text=response_text,
                response_type=response_type.value,
                timestamp=self._now(),
            ),
            repeatable=repeatable,
        )
        if command is ControlCommand.END:
            self._end(session, reason="user_requested")

        logger.with_session(session.session_id).info("Session control command", command=command.value)
        return ProcessResult(
            success=True,
            session_id=session.session_id,
            response_text=response_text,
            response_type=response_type,
            speaker_id=speaker_id,
            session_state=session.state,
        )
