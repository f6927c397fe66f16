"""
Error classification and recovery policy.

ErrorClassifier maps arbitrary exceptions onto the error taxonomy and keeps
per-session error history. RecoveryPolicy turns a classified error plus that
history into a user-facing decision. ErrorHandler ties both together and
never raises.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter

from .errors import (
    ERROR_SPECS,
    ApiQuotaExceededError,
    ApiRateLimitedError,
    ErrorContext,
    ErrorKind,
    InternalError,
    VoiceError,
    error_for_kind,
)


logger = get_logger(Component.ERROR_HANDLER)
emitter = EventEmitter(ObsComponent.ERROR_HANDLER)

ESCALATION_THRESHOLD = 3

FALLBACK_USER_MESSAGE = "I'm experiencing technical difficulties. Please try again."


class RecoveryStrategy(str, Enum):
    ENCOURAGE_RETRY = "encourage_retry"
    EXPLAIN_AND_SUGGEST = "explain_and_suggest"
    EXPLAIN_AND_GUIDE = "explain_and_guide"
    FALLBACK_TO_TEXT = "fallback_to_text"
    FALLBACK_TO_GENERAL = "fallback_to_general"
    CONTINUE_GRACEFULLY = "continue_gracefully"
    RETRY_WITH_FALLBACK = "retry_with_fallback"
    BACK_OFF = "back_off"
    ESCALATE = "escalate"
    TERMINATE = "terminate"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    RETRY_AUDIO = "retry_audio"
    RESTART_SESSION = "restart_session"
    USE_TEXT_MODE = "use_text_mode"
    CONTINUE_WITHOUT_SPEAKER_ID = "continue_without_speaker_id"
    SHOW_HELP = "show_help"
    WAIT_AND_RETRY = "wait_and_retry"


DEFAULT_STRATEGIES: Dict[ErrorKind, RecoveryStrategy] = {
    ErrorKind.STT_FAILED: RecoveryStrategy.ENCOURAGE_RETRY,
    ErrorKind.AUDIO_INVALID: RecoveryStrategy.ENCOURAGE_RETRY,
    ErrorKind.AUDIO_TOO_SHORT: RecoveryStrategy.EXPLAIN_AND_GUIDE,
    ErrorKind.TTS_FAILED: RecoveryStrategy.FALLBACK_TO_TEXT,
    ErrorKind.SPEAKER_ID_FAILED: RecoveryStrategy.CONTINUE_GRACEFULLY,
    ErrorKind.TURN_NOT_ALLOWED: RecoveryStrategy.EXPLAIN_AND_GUIDE,
    ErrorKind.COMMAND_NOT_RECOGNIZED: RecoveryStrategy.EXPLAIN_AND_GUIDE,
    ErrorKind.RAG_SEARCH_FAILED: RecoveryStrategy.FALLBACK_TO_GENERAL,
    ErrorKind.RAG_NO_RESULTS: RecoveryStrategy.FALLBACK_TO_GENERAL,
    ErrorKind.EMBEDDING_UNAVAILABLE: RecoveryStrategy.FALLBACK_TO_GENERAL,
    ErrorKind.COMPLETION_UNAVAILABLE: RecoveryStrategy.EXPLAIN_AND_SUGGEST,
    ErrorKind.API_RATE_LIMITED: RecoveryStrategy.BACK_OFF,
    ErrorKind.SESSION_PAUSED: RecoveryStrategy.EXPLAIN_AND_GUIDE,
    ErrorKind.SESSION_ALREADY_EXISTS: RecoveryStrategy.EXPLAIN_AND_GUIDE,
    # Non-recoverable kinds resolve to TERMINATE before the table is consulted.
    ErrorKind.SESSION_EXPIRED: RecoveryStrategy.TERMINATE,
    ErrorKind.SESSION_NOT_FOUND: RecoveryStrategy.TERMINATE,
    ErrorKind.SESSION_ENDED: RecoveryStrategy.TERMINATE,
    ErrorKind.API_QUOTA_EXCEEDED: RecoveryStrategy.TERMINATE,
    ErrorKind.INTERNAL_ERROR: RecoveryStrategy.TERMINATE,
}

STRATEGY_ACTIONS: Dict[RecoveryStrategy, RecoveryAction] = {
    RecoveryStrategy.ENCOURAGE_RETRY: RecoveryAction.RETRY_AUDIO,
    RecoveryStrategy.EXPLAIN_AND_SUGGEST: RecoveryAction.RETRY,
    RecoveryStrategy.EXPLAIN_AND_GUIDE: RecoveryAction.SHOW_HELP,
    RecoveryStrategy.FALLBACK_TO_TEXT: RecoveryAction.USE_TEXT_MODE,
    RecoveryStrategy.FALLBACK_TO_GENERAL: RecoveryAction.RETRY,
    RecoveryStrategy.CONTINUE_GRACEFULLY: RecoveryAction.CONTINUE_WITHOUT_SPEAKER_ID,
    RecoveryStrategy.RETRY_WITH_FALLBACK: RecoveryAction.RETRY,
    RecoveryStrategy.BACK_OFF: RecoveryAction.WAIT_AND_RETRY,
    RecoveryStrategy.ESCALATE: RecoveryAction.USE_TEXT_MODE,
    RecoveryStrategy.TERMINATE: RecoveryAction.RESTART_SESSION,
}

GUIDANCE: Dict[ErrorKind, str] = {
    ErrorKind.TURN_NOT_ALLOWED: "Please wait for the current speaker to finish before speaking.",
    ErrorKind.COMMAND_NOT_RECOGNIZED: "Try using simpler commands like 'go to dashboard' or 'click save'.",
    ErrorKind.RAG_NO_RESULTS: "Try asking about a different topic or being more specific.",
    ErrorKind.AUDIO_TOO_SHORT: "Please speak for at least a few seconds so I can understand you better.",
    ErrorKind.SESSION_PAUSED: "Say 'resume' to continue.",
    ErrorKind.SESSION_ALREADY_EXISTS: "Use the existing session or end it first.",
}

_missing = set(ErrorKind) - set(DEFAULT_STRATEGIES)
if _missing:
    raise RuntimeError(f"no default recovery strategy for {sorted(k.value for k in _missing)}")
_missing = set(ErrorKind) - set(ERROR_SPECS)
if _missing:
    raise RuntimeError(f"no error spec for {sorted(k.value for k in _missing)}")
_missing = set(RecoveryStrategy) - set(STRATEGY_ACTIONS)
if _missing:
    raise RuntimeError(f"no recovery action for {sorted(s.value for s in _missing)}")
del _missing


@dataclass
class SessionErrorState:
    """Error history of one session."""

    consecutive: Dict[ErrorKind, int] = field(default_factory=dict)
    totals: Dict[ErrorKind, int] = field(default_factory=dict)
    last_seen: Dict[ErrorKind, float] = field(default_factory=dict)

    def record(self, kind: ErrorKind, now: float) -> int:
        """Count one occurrence; returns the new consecutive count."""
        self.consecutive[kind] = self.consecutive.get(kind, 0) + 1
        self.totals[kind] = self.totals.get(kind, 0) + 1
        self.last_seen[kind] = now
        return self.consecutive[kind]

    def reset(self, kind: ErrorKind) -> None:
        self.consecutive[kind] = 0

    def consecutive_count(self, kind: ErrorKind) -> int:
        return self.consecutive.get(kind, 0)

    @property
    def total_errors(self) -> int:
        return sum(self.totals.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutive": {k.value: v for k, v in self.consecutive.items() if v},
            "totals": {k.value: v for k, v in self.totals.items()},
            "total_errors": self.total_errors,
        }


_OPERATION_KINDS: Dict[str, ErrorKind] = {
    "embedding": ErrorKind.EMBEDDING_UNAVAILABLE,
    "completion": ErrorKind.COMPLETION_UNAVAILABLE,
    "retrieval": ErrorKind.RAG_SEARCH_FAILED,
    "tts": ErrorKind.TTS_FAILED,
    "stt": ErrorKind.STT_FAILED,
    "speaker_id": ErrorKind.SPEAKER_ID_FAILED,
    "ui_command": ErrorKind.COMMAND_NOT_RECOGNIZED,
}


class ErrorClassifier:
    """Maps exceptions onto error kinds and tracks per-session history."""

    def __init__(self, now: Callable[[], float] = time.time):
        self._now = now
        self._states: Dict[str, SessionErrorState] = {}

    @staticmethod
    def classify(error: BaseException, operation: Optional[str] = None) -> VoiceError:
        """
        Classify an exception into a typed ``VoiceError``.

        Typed errors keep their kind. Otherwise rate limit and quota patterns
        in the message win, then the operation hint, then ``internal_error``.
        """
        if isinstance(error, VoiceError):
            return error

        error_str = str(error).lower()

        if "rate limit" in error_str or "429" in error_str or "too many requests" in error_str:
            classified: VoiceError = ApiRateLimitedError(str(error))
        elif "quota" in error_str or "402" in error_str:
            classified = ApiQuotaExceededError(str(error))
        elif operation in _OPERATION_KINDS:
            classified = error_for_kind(_OPERATION_KINDS[operation], str(error) or None)
        else:
            classified = InternalError(f"{type(error).__name__}: {error}")

        classified.__cause__ = error
        return classified

    def error_state(self, session_id: str) -> SessionErrorState:
        state = self._states.get(session_id)
        if state is None:
            state = self._states[session_id] = SessionErrorState()
        return state

    def peek(self, session_id: str) -> Optional[SessionErrorState]:
        """Error state of a session without creating one."""
        return self._states.get(session_id)

    def track_error(self, session_id: str, kind: ErrorKind) -> int:
        """Record an error; returns the consecutive count for its kind."""
        return self.error_state(session_id).record(kind, self._now())

    def record_success(self, session_id: str, *kinds: ErrorKind) -> None:
        """Reset the consecutive counters of ``kinds`` for a session."""
        state = self._states.get(session_id)
        if state is None:
            return
        for kind in kinds:
            state.reset(kind)

    def clear(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    def statistics(self) -> Dict[str, Any]:
        """Error totals across all tracked sessions."""
        totals: Dict[str, int] = {}
        for state in self._states.values():
            for kind, count in state.totals.items():
                totals[kind.value] = totals.get(kind.value, 0) + count
        return {
            "tracked_sessions": len(self._states),
            "total_errors": sum(totals.values()),
            "errors_by_kind": totals,
        }


@dataclass(frozen=True)
class RecoveryDecision:
    """What the assistant does about one error."""

    kind: ErrorKind
    code: str
    message: str
    user_message: str
    recoverable: bool
    strategy: RecoveryStrategy
    action: RecoveryAction
    should_retry: bool
    consecutive_count: int
    backoff_seconds: Optional[float] = None

    @property
    def terminates_session(self) -> bool:
        return self.strategy is RecoveryStrategy.TERMINATE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error_code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "strategy": self.strategy.value,
            "suggested_action": self.action.value,
            "retry_recommended": self.should_retry,
            "backoff_seconds": self.backoff_seconds,
            "consecutive_count": self.consecutive_count,
        }


class RecoveryPolicy:
    """Chooses the recovery strategy, message and action for an error."""

    def __init__(self, rate_limit_backoff_seconds: float = 5.0, quota_backoff_seconds: float = 60.0):
        self.rate_limit_backoff_seconds = rate_limit_backoff_seconds
        self.quota_backoff_seconds = quota_backoff_seconds

    def decide_strategy(
        self,
        kind: ErrorKind,
        consecutive: int,
        context: Optional[ErrorContext] = None,
    ) -> RecoveryStrategy:
        if consecutive >= ESCALATION_THRESHOLD:
            return RecoveryStrategy.ESCALATE
        if not ERROR_SPECS[kind].recoverable:
            return RecoveryStrategy.TERMINATE
        if context is not None and context.critical_operation:
            return RecoveryStrategy.RETRY_WITH_FALLBACK
        return DEFAULT_STRATEGIES[kind]

    def should_retry(self, kind: ErrorKind, consecutive: int) -> bool:
        if not ERROR_SPECS[kind].recoverable:
            return False
        if consecutive >= ESCALATION_THRESHOLD:
            return False
        return kind not in (ErrorKind.API_RATE_LIMITED, ErrorKind.API_QUOTA_EXCEEDED)

    def backoff_for(self, error: VoiceError) -> Optional[float]:
        if error.kind is ErrorKind.API_RATE_LIMITED:
            return error.retry_after if error.retry_after is not None else self.rate_limit_backoff_seconds
        if error.kind is ErrorKind.API_QUOTA_EXCEEDED:
            return error.retry_after if error.retry_after is not None else self.quota_backoff_seconds
        return None

    def user_message(self, error: VoiceError, strategy: RecoveryStrategy, consecutive: int) -> str:
        base = error.user_message
        if strategy is RecoveryStrategy.ENCOURAGE_RETRY:
            if consecutive > 1:
                return f"{base} Take your time and try speaking clearly."
            return base
        if strategy is RecoveryStrategy.EXPLAIN_AND_GUIDE:
            guidance = GUIDANCE.get(error.kind, "Please try again in a moment.")
            return f"{base} {guidance}"
        if strategy is RecoveryStrategy.FALLBACK_TO_TEXT:
            return "I can't speak right now, but I can still help you through text responses."
        if strategy is RecoveryStrategy.CONTINUE_GRACEFULLY:
            return f"{base} I'll continue helping you anyway."
        if strategy is RecoveryStrategy.ESCALATE:
            return "I'm having persistent issues. Let me try a different approach."
        if strategy is RecoveryStrategy.TERMINATE:
            if base.endswith("Please start a new session."):
                return base
            return f"{base} Please start a new session."
        return base

    def decide(
        self,
        error: VoiceError,
        consecutive: int,
        context: Optional[ErrorContext] = None,
    ) -> RecoveryDecision:
        strategy = self.decide_strategy(error.kind, consecutive, context)
        return RecoveryDecision(
            kind=error.kind,
            code=error.code,
            message=error.message,
            user_message=self.user_message(error, strategy, consecutive),
            recoverable=error.recoverable,
            strategy=strategy,
            action=STRATEGY_ACTIONS[strategy],
            should_retry=self.should_retry(error.kind, consecutive),
            consecutive_count=consecutive,
            backoff_seconds=self.backoff_for(error),
        )


class ErrorHandler:
    """Classify, track and decide. Never raises."""

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        policy: Optional[RecoveryPolicy] = None,
    ):
        self.classifier = classifier or ErrorClassifier()
        self.policy = policy or RecoveryPolicy()

    def handle(
        self,
        session_id: Optional[str],
        error: BaseException,
        context: Optional[ErrorContext] = None,
        track: bool = True,
    ) -> RecoveryDecision:
        """
        Handle an error for a session.

        ``track=False`` decides without touching the session's error history;
        used for ids that do not belong to a live session.
        """
        try:
            operation = context.operation if context else None
            classified = self.classifier.classify(error, operation)
            if track and session_id:
                consecutive = self.classifier.track_error(session_id, classified.kind)
            else:
                consecutive = 1
            decision = self.policy.decide(classified, consecutive, context)

            log = logger.with_session(session_id) if session_id else logger
            log_method = log.warning if decision.recoverable else log.error
            log_method(
                "Voice error handled",
                error_code=decision.code,
                kind=decision.kind.value,
                strategy=decision.strategy.value,
                consecutive=consecutive,
                operation=operation,
                error=classified.message,
            )
            if session_id:
                emitter.error_classified(
                    session_id,
                    kind=decision.kind.value,
                    strategy=decision.strategy.value,
                    consecutive=consecutive,
                    recoverable=decision.recoverable,
                    operation=operation,
                )
            return decision
        except Exception as handling_error:
            logger.critical(
                "Error handler failed",
                error=str(handling_error),
                error_type=type(handling_error).__name__,
                original_error=str(error),
            )
            return fallback_decision()


def fallback_decision() -> RecoveryDecision:
    """Generic decision used when error handling itself fails."""
    spec = ERROR_SPECS[ErrorKind.INTERNAL_ERROR]
    return RecoveryDecision(
        kind=ErrorKind.INTERNAL_ERROR,
        code=spec.code,
        message="error handling failed",
        user_message=FALLBACK_USER_MESSAGE,
        recoverable=True,
        strategy=RecoveryStrategy.ENCOURAGE_RETRY,
        action=RecoveryAction.RETRY,
        should_retry=True,
        consecutive_count=0,
    )
