"""
Voice error taxonomy.

Every failure the assistant can surface has a stable kind, a stable code and
a default user-facing message. Collaborator adapters and the orchestrator
raise the typed ``VoiceError`` subclasses below; anything else is mapped onto
a kind by ``assistant.recovery.ErrorClassifier``.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    """Stable error kinds."""
    STT_FAILED = "stt_failed"
    AUDIO_INVALID = "audio_invalid"
    AUDIO_TOO_SHORT = "audio_too_short"
    TTS_FAILED = "tts_failed"
    SPEAKER_ID_FAILED = "speaker_id_failed"
    TURN_NOT_ALLOWED = "turn_not_allowed"
    COMMAND_NOT_RECOGNIZED = "command_not_recognized"
    RAG_SEARCH_FAILED = "rag_search_failed"
    RAG_NO_RESULTS = "rag_no_results"
    SESSION_EXPIRED = "session_expired"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_ENDED = "session_ended"
    SESSION_PAUSED = "session_paused"
    SESSION_ALREADY_EXISTS = "session_already_exists"
    API_RATE_LIMITED = "api_rate_limited"
    API_QUOTA_EXCEEDED = "api_quota_exceeded"
    EMBEDDING_UNAVAILABLE = "embedding_unavailable"
    COMPLETION_UNAVAILABLE = "completion_unavailable"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class ErrorSpec:
    """Static properties of one error kind."""
    code: str
    description: str
    user_message: str
    recoverable: bool


ERROR_SPECS: Dict[ErrorKind, ErrorSpec] = {
    ErrorKind.SESSION_NOT_FOUND: ErrorSpec(
        "VOICE_001", "Session not found",
        "I can't find your voice session. Please start a new session.", False),
    ErrorKind.SESSION_EXPIRED: ErrorSpec(
        "VOICE_002", "Session expired",
        "Your voice session has expired. Please start a new session.", False),
    ErrorKind.SESSION_ALREADY_EXISTS: ErrorSpec(
        "VOICE_004", "Session already exists",
        "A voice session with this id is already running.", True),
    ErrorKind.SESSION_PAUSED: ErrorSpec(
        "VOICE_005", "Session paused",
        "The voice assistant is paused.", True),
    ErrorKind.AUDIO_INVALID: ErrorSpec(
        "VOICE_101", "Invalid audio data",
        "I couldn't process that audio. Please try speaking again.", True),
    ErrorKind.AUDIO_TOO_SHORT: ErrorSpec(
        "VOICE_102", "Audio too short",
        "I didn't catch that. Could you speak a bit longer?", True),
    ErrorKind.STT_FAILED: ErrorSpec(
        "VOICE_201", "Speech recognition failed",
        "I couldn't understand what you said. Please try again.", True),
    ErrorKind.TTS_FAILED: ErrorSpec(
        "VOICE_301", "Text-to-speech failed",
        "I can't speak right now, but I can still help you.", True),
    ErrorKind.SPEAKER_ID_FAILED: ErrorSpec(
        "VOICE_401", "Speaker identification failed",
        "I'm having trouble identifying who's speaking. Please continue anyway.", True),
    ErrorKind.TURN_NOT_ALLOWED: ErrorSpec(
        "VOICE_501", "Turn not allowed",
        "Please wait your turn to speak.", True),
    ErrorKind.SESSION_ENDED: ErrorSpec(
        "VOICE_503", "Conversation ended",
        "This conversation has ended. Please start a new session.", False),
    ErrorKind.COMMAND_NOT_RECOGNIZED: ErrorSpec(
        "VOICE_601", "Command not recognized",
        "I didn't understand that command. Could you try rephrasing?", True),
    ErrorKind.RAG_SEARCH_FAILED: ErrorSpec(
        "VOICE_701", "Knowledge search failed",
        "I couldn't search the knowledge base right now. Let me try to help anyway.", True),
    ErrorKind.RAG_NO_RESULTS: ErrorSpec(
        "VOICE_702", "No relevant information found",
        "I couldn't find specific information about that. Could you be more specific?", True),
    ErrorKind.EMBEDDING_UNAVAILABLE: ErrorSpec(
        "VOICE_703", "Embedding service unavailable",
        "The knowledge system is having issues. I'll try to help with what I know.", True),
    ErrorKind.COMPLETION_UNAVAILABLE: ErrorSpec(
        "VOICE_801", "Completion service unavailable",
        "I'm having trouble connecting to my AI services. Please try again.", True),
    ErrorKind.API_RATE_LIMITED: ErrorSpec(
        "VOICE_803", "API rate limited",
        "I'm being asked to do too much right now. Please wait a moment and try again.", True),
    ErrorKind.API_QUOTA_EXCEEDED: ErrorSpec(
        "VOICE_804", "API quota exceeded",
        "I've reached my usage limit. Please try again later.", False),
    ErrorKind.INTERNAL_ERROR: ErrorSpec(
        "VOICE_999", "Internal system error",
        "Something went wrong on my end. Please try again.", False),
}


class VoiceError(Exception):
    """Base class for typed assistant errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        kind: Optional[ErrorKind] = None,
        user_message: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        if kind is not None:
            self.kind = kind
        spec = ERROR_SPECS[self.kind]
        super().__init__(message or spec.description)
        self.message = message or spec.description
        self.user_message = user_message or spec.user_message
        self.retry_after = retry_after

    @property
    def code(self) -> str:
        return ERROR_SPECS[self.kind].code

    @property
    def recoverable(self) -> bool:
        return ERROR_SPECS[self.kind].recoverable


class SttFailedError(VoiceError):
    kind = ErrorKind.STT_FAILED


class AudioInvalidError(VoiceError):
    kind = ErrorKind.AUDIO_INVALID


class AudioTooShortError(VoiceError):
    kind = ErrorKind.AUDIO_TOO_SHORT


class TtsFailedError(VoiceError):
    kind = ErrorKind.TTS_FAILED


class SpeakerIdFailedError(VoiceError):
    kind = ErrorKind.SPEAKER_ID_FAILED


class TurnNotAllowedError(VoiceError):
    """Raised when a speaker other than the turn holder speaks."""
    kind = ErrorKind.TURN_NOT_ALLOWED

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        current_speaker: Optional[str] = None,
        queue_position: Optional[int] = None,
    ):
        super().__init__(message)
        self.current_speaker = current_speaker
        self.queue_position = queue_position


class CommandNotRecognizedError(VoiceError):
    kind = ErrorKind.COMMAND_NOT_RECOGNIZED


class RagSearchFailedError(VoiceError):
    kind = ErrorKind.RAG_SEARCH_FAILED


class RagNoResultsError(VoiceError):
    kind = ErrorKind.RAG_NO_RESULTS


class SessionExpiredError(VoiceError):
    kind = ErrorKind.SESSION_EXPIRED


class SessionNotFoundError(VoiceError):
    kind = ErrorKind.SESSION_NOT_FOUND


class SessionEndedError(VoiceError):
    kind = ErrorKind.SESSION_ENDED


class SessionPausedError(VoiceError):
    kind = ErrorKind.SESSION_PAUSED


class SessionAlreadyExistsError(VoiceError):
    kind = ErrorKind.SESSION_ALREADY_EXISTS


class ApiRateLimitedError(VoiceError):
    kind = ErrorKind.API_RATE_LIMITED


class ApiQuotaExceededError(VoiceError):
    kind = ErrorKind.API_QUOTA_EXCEEDED


class EmbeddingUnavailableError(VoiceError):
    kind = ErrorKind.EMBEDDING_UNAVAILABLE


class CompletionUnavailableError(VoiceError):
    kind = ErrorKind.COMPLETION_UNAVAILABLE


class InternalError(VoiceError):
    kind = ErrorKind.INTERNAL_ERROR


_ERROR_CLASSES = {
    cls.kind: cls
    for cls in (
        SttFailedError, AudioInvalidError, AudioTooShortError, TtsFailedError,
        SpeakerIdFailedError, TurnNotAllowedError, CommandNotRecognizedError,
        RagSearchFailedError, RagNoResultsError, SessionExpiredError,
        SessionNotFoundError, SessionEndedError, SessionPausedError,
        SessionAlreadyExistsError, ApiRateLimitedError, ApiQuotaExceededError,
        EmbeddingUnavailableError, CompletionUnavailableError, InternalError,
    )
}


def error_for_kind(kind: ErrorKind, message: Optional[str] = None) -> VoiceError:
    """Build the typed error for a kind (used for externally reported failures)."""
    return _ERROR_CLASSES[kind](message)


@dataclass
class ErrorContext:
    """What the assistant was doing when an error happened."""
    operation: Optional[str] = None
    user_input: Optional[str] = None
    current_page: Optional[str] = None
    speaker_id: Optional[str] = None
    user_initiated: bool = True
    critical_operation: bool = False
