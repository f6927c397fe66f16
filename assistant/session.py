"""
Voice session model and registry.

A session moves ACTIVE <-> PAUSED and ends in ENDED, which is terminal.
Ended sessions leave the registry immediately so their id can be reused;
their final stats are archived.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import SessionAlreadyExistsError
from .turns import ConversationMode, TurnState


class SessionState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class SessionConfig(BaseModel):
    """Per-session voice settings. Turn management implies speaker identification."""

    model_config = ConfigDict(frozen=True)

    tts_enabled: bool = True
    voice_model: str = "alloy"
    welcome_message: Optional[str] = None
    expected_speakers: int = Field(1, ge=1)
    conversation_mode: ConversationMode = ConversationMode.SINGLE_SPEAKER
    language: str = "en"
    enable_speaker_identification: bool = False
    enable_turn_management: bool = False

    @model_validator(mode="before")
    @classmethod
    def _turn_management_needs_speakers(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("enable_turn_management"):
            data = {**data, "enable_speaker_identification": True}
        return data


@dataclass(frozen=True)
class ConversationTurn:
    speaker_id: Optional[str]
    transcript: str
    response_text: str
    response_type: str
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speaker_id": self.speaker_id,
            "transcript": self.transcript,
            "response_text": self.response_text,
            "response_type": self.response_type,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SessionStats:
    session_id: str
    client_id: str
    state: SessionState
    started_at: float
    duration_seconds: float
    interaction_count: int
    speaker_counts: Dict[str, int]
    current_speaker: Optional[str]
    queued_speakers: List[str]
    errors: Dict[str, Any]
    end_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "client_id": self.client_id,
            "state": self.state.value,
            "started_at": self.started_at,
            "duration_seconds": self.duration_seconds,
            "interaction_count": self.interaction_count,
            "speaker_counts": dict(self.speaker_counts),
            "current_speaker": self.current_speaker,
            "queued_speakers": list(self.queued_speakers),
            "errors": self.errors,
            "end_reason": self.end_reason,
        }


@dataclass
class Session:
    """One live voice session."""

    session_id: str
    client_id: str
    config: SessionConfig
    started_at: float
    last_activity: float
    state: SessionState = SessionState.ACTIVE
    history: List[ConversationTurn] = field(default_factory=list)
    current_speaker_id: Optional[str] = None
    last_response: Optional[str] = None
    speaker_counts: Dict[str, int] = field(default_factory=dict)
    turn_state: TurnState = field(default_factory=TurnState)
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def __post_init__(self):
        if not self.session_id:
            raise ValueError("session_id is required")
        if not self.client_id:
            raise ValueError("client_id is required")

    def transition_to(self, new_state: SessionState) -> SessionState:
        """Move to ``new_state``; returns the previous state. ENDED is final."""
        if self.state is SessionState.ENDED and new_state is not SessionState.ENDED:
            raise ValueError(f"session {self.session_id} has ended")
        old_state = self.state
        self.state = new_state
        return old_state

    def end(self, reason: str, now: float) -> None:
        self.transition_to(SessionState.ENDED)
        self.ended_at = now
        self.end_reason = reason

    def is_terminal(self) -> bool:
        return self.state is SessionState.ENDED

    def append_turn(self, turn: ConversationTurn, repeatable: bool = True) -> None:
        self.history.append(turn)
        self.last_activity = turn.timestamp
        if repeatable:
            self.last_response = turn.response_text
        if turn.speaker_id:
            self.speaker_counts[turn.speaker_id] = self.speaker_counts.get(turn.speaker_id, 0) + 1

    def stats(self, now: float, errors: Dict[str, Any]) -> SessionStats:
        end = self.ended_at if self.ended_at is not None else now
        return SessionStats(
            session_id=self.session_id,
            client_id=self.client_id,
            state=self.state,
            started_at=self.started_at,
            duration_seconds=max(0.0, end - self.started_at),
            interaction_count=len(self.history),
            speaker_counts=dict(self.speaker_counts),
            current_speaker=self.current_speaker_id,
            queued_speakers=list(self.turn_state.queue),
            errors=errors,
            end_reason=self.end_reason,
        )


class SessionRegistry:
    """Live sessions by id plus stats of ended ones."""

    def __init__(self, max_archived: int = 1000):
        self._sessions: Dict[str, Session] = {}
        self._archived: Dict[str, SessionStats] = {}
        self._max_archived = max_archived

    def add(self, session: Session) -> None:
        if session.session_id in self._sessions:
            raise SessionAlreadyExistsError(f"session {session.session_id} already exists")
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def archive(self, session: Session, stats: SessionStats) -> None:
        """Remove an ended session and keep its final stats."""
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        self._archived.pop(session.session_id, None)
        self._archived[session.session_id] = stats
        while len(self._archived) > self._max_archived:
            del self._archived[next(iter(self._archived))]

    def archived(self, session_id: str) -> Optional[SessionStats]:
        return self._archived.get(session_id)

    def list_sessions(self, state: Optional[SessionState] = None) -> List[Session]:
        sessions = list(self._sessions.values())
        if state:
            sessions = [s for s in sessions if s.state == state]
        return sessions

    def __len__(self) -> int:
        return len(self._sessions)
