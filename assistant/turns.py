"""
Turn-taking between speakers of one session.

SINGLE_SPEAKER: the first speaker holds the turn for the whole session.
MULTI_SPEAKER: a speaker holds the turn until ``hold_seconds`` pass without
their input, or until they release it. Rejected speakers wait in a queue and
get the turn in queue order once it frees up.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class ConversationMode(str, Enum):
    SINGLE_SPEAKER = "single_speaker"
    MULTI_SPEAKER = "multi_speaker"


@dataclass
class TurnState:
    """Mutable turn bookkeeping, owned by a Session."""
    holder: Optional[str] = None
    turn_started_at: Optional[float] = None
    last_input_at: Optional[float] = None
    released_at: Optional[float] = None
    queue: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TurnDecision:
    allowed: bool
    current_speaker: Optional[str]
    queue_position: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_allowed": self.allowed,
            "current_speaker": self.current_speaker,
            "turn_message": self.message,
            "queue_position": self.queue_position,
            "conversation_state": "speaking" if self.allowed else "waiting",
        }


class TurnManager:
    """
    Grants or denies the turn to a claimed speaker.

    When the turn frees up (hold expired or released) the head of the queue
    has ``hold_seconds`` to claim it; other speakers are queued behind it.
    A head that stays silent for that long loses its place.
    """

    def __init__(self, hold_seconds: float = 2.0, now: Callable[[], float] = time.time):
        self.hold_seconds = hold_seconds
        self._now = now

    def _held(self, state: TurnState, mode: ConversationMode, now: float) -> bool:
        if state.holder is None:
            return False
        if mode is ConversationMode.SINGLE_SPEAKER or state.last_input_at is None:
            return True
        return now - state.last_input_at < self.hold_seconds

    def _free_since(self, state: TurnState, now: float) -> float:
        if state.holder is None:
            return state.released_at if state.released_at is not None else now
        return state.last_input_at + self.hold_seconds

    def _drop_silent_heads(self, state: TurnState, speaker_id: str, now: float) -> None:
        free_since = self._free_since(state, now)
        while state.queue and state.queue[0] != speaker_id and now - free_since >= self.hold_seconds:
            state.queue.pop(0)
            free_since += self.hold_seconds

    def _wait(self, state: TurnState, speaker_id: str, current: str, verb: str) -> TurnDecision:
        if speaker_id not in state.queue:
            state.queue.append(speaker_id)
        position = state.queue.index(speaker_id) + 1
        return TurnDecision(
            allowed=False,
            current_speaker=current,
            queue_position=position,
            message=f"{current} {verb}. You are number {position} in line.",
        )

    def check(self, state: TurnState, mode: ConversationMode, speaker_id: str) -> TurnDecision:
        now = self._now()

        if state.holder == speaker_id and self._held(state, mode, now):
            state.last_input_at = now
            return TurnDecision(allowed=True, current_speaker=speaker_id)
        if self._held(state, mode, now):
            return self._wait(state, speaker_id, state.holder, "is speaking")

        self._drop_silent_heads(state, speaker_id, now)
        if state.queue and state.queue[0] != speaker_id:
            return self._wait(state, speaker_id, state.queue[0], "is next")

        if state.queue:
            state.queue.pop(0)
        if state.holder != speaker_id:
            state.turn_started_at = now
        state.holder = speaker_id
        state.last_input_at = now
        state.released_at = None
        return TurnDecision(allowed=True, current_speaker=speaker_id)

    def release(self, state: TurnState, speaker_id: str) -> bool:
        """Give up the turn. Only the holder can release it."""
        if state.holder != speaker_id:
            return False
        state.holder = None
        state.turn_started_at = None
        state.last_input_at = None
        state.released_at = self._now()
        return True
