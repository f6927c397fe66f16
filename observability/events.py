"""
Structured JSON event emission (shared).

Every event is one JSON line on stdout and is also kept in the in-memory
event store so the HTTP API can serve a session's event history.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .event_store import DEFAULT_PII, event_store


class Component(str, Enum):
    """Component types that emit events."""

    ORCHESTRATOR = "orchestrator"
    ERROR_HANDLER = "error_handler"
    UI_CHANNEL = "ui_channel"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventEmitter:
    """Emits structured JSON events."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit a structured JSON event.

        Args:
            event_type: Stable event type string (e.g., "session.started")
            session_id: Session identifier
            severity: Event severity level
            correlation_id: Optional correlation ID for request/turn
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Additional event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }

        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)

    def session_started(
        self,
        session_id: str,
        client_id: str,
        conversation_mode: str,
    ) -> None:
        """Emit session.started event."""
        self.emit(
            "session.started",
            session_id,
            client_id=client_id,
            conversation_mode=conversation_mode,
        )

    def session_state_changed(
        self,
        session_id: str,
        from_state: str,
        to_state: str,
    ) -> None:
        """Emit session.state_changed event."""
        self.emit(
            "session.state_changed",
            session_id,
            from_state=from_state,
            to_state=to_state,
        )

    def session_ended(
        self,
        session_id: str,
        reason: str,
        interaction_count: int,
    ) -> None:
        """Emit session.ended event."""
        self.emit(
            "session.ended",
            session_id,
            reason=reason,
            interaction_count=interaction_count,
        )

    def turn_processed(
        self,
        session_id: str,
        turn_id: str,
        response_type: str,
        speaker_id: Optional[str],
        chunk_count: int,
        latency_ms: int,
    ) -> None:
        """Emit turn.processed event."""
        self.emit(
            "turn.processed",
            session_id,
            correlation_id=turn_id,
            response_type=response_type,
            speaker_id=speaker_id,
            chunk_count=chunk_count,
            latency_ms=latency_ms,
        )

    def turn_rejected(
        self,
        session_id: str,
        speaker_id: Optional[str],
        current_speaker: Optional[str],
        queue_position: Optional[int],
    ) -> None:
        """Emit turn.rejected event."""
        self.emit(
            "turn.rejected",
            session_id,
            speaker_id=speaker_id,
            current_speaker=current_speaker,
            queue_position=queue_position,
        )

    def error_classified(
        self,
        session_id: str,
        kind: str,
        strategy: str,
        consecutive: int,
        recoverable: bool,
        operation: Optional[str] = None,
    ) -> None:
        """Emit error.classified event."""
        self.emit(
            "error.classified",
            session_id,
            severity=Severity.WARN if recoverable else Severity.ERROR,
            kind=kind,
            strategy=strategy,
            consecutive=consecutive,
            recoverable=recoverable,
            operation=operation,
        )

    def ui_commands(
        self,
        session_id: str,
        actions: List[Dict[str, Any]],
    ) -> None:
        """Emit ui.command event for the UI actions derived from one turn."""
        self.emit(
            "ui.command",
            session_id,
            actions=actions,
        )
