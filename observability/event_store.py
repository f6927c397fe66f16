"""
In-memory store of emitted events.

Backs ``GET /sessions/{id}/events``: events stay queryable after the session
has ended, until they fall off the end of the bounded buffer.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}

_ENVELOPE_KEYS = ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii")


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def _type_matches(event_type: str, pattern: str) -> bool:
    # "session.*" selects every session event
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return event_type == pattern


@dataclass(frozen=True)
class StoredEvent:
    ts: datetime
    session_id: str
    component: str
    event_type: str
    severity: str
    correlation_id: str
    pii: Dict[str, Any]
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "StoredEvent":
        session_id = event.get("session_id") or ""
        return cls(
            ts=_parse_ts(event.get("ts")),
            session_id=session_id,
            component=event.get("component", "unknown"),
            event_type=event.get("event_type", "unknown"),
            severity=event.get("severity", "info"),
            correlation_id=event.get("correlation_id") or session_id,
            pii=event.get("pii") or DEFAULT_PII,
            payload={k: v for k, v in event.items() if k not in _ENVELOPE_KEYS},
        )

    def matches(
        self,
        session_id: Optional[str],
        event_type: Optional[str],
        component: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> bool:
        if session_id and self.session_id != session_id:
            return False
        if event_type and not _type_matches(self.event_type, event_type):
            return False
        if component and self.component != component:
            return False
        if since and self.ts < since:
            return False
        if until and self.ts > until:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """The event as it was emitted."""
        result = {
            "ts": self.ts.isoformat(),
            "session_id": self.session_id,
            "component": self.component,
            "event_type": self.event_type,
            "severity": self.severity,
            "correlation_id": self.correlation_id,
            "pii": self.pii,
        }
        result.update(self.payload)
        return result


class EventStore:
    """
    Bounded FIFO of events; the oldest fall off first.

    Emitters run on the event loop and in the threadpool FastAPI uses for
    sync dependencies, so access is guarded by a lock.
    """

    def __init__(self, max_events: int = 10000):
        self._events: deque[StoredEvent] = deque(maxlen=max_events)
        self._max_events = max_events
        self._lock = threading.Lock()

    def store(self, event: Dict[str, Any]) -> None:
        stored = StoredEvent.from_event(event)
        with self._lock:
            self._events.append(stored)

    def query(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        latest: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Events matching every given filter, oldest first.

        ``event_type`` may end in ``.*`` to select a family. With ``latest``
        the ``limit`` keeps the newest matches instead of the oldest.
        """
        with self._lock:
            events = list(self._events)

        results = [e for e in events if e.matches(session_id, event_type, component, since, until)]
        if limit:
            results = results[-limit:] if latest else results[:limit]
        return [e.to_dict() for e in results]

    def counts_by_type(self, session_id: str) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(e.event_type for e in self._events if e.session_id == session_id))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            events = list(self._events)
        return {
            "total_events": len(events),
            "max_events": self._max_events,
            "sessions": len({e.session_id for e in events}),
            "by_component": dict(Counter(e.component for e in events)),
            "oldest_event_ts": events[0].ts.isoformat() if events else None,
            "newest_event_ts": events[-1].ts.isoformat() if events else None,
        }


event_store = EventStore()
