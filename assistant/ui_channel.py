"""
UI control channel.

Delivers ``ui_command`` and ``voice_feedback`` messages to the client
application connected for a session, and keeps the latest
``ui_state_update`` snapshot it reported. The snapshot is used as the
current context when an input arrives without one.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .ui_actions import UICommand


logger = get_logger(Component.UI_CHANNEL)
emitter = EventEmitter(ObsComponent.UI_CHANNEL)


class UIConnection(Protocol):
    async def send_json(self, data: Any) -> None:
        ...


class UIChannel:
    """
    Per-session fan-out to connected UI clients.

    With ``is_known_session`` set, state updates for other session ids are
    dropped.
    """

    def __init__(self, is_known_session: Optional[Callable[[str], bool]] = None):
        self.is_known_session = is_known_session
        self._connections: Dict[str, Set[UIConnection]] = {}
        self._ui_state: Dict[str, Dict[str, Any]] = {}

    def connect(self, session_id: str, connection: UIConnection) -> None:
        self._connections.setdefault(session_id, set()).add(connection)
        logger.info("UI client connected", session_id=session_id)

    def disconnect(self, session_id: str, connection: UIConnection) -> None:
        connections = self._connections.get(session_id)
        if connections is None:
            return
        connections.discard(connection)
        if not connections:
            del self._connections[session_id]
        logger.info("UI client disconnected", session_id=session_id)

    def connection_count(self, session_id: str) -> int:
        return len(self._connections.get(session_id, ()))

    def current_context(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._ui_state.get(session_id)

    def forget(self, session_id: str) -> None:
        """Drop the stored UI state of an ended session."""
        self._ui_state.pop(session_id, None)

    async def _broadcast(self, session_id: str, message: Dict[str, Any]) -> int:
        delivered = 0
        for connection in list(self._connections.get(session_id, ())):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                # Dead sockets are dropped.
                logger.warning(
                    "UI message delivery failed",
                    session_id=session_id,
                    message_type=message.get("type"),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.disconnect(session_id, connection)
        return delivered

    async def publish(self, session_id: str, commands: List[UICommand], feedback: Optional[str]) -> int:
        """Send the commands and spoken-text feedback of one turn. Returns messages delivered."""
        delivered = 0
        for command in commands:
            delivered += await self._broadcast(session_id, {"type": "ui_command", **command.to_dict()})
        if feedback:
            delivered += await self._broadcast(session_id, {"type": "voice_feedback", "text": feedback})
        if commands:
            emitter.ui_commands(session_id, actions=[c.to_dict() for c in commands])
        return delivered

    def handle_message(self, session_id: str, message: Dict[str, Any]) -> None:
        """Process a message sent by the UI client."""
        message_type = message.get("type")
        if message_type == "ui_state_update":
            if self.is_known_session is not None and not self.is_known_session(session_id):
                logger.warning("UI state update for unknown session dropped", session_id=session_id)
                return
            self._ui_state[session_id] = {k: v for k, v in message.items() if k != "type"}
            logger.debug("UI state updated", session_id=session_id, keys=sorted(self._ui_state[session_id]))
        elif message_type in ("action_completed", "action_failed"):
            emitter.emit(
                f"ui.{message_type}",
                session_id,
                severity=Severity.INFO if message_type == "action_completed" else Severity.WARN,
                action=message.get("action"),
                target=message.get("target"),
                detail=message.get("error"),
            )
        else:
            logger.warning("Unknown UI message type", session_id=session_id, message_type=message_type)
