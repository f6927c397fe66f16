"""
Shared logging infrastructure for the voice knowledge assistant.

One JSON object per line on stdout. Every record carries the component that
wrote it; records written for a session also carry ``session_id`` and, where
known, the ``client_id`` whose knowledge base is in use.

Transcripts and speaker names are personal data. They are passed to the
``*_pii`` helpers, which put them under a separate ``pii`` key so that
``setup_logging(redact_pii=True)`` can mask them without touching the rest
of the record.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Component(str, Enum):
    """System components for log tagging."""
    ORCHESTRATOR = "orchestrator"
    SESSION_MANAGER = "session_manager"
    RETRIEVAL = "retrieval"
    EMBEDDING = "embedding"
    STORE = "store"
    PROVIDER = "provider"
    ERROR_HANDLER = "error_handler"
    API = "api"
    UI_CHANNEL = "ui_channel"


# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "taskName",
}
_CORRELATION = ("component", "session_id", "client_id")


def redact(value: Any) -> Dict[str, Any]:
    """Placeholder logged instead of a PII value."""
    text = "" if value is None else str(value)
    return {"redacted": True, "length": len(text)}


class JSONFormatter(logging.Formatter):
    """
    Formats records as single-line JSON.

    Records from third-party loggers (uvicorn, aiohttp) have no component and
    are tagged with their logger name.
    """

    def __init__(self, redact_pii: bool = False):
        super().__init__()
        self.redact_pii = redact_pii

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", None) or record.name,
            "message": record.getMessage(),
        }
        for key in _CORRELATION[1:]:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in _CORRELATION:
                continue
            if key == "pii" and self.redact_pii and isinstance(value, dict):
                value = {name: redact(v) for name, v in value.items()}
            log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Thin wrapper over ``logging.Logger``; keyword arguments become JSON fields.

        logger = get_logger(Component.RETRIEVAL)
        logger.info("Query finished", client_id="acme", result_count=3)
        logger.with_session("s1", client_id="acme").debug_pii("Transcript", transcript="...")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        client_id: Optional[str] = None,
        logger_name: Optional[str] = None,
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.client_id = client_id
        self.logger = logging.getLogger(logger_name or f"assistant.{self.component}")

    def _log(self, level: int, message: str, pii: Optional[Dict[str, Any]] = None, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)

        extra = {"component": self.component, **kwargs}
        if self.session_id:
            extra["session_id"] = self.session_id
        if self.client_id and "client_id" not in kwargs:
            extra["client_id"] = self.client_id
        if pii:
            extra["pii"] = pii

        # 3: _log -> info/debug/... -> caller
        self.logger.log(level, message, exc_info=exc_info, stacklevel=3, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log at ERROR with the active exception attached."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def debug_pii(self, message: str, **pii_fields):
        """
        Log at DEBUG with personal data kept under the ``pii`` key.

        Example:
            logger.debug_pii("Transcript received", transcript="what is the return policy")
        """
        self._log(logging.DEBUG, message, pii=pii_fields)

    def info_pii(self, message: str, **pii_fields):
        self._log(logging.INFO, message, pii=pii_fields)

    def with_session(self, session_id: str, client_id: Optional[str] = None) -> "StructuredLogger":
        """Logger bound to a session (and optionally its client)."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            client_id=client_id or self.client_id,
            logger_name=self.logger.name,
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    redact_pii: bool = False,
) -> None:
    """
    Configure the root logger. Call once at process start.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown values mean INFO)
        use_json: JSON lines (True) or plain text for local development (False)
        redact_pii: mask values logged through the ``*_pii`` helpers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if use_json:
        console_handler.setFormatter(JSONFormatter(redact_pii=redact_pii))
    else:
        console_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(component)s] %(message)s",
            defaults={"component": "-"},
        ))
    root_logger.addHandler(console_handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(component: str | Component, session_id: Optional[str] = None) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Example:
        logger = get_logger(Component.ORCHESTRATOR, session_id="sess_123")
        logger.info("Session started")
    """
    return StructuredLogger(component, session_id=session_id)
