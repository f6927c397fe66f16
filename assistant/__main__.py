"""
Entry point for running the voice assistant API server.

Usage:
    python -m assistant

This starts the FastAPI server on http://HOST:PORT (default 0.0.0.0:8000)
"""
import uvicorn

from logging_setup import setup_logging

from .config import get_config

if __name__ == "__main__":
    config = get_config()

    # Initialize logging
    setup_logging(level=config.log_level, use_json=config.log_json, redact_pii=config.log_redact_pii)

    uvicorn.run(
        "assistant.server:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
