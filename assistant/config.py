"""
Assistant configuration.

Loads settings from environment variables. ``.env_local`` / ``.env`` in the
project root are read first (never overriding variables that are already set).
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort load of local env files; existing variables win."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local", ".env"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """Raw env value with trailing ``# comment`` and whitespace stripped."""
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "300  # comment" -> 300
    - "300" -> 300
    - None -> default
    """
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class AssistantConfig:
    """Voice assistant configuration."""

    # OpenAI-compatible providers (embeddings, completions, speech)
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    completion_model: str = "gpt-4o-mini"
    tts_model: str = "tts-1"
    http_timeout_seconds: float = 15.0

    # Knowledge base
    knowledge_dir: Optional[str] = None  # None keeps snapshots in memory
    embedding_dimension: Optional[int] = None  # None: fixed by the first stored vector
    embedding_cache_size: int = 10000
    chunk_size: int = 500
    chunk_overlap: int = 50
    top_k: int = 5
    min_similarity: float = 0.7

    # Sessions
    session_idle_timeout_seconds: float = 1800.0
    idle_sweep_interval_seconds: float = 60.0
    turn_hold_seconds: float = 2.0

    # Recovery
    rate_limit_backoff_seconds: float = 5.0
    quota_backoff_seconds: float = 60.0

    # Texts / runtime
    scenario: str = "default"
    log_level: str = "INFO"
    log_json: bool = True
    log_redact_pii: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    def __post_init__(self):
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValueError("CHUNK_OVERLAP must be >= 0 and smaller than CHUNK_SIZE")
        if self.top_k <= 0:
            raise ValueError("RETRIEVAL_TOP_K must be positive")

    @classmethod
    def from_env(cls) -> "AssistantConfig":
        """Load configuration from environment variables."""
        dimension = _parse_int_env("EMBEDDING_DIMENSION", default=0)
        return cls(
            openai_base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            embedding_model=os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small"),
            completion_model=os.environ.get("COMPLETION_MODEL", "gpt-4o-mini"),
            tts_model=os.environ.get("TTS_MODEL", "tts-1"),
            http_timeout_seconds=_parse_float_env("HTTP_TIMEOUT_SECONDS", default=15.0),
            knowledge_dir=os.environ.get("KNOWLEDGE_DIR") or None,
            embedding_dimension=dimension or None,
            embedding_cache_size=_parse_int_env("EMBEDDING_CACHE_SIZE", default=10000),
            chunk_size=_parse_int_env("CHUNK_SIZE", default=500),
            chunk_overlap=_parse_int_env("CHUNK_OVERLAP", default=50),
            top_k=_parse_int_env("RETRIEVAL_TOP_K", default=5),
            min_similarity=_parse_float_env("RETRIEVAL_MIN_SIMILARITY", default=0.7),
            session_idle_timeout_seconds=_parse_float_env("SESSION_IDLE_TIMEOUT_SECONDS", default=1800.0),
            idle_sweep_interval_seconds=_parse_float_env("IDLE_SWEEP_INTERVAL_SECONDS", default=60.0),
            turn_hold_seconds=_parse_float_env("TURN_HOLD_SECONDS", default=2.0),
            rate_limit_backoff_seconds=_parse_float_env("RATE_LIMIT_BACKOFF_SECONDS", default=5.0),
            quota_backoff_seconds=_parse_float_env("QUOTA_BACKOFF_SECONDS", default=60.0),
            scenario=os.environ.get("ASSISTANT_SCENARIO", "default"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_json=_parse_bool_env("LOG_JSON", default=True),
            log_redact_pii=_parse_bool_env("LOG_REDACT_PII", default=True),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_parse_int_env("PORT", default=8000),
        )


def get_config() -> AssistantConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = AssistantConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[AssistantConfig] = None
