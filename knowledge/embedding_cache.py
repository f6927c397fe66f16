"""
Shared embedding cache.

Lookups are exact matches on the normalized text. The cache is shared by all
clients and bounded with LRU eviction. It never retries: a failed embed call
surfaces to the caller.
"""
from __future__ import annotations

import re
import time
import unicodedata
from collections import OrderedDict
from typing import Dict, Iterable, Optional, Tuple

from assistant.errors import EmbeddingUnavailableError, VoiceError
from logging_setup import get_logger, Component

from .providers import Embedder


logger = get_logger(Component.EMBEDDING)

Vector = Tuple[float, ...]

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Cache key for ``text``: NFC, whitespace collapsed, stripped."""
    return _WHITESPACE.sub(" ", unicodedata.normalize("NFC", text)).strip()


class EmbeddingCache:
    """Text -> embedding vector cache in front of an ``Embedder``."""

    def __init__(self, embedder: Embedder, max_entries: int = 10000):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._embedder = embedder
        self._max_entries = max_entries
        self._entries: "OrderedDict[str, Vector]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @property
    def embedder(self) -> Embedder:
        return self._embedder

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: str) -> bool:
        return normalize_text(text) in self._entries

    async def get(self, text: str) -> Vector:
        """
        Return the embedding for ``text``, calling the embedder on a miss.

        Raises:
            EmbeddingUnavailableError: the embedder failed without a typed error
            VoiceError: typed provider errors (rate limit, quota) pass through
        """
        key = normalize_text(text)
        cached = self._entries.get(key)
        if cached is not None:
            self._entries.move_to_end(key)
            self.hits += 1
            return cached

        self.misses += 1
        start_ts = time.time()
        try:
            raw = await self._embedder.embed(key)
        except VoiceError:
            raise
        except Exception as e:
            logger.warning(
                "Embedding request failed",
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise EmbeddingUnavailableError(f"embedding failed: {e}") from e

        vector = tuple(float(v) for v in raw)
        if not vector:
            raise EmbeddingUnavailableError("embedder returned an empty vector")

        # A concurrent miss for the same key may have stored it already;
        # the vectors are interchangeable.
        self._put(key, vector)
        logger.debug(
            "Embedding computed",
            dimension=len(vector),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return vector

    def peek(self, text: str) -> Optional[Vector]:
        """Cached vector for ``text`` without touching statistics or order."""
        return self._entries.get(normalize_text(text))

    def warm(self, entries: Dict[str, Iterable[float]]) -> int:
        """Load persisted entries. Returns how many were new."""
        added = 0
        for key, vector in entries.items():
            key = normalize_text(key)
            if key in self._entries:
                continue
            self._put(key, tuple(float(v) for v in vector))
            added += 1
        return added

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> Dict[str, float]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "max_entries": self._max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": (self.hits / lookups) if lookups else 0.0,
        }

    def _put(self, key: str, vector: Vector) -> None:
        self._entries[key] = vector
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
