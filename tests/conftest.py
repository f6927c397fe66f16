"""
Shared fixtures: deterministic fakes for the embedder, completion and speech
providers, a manual clock, and a fully wired orchestrator.
"""
import re
from typing import List, Optional

import pytest

from assistant.instructions import AssistantTexts
from assistant.orchestrator import SessionOrchestrator
from assistant.recovery import ErrorClassifier, ErrorHandler, RecoveryPolicy
from knowledge.blob_store import InMemoryBlobStore
from knowledge.embedding_cache import EmbeddingCache
from knowledge.engine import RetrievalEngine
from knowledge.store import RetrievalStore
from observability.event_store import event_store


VOCABULARY = ("refund", "policy", "return", "shipping", "days", "password", "invoice", "support")


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class KeywordEmbedder:
    """Bag-of-keywords vectors: one dimension per vocabulary word."""

    def __init__(self, vocabulary=VOCABULARY):
        self.vocabulary = vocabulary
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        lowered = text.lower()
        return [float(lowered.count(word)) for word in self.vocabulary]


class StemmingEmbedder(KeywordEmbedder):
    """Keyword vectors over crude stems, so "returns" matches "return"."""

    def __init__(self, vocabulary=("refund", "return", "shipping", "password", "invoice", "support")):
        super().__init__(vocabulary)

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        stems = [word[:-1] if word.endswith("s") else word for word in re.findall(r"[a-z]+", text.lower())]
        return [float(stems.count(word)) for word in self.vocabulary]


class FailingEmbedder:
    """Fails every call with ``error``."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error or RuntimeError("connection refused")
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        raise self.error


class EchoCompletion:
    """Answers with the context it was given, so tests can see what was retrieved."""

    def __init__(self):
        self.calls = []
        self.error: Optional[Exception] = None

    async def complete(self, prompt: str, context: Optional[str] = None) -> str:
        self.calls.append((prompt, context))
        if self.error is not None:
            raise self.error
        return f"Answer: {context}"


class FakeTTS:
    def __init__(self):
        self.calls = []
        self.error: Optional[Exception] = None

    async def synthesize(self, text: str, voice: str) -> bytes:
        self.calls.append((text, voice))
        if self.error is not None:
            raise self.error
        return b"RIFF-audio"


@pytest.fixture(autouse=True)
def clear_event_store():
    event_store.clear()
    yield
    event_store.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def cache(embedder):
    return EmbeddingCache(embedder)


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def store(blob_store, cache, clock):
    return RetrievalStore(blob_store, cache, now=clock)


@pytest.fixture
def engine(store, cache):
    return RetrievalEngine(store, cache)


@pytest.fixture
def completion():
    return EchoCompletion()


@pytest.fixture
def tts():
    return FakeTTS()


@pytest.fixture
def orchestrator(engine, completion, tts, clock):
    return SessionOrchestrator(
        engine,
        completion,
        tts,
        error_handler=ErrorHandler(ErrorClassifier(now=clock), RecoveryPolicy()),
        texts=AssistantTexts(),
        now=clock,
    )
