"""
Knowledge base data model.

Documents and chunks are immutable once stored. A changed document is
deleted and added again.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class DocumentSource(str, Enum):
    """Where a document came from."""
    MANUAL = "manual"
    API = "api"
    UPLOAD = "upload"


@dataclass(frozen=True)
class Document:
    """A client document. ``id`` is unique per client."""

    id: str
    content: str
    source: DocumentSource = DocumentSource.MANUAL
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id:
            raise ValueError("document id is required")
        if not self.content or not self.content.strip():
            raise ValueError("document content must not be empty")
        if not isinstance(self.source, DocumentSource):
            object.__setattr__(self, "source", DocumentSource(self.source))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "source": self.source.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            id=data["id"],
            content=data["content"],
            source=DocumentSource(data.get("source", DocumentSource.MANUAL.value)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Chunk:
    """A window of a document's text together with its embedding."""

    content: str
    sequence_index: int
    source_document_id: str
    embedding: Tuple[float, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "sequence_index": self.sequence_index,
            "source_document_id": self.source_document_id,
            "embedding": list(self.embedding),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        return cls(
            content=data["content"],
            sequence_index=int(data["sequence_index"]),
            source_document_id=data["source_document_id"],
            embedding=tuple(float(v) for v in data["embedding"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ScoredChunk:
    """A query hit."""

    chunk: Chunk
    score: float

    @property
    def source(self) -> str:
        """Human readable source label used in prompts."""
        return str(self.chunk.metadata.get("title") or self.chunk.source_document_id)


@dataclass(frozen=True)
class KnowledgeBaseStats:
    """Size of one client's knowledge base."""

    client_id: str
    document_count: int
    chunk_count: int
    last_ingest_time: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "document_count": self.document_count,
            "chunk_count": self.chunk_count,
            "last_ingest_time": self.last_ingest_time,
        }
