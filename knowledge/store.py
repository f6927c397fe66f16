"""
RetrievalStore: durable per-client chunk storage with an in-memory index.

Each client's knowledge base is held as an immutable ``ClientIndex``. Writers
build a new index, persist it through the blob store and only then swap it
in, so readers always see either the old or the new chunk set and never wait
for a write. Writers for the same client are serialized by a per-client lock.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from logging_setup import get_logger, Component

from .blob_store import BlobStore
from .embedding_cache import EmbeddingCache, normalize_text
from .models import Chunk, Document, KnowledgeBaseStats


logger = get_logger(Component.STORE)

SNAPSHOT_FORMAT_VERSION = 1


class EmbeddingDimensionError(ValueError):
    """A vector does not match the deployment's embedding dimension."""


class DocumentConflictError(ValueError):
    """A document with the same id already exists for the client."""

    def __init__(self, client_id: str, document_id: str):
        super().__init__(f"document {document_id!r} already exists for client {client_id!r}")
        self.client_id = client_id
        self.document_id = document_id


@dataclass(frozen=True, eq=False)
class ClientIndex:
    """Immutable view of one client's knowledge base."""

    client_id: str
    documents: Mapping[str, Document]
    chunks: Tuple[Chunk, ...]
    matrix: np.ndarray
    norms: np.ndarray
    last_ingest_time: Optional[float]

    @classmethod
    def build(
        cls,
        client_id: str,
        documents: Iterable[Document],
        chunks: Iterable[Chunk],
        last_ingest_time: Optional[float],
    ) -> "ClientIndex":
        chunk_tuple = tuple(chunks)
        if chunk_tuple:
            matrix = np.asarray([c.embedding for c in chunk_tuple], dtype=np.float64)
        else:
            matrix = np.zeros((0, 0), dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) if chunk_tuple else np.zeros(0, dtype=np.float64)
        matrix.setflags(write=False)
        norms.setflags(write=False)
        return cls(
            client_id=client_id,
            documents=MappingProxyType({d.id: d for d in documents}),
            chunks=chunk_tuple,
            matrix=matrix,
            norms=norms,
            last_ingest_time=last_ingest_time,
        )

    @classmethod
    def empty(cls, client_id: str) -> "ClientIndex":
        return cls.build(client_id, (), (), None)

    def with_document(self, document: Document, chunks: Sequence[Chunk], now: float) -> "ClientIndex":
        return ClientIndex.build(
            self.client_id,
            [*self.documents.values(), document],
            [*self.chunks, *chunks],
            now,
        )

    def without_document(self, document_id: str) -> "ClientIndex":
        return ClientIndex.build(
            self.client_id,
            [d for d in self.documents.values() if d.id != document_id],
            [c for c in self.chunks if c.source_document_id != document_id],
            self.last_ingest_time,
        )

    def stats(self) -> KnowledgeBaseStats:
        return KnowledgeBaseStats(
            client_id=self.client_id,
            document_count=len(self.documents),
            chunk_count=len(self.chunks),
            last_ingest_time=self.last_ingest_time,
        )

    def to_snapshot(self) -> Dict:
        cache_entries: Dict[str, List[float]] = {}
        for chunk in self.chunks:
            cache_entries.setdefault(normalize_text(chunk.content), list(chunk.embedding))
        return {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "client_id": self.client_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "last_ingest_time": self.last_ingest_time,
            "dimension": int(self.matrix.shape[1]) if self.chunks else None,
            "documents": [d.to_dict() for d in self.documents.values()],
            "chunks": [c.to_dict() for c in self.chunks],
            "embedding_cache": cache_entries,
        }


class RetrievalStore:
    """Per-client chunk sets, persisted through a ``BlobStore``."""

    def __init__(
        self,
        blob_store: BlobStore,
        embedding_cache: EmbeddingCache,
        dimension: Optional[int] = None,
        now: Callable[[], float] = time.time,
    ):
        self._blob_store = blob_store
        self._cache = embedding_cache
        self._dimension = dimension
        self._now = now
        self._indexes: Dict[str, ClientIndex] = {}
        self._absent: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def _lock(self, client_id: str) -> asyncio.Lock:
        lock = self._locks.get(client_id)
        if lock is None:
            lock = self._locks[client_id] = asyncio.Lock()
        return lock

    def check_dimension(self, vectors: Iterable[Sequence[float]]) -> None:
        """Validate vectors against the deployment dimension, fixing it on first use."""
        for vector in vectors:
            if self._dimension is None:
                self._dimension = len(vector)
            elif len(vector) != self._dimension:
                raise EmbeddingDimensionError(
                    f"expected embedding dimension {self._dimension}, got {len(vector)}"
                )

    async def get_index(self, client_id: str) -> Optional[ClientIndex]:
        """Current index of a client, or None when it has no knowledge base."""
        index = self._indexes.get(client_id)
        if index is not None or client_id in self._absent:
            return index
        async with self._lock(client_id):
            return await self._ensure_loaded(client_id)

    async def _ensure_loaded(self, client_id: str) -> Optional[ClientIndex]:
        # Caller holds the client lock.
        if client_id in self._indexes:
            return self._indexes[client_id]
        if client_id in self._absent:
            return None
        snapshot = await asyncio.to_thread(self._blob_store.read_client_snapshot, client_id)
        if snapshot is None:
            self._absent.add(client_id)
            return None
        index = self._index_from_snapshot(client_id, snapshot)
        self._indexes[client_id] = index
        logger.info(
            "Client knowledge base loaded",
            client_id=client_id,
            document_count=len(index.documents),
            chunk_count=len(index.chunks),
        )
        return index

    def _index_from_snapshot(self, client_id: str, snapshot: Dict) -> ClientIndex:
        version = snapshot.get("format_version")
        if version != SNAPSHOT_FORMAT_VERSION:
            raise ValueError(f"unsupported snapshot format {version!r} for client {client_id!r}")
        documents = [Document.from_dict(d) for d in snapshot.get("documents", [])]
        chunks = [Chunk.from_dict(c) for c in snapshot.get("chunks", [])]
        self.check_dimension(c.embedding for c in chunks)
        cache_entries = snapshot.get("embedding_cache") or {}
        self.check_dimension(cache_entries.values())
        self._cache.warm(cache_entries)
        return ClientIndex.build(client_id, documents, chunks, snapshot.get("last_ingest_time"))

    async def load_all(self) -> int:
        """Eagerly load every persisted client. Returns the number loaded."""
        client_ids = await asyncio.to_thread(self._blob_store.list_clients)
        loaded = 0
        for client_id in client_ids:
            async with self._lock(client_id):
                if await self._ensure_loaded(client_id) is not None:
                    loaded += 1
        return loaded

    async def _commit(self, index: ClientIndex) -> None:
        # Caller holds the client lock. Durable write first, then swap.
        await asyncio.to_thread(
            self._blob_store.write_client_snapshot, index.client_id, index.to_snapshot()
        )
        self._indexes[index.client_id] = index
        self._absent.discard(index.client_id)

    async def add_document(self, client_id: str, document: Document, chunks: Sequence[Chunk]) -> ClientIndex:
        """
        Add one document with its chunks.

        Raises:
            DocumentConflictError: the document id already exists for the client
            EmbeddingDimensionError: a chunk vector has the wrong dimension
        """
        self.check_dimension(c.embedding for c in chunks)
        async with self._lock(client_id):
            current = await self._ensure_loaded(client_id) or ClientIndex.empty(client_id)
            if document.id in current.documents:
                raise DocumentConflictError(client_id, document.id)
            updated = current.with_document(document, chunks, self._now())
            await self._commit(updated)
        return updated

    async def replace_all(
        self,
        client_id: str,
        entries: Sequence[Tuple[Document, Sequence[Chunk]]],
    ) -> ClientIndex:
        """Atomically replace a client's whole knowledge base."""
        ids = [document.id for document, _ in entries]
        if len(ids) != len(set(ids)):
            duplicate = next(i for i in ids if ids.count(i) > 1)
            raise DocumentConflictError(client_id, duplicate)
        for _, chunks in entries:
            self.check_dimension(c.embedding for c in chunks)
        replacement = ClientIndex.build(
            client_id,
            [document for document, _ in entries],
            [chunk for _, chunks in entries for chunk in chunks],
            self._now(),
        )
        async with self._lock(client_id):
            await self._commit(replacement)
        return replacement

    async def remove_document(self, client_id: str, document_id: str) -> bool:
        """Remove a document and its chunks. Returns False when it did not exist."""
        async with self._lock(client_id):
            current = await self._ensure_loaded(client_id)
            if current is None or document_id not in current.documents:
                return False
            await self._commit(current.without_document(document_id))
        return True

    async def delete_client(self, client_id: str) -> bool:
        """Drop a client's knowledge base. Returns False when there was none."""
        async with self._lock(client_id):
            existed = await self._ensure_loaded(client_id) is not None
            await asyncio.to_thread(self._blob_store.delete_client_snapshot, client_id)
            self._indexes.pop(client_id, None)
            self._absent.add(client_id)
        return existed

    async def client_ids(self) -> List[str]:
        persisted = await asyncio.to_thread(self._blob_store.list_clients)
        return sorted(set(persisted) | set(self._indexes))
