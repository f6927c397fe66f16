"""
RetrievalEngine: ingestion and similarity search over per-client knowledge.

Every operation is scoped to one client id; a query only ever scores the
chunks of that client.
"""
from __future__ import annotations

import time
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from logging_setup import get_logger, Component

from .chunker import CHUNK_OVERLAP, CHUNK_SIZE, split_text
from .embedding_cache import EmbeddingCache
from .models import Chunk, Document, KnowledgeBaseStats, ScoredChunk
from .store import RetrievalStore


logger = get_logger(Component.RETRIEVAL)

DEFAULT_TOP_K = 5
DEFAULT_MIN_SIMILARITY = 0.7


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| |b|); 0.0 when either vector is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def _cosine_scores(matrix: np.ndarray, norms: np.ndarray, query: np.ndarray) -> np.ndarray:
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0 or matrix.shape[0] == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    dots = matrix @ query
    denom = norms * query_norm
    scores = np.zeros_like(dots)
    nonzero = denom > 0
    scores[nonzero] = dots[nonzero] / denom[nonzero]
    return scores


class RetrievalEngine:
    """Chunk, embed, store and search client documents."""

    def __init__(
        self,
        store: RetrievalStore,
        embedding_cache: EmbeddingCache,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
    ):
        self._store = store
        self._cache = embedding_cache
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap

    @property
    def embedding_cache(self) -> EmbeddingCache:
        return self._cache

    async def _embed_document(self, document: Document) -> List[Chunk]:
        """
        Chunk and embed a document.

        Embeddings are computed one window at a time; the first failure
        aborts the whole document before anything is written.
        """
        chunks = []
        for window in split_text(document.content, self._chunk_size, self._chunk_overlap):
            embedding = await self._cache.get(window.text)
            chunks.append(Chunk(
                content=window.text,
                sequence_index=window.sequence_index,
                source_document_id=document.id,
                embedding=embedding,
                metadata={
                    **document.metadata,
                    "source": document.source.value,
                    "start_offset": window.start_offset,
                    "end_offset": window.end_offset,
                },
            ))
        return chunks

    async def ingest(self, client_id: str, document: Document) -> int:
        """
        Add a document to a client's knowledge base.

        Returns:
            Number of chunks stored

        Raises:
            EmbeddingUnavailableError / ApiRateLimitedError / ApiQuotaExceededError:
                embedding failed; nothing was stored
            DocumentConflictError: the document id already exists for this client
        """
        start_ts = time.time()
        chunks = await self._embed_document(document)
        await self._store.add_document(client_id, document, chunks)
        logger.info(
            "Document ingested",
            client_id=client_id,
            document_id=document.id,
            chunk_count=len(chunks),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return len(chunks)

    async def initialize_knowledge_base(self, client_id: str, documents: Sequence[Document]) -> int:
        """Replace a client's knowledge base with ``documents``. Returns the chunk count."""
        start_ts = time.time()
        entries: List[Tuple[Document, List[Chunk]]] = []
        for document in documents:
            entries.append((document, await self._embed_document(document)))
        index = await self._store.replace_all(client_id, entries)
        logger.info(
            "Knowledge base initialized",
            client_id=client_id,
            document_count=len(index.documents),
            chunk_count=len(index.chunks),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return len(index.chunks)

    async def query(
        self,
        client_id: str,
        text: str,
        top_k: int = DEFAULT_TOP_K,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> List[ScoredChunk]:
        """
        Most similar chunks of one client for ``text``.

        Results have ``score >= min_similarity`` and are ordered by descending
        score, then lower sequence index, then smaller document id. Returns an
        empty list when the text is blank, the client has no knowledge base or
        nothing clears the threshold.
        """
        if not text or not text.strip() or top_k <= 0:
            return []
        index = await self._store.get_index(client_id)
        if index is None or not index.chunks:
            return []

        start_ts = time.time()
        query_vector = np.asarray(await self._cache.get(text), dtype=np.float64)
        self._store.check_dimension([query_vector])
        scores = _cosine_scores(index.matrix, index.norms, query_vector)

        candidates = [
            (float(score), chunk)
            for score, chunk in zip(scores, index.chunks)
            if score >= min_similarity
        ]
        candidates.sort(key=lambda item: (-item[0], item[1].sequence_index, item[1].source_document_id))
        results = [ScoredChunk(chunk=chunk, score=score) for score, chunk in candidates[:top_k]]

        logger.debug(
            "Knowledge query finished",
            client_id=client_id,
            scanned=len(index.chunks),
            result_count=len(results),
            top_score=results[0].score if results else None,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return results

    async def delete_document(self, client_id: str, document_id: str) -> bool:
        """Remove a document. Unknown ids are a no-op (returns False)."""
        removed = await self._store.remove_document(client_id, document_id)
        if removed:
            logger.info("Document deleted", client_id=client_id, document_id=document_id)
        return removed

    async def delete_client(self, client_id: str) -> bool:
        """Remove a client's whole knowledge base. Unknown clients are a no-op."""
        removed = await self._store.delete_client(client_id)
        if removed:
            logger.info("Client knowledge base deleted", client_id=client_id)
        return removed

    async def stats(self, client_id: str) -> KnowledgeBaseStats:
        index = await self._store.get_index(client_id)
        if index is None:
            return KnowledgeBaseStats(client_id, 0, 0, None)
        return index.stats()

    async def stats_all(self) -> Dict[str, Any]:
        """Per-client stats, totals and embedding cache statistics."""
        clients = {}
        for client_id in await self._store.client_ids():
            clients[client_id] = (await self.stats(client_id)).to_dict()
        return {
            "clients": clients,
            "total_clients": len(clients),
            "total_documents": sum(c["document_count"] for c in clients.values()),
            "total_chunks": sum(c["chunk_count"] for c in clients.values()),
            "embedding_dimension": self._store.dimension,
            "embedding_cache": self._cache.stats(),
        }

    async def load_all(self) -> int:
        return await self._store.load_all()
