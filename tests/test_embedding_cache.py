"""
Embedding cache tests.
Exact-match lookups on normalized text, LRU bound, typed failures.
"""
import pytest

from assistant.errors import ApiRateLimitedError, EmbeddingUnavailableError
from knowledge.embedding_cache import EmbeddingCache, normalize_text

from tests.conftest import FailingEmbedder, KeywordEmbedder


class TestNormalizeText:
    def test_collapses_whitespace(self):
        assert normalize_text("  refund \n\t policy  ") == "refund policy"

    def test_unicode_nfc(self):
        assert normalize_text("café") == normalize_text("café")

    def test_case_is_kept(self):
        assert normalize_text("Refund") != normalize_text("refund")


class TestEmbeddingCache:
    """Test cache hits, misses and eviction."""

    @pytest.mark.asyncio
    async def test_hit_skips_embedder(self):
        embedder = KeywordEmbedder()
        cache = EmbeddingCache(embedder)

        first = await cache.get("refund policy")
        second = await cache.get("refund   policy ")

        assert first == second
        assert embedder.calls == ["refund policy"]
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1
        assert cache.stats()["hit_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_vectors_are_tuples(self):
        cache = EmbeddingCache(KeywordEmbedder())
        vector = await cache.get("refund")
        assert isinstance(vector, tuple)
        assert vector[0] == 1.0

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        embedder = KeywordEmbedder()
        cache = EmbeddingCache(embedder, max_entries=2)

        await cache.get("a")
        await cache.get("b")
        await cache.get("a")  # b is now least recently used
        await cache.get("c")

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_untyped_failure_becomes_embedding_unavailable(self):
        cache = EmbeddingCache(FailingEmbedder())

        with pytest.raises(EmbeddingUnavailableError) as exc_info:
            await cache.get("refund")

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "refund" not in cache

    @pytest.mark.asyncio
    async def test_typed_failure_passes_through(self):
        cache = EmbeddingCache(FailingEmbedder(ApiRateLimitedError("slow down", retry_after=2.0)))

        with pytest.raises(ApiRateLimitedError) as exc_info:
            await cache.get("refund")
        assert exc_info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_failures_are_not_retried(self):
        embedder = FailingEmbedder()
        cache = EmbeddingCache(embedder)

        with pytest.raises(EmbeddingUnavailableError):
            await cache.get("refund")
        assert embedder.calls == 1

    @pytest.mark.asyncio
    async def test_empty_vector_rejected(self):
        class EmptyEmbedder:
            async def embed(self, text):
                return []

        with pytest.raises(EmbeddingUnavailableError):
            await EmbeddingCache(EmptyEmbedder()).get("refund")

    def test_warm_and_peek(self):
        cache = EmbeddingCache(KeywordEmbedder())

        added = cache.warm({"refund  policy": [1.0, 1.0], "invoice": [0.0, 2.0]})

        assert added == 2
        assert cache.peek("refund policy") == (1.0, 1.0)
        assert cache.warm({"invoice": [9.0, 9.0]}) == 0
        assert cache.peek("invoice") == (0.0, 2.0)
        assert cache.stats()["hits"] == 0

    def test_clear(self):
        cache = EmbeddingCache(KeywordEmbedder())
        cache.warm({"a": [1.0]})
        cache.clear()
        assert len(cache) == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            EmbeddingCache(KeywordEmbedder(), max_entries=0)
