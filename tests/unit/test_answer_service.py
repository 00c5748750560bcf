"""Tests for the chat-path cache orchestration."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.core.caching.answer_service import CachedAnswerService, CacheLookup
from backend.core.caching.backends import CacheBackendError, MemoryBackend
from backend.core.caching.embedding_cache import EmbeddingCache
from backend.core.caching.response_cache import ResponseCache


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def embed_fn():
    """Every question about the loan cap maps to the same direction."""
    def embed(text: str) -> list[float]:
        if "loan" in text.lower():
            return [1.0, 0.0, 0.0, 0.0]
        return [0.0, 1.0, 0.0, 0.0]
    return MagicMock(side_effect=embed)


@pytest.fixture
def service():
    backend = MemoryBackend(max_items=100)
    return CachedAnswerService(
        EmbeddingCache(backend=backend, model_key="test-model"),
        ResponseCache(backend=backend, model_key="test-model", namespace="resp:test"),
    )


async def answer_and_store(service, question, embed_fn, language="en", confidence=0.9):
    lookup = await service.lookup(question, embed_fn, language=language)
    await service.store(
        lookup,
        answer_text="Loan cap is ₹15 lakh",
        sources=["doc1"],
        relevant_links=["https://example.org/scheme"],
        confidence=confidence,
        language=language,
    )
    return lookup


# ============================================================================
# Tests
# ============================================================================


class TestLookup:
    """Test lookup()."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, service, embed_fn):
        first = await answer_and_store(service, "What is the loan cap?", embed_fn)
        assert first.hit is False
        assert first.eligible is True
        assert first.vector == [1.0, 0.0, 0.0, 0.0]

        second = await service.lookup("what is the LOAN cap", embed_fn, language="en")
        assert second.hit is True
        assert second.answer_text == "Loan cap is ₹15 lakh"

    @pytest.mark.asyncio
    async def test_embedding_reused(self, service, embed_fn):
        await service.lookup("What is the loan cap?", embed_fn, language="en")
        await service.lookup("what is the loan cap", embed_fn, language="en")
        assert embed_fn.call_count == 1

    @pytest.mark.asyncio
    async def test_history_skips_cache(self, service, embed_fn):
        await answer_and_store(service, "What is the loan cap?", embed_fn)
        embed_fn.reset_mock()

        lookup = await service.lookup(
            "What is the loan cap?",
            embed_fn,
            language="en",
            history=[{"role": "user", "content": "hi"}],
        )

        assert lookup.hit is False
        assert lookup.eligible is False
        assert lookup.skip_reason == "history"
        embed_fn.assert_not_called()

    @pytest.mark.asyncio
    async def test_language_mismatch_not_served(self, service, embed_fn):
        await answer_and_store(service, "What is the loan cap?", embed_fn, language="en")

        lookup = await service.lookup("What is the loan cap?", embed_fn, language="hi")

        assert lookup.hit is False
        assert lookup.skip_reason == "language"
        assert lookup.result.similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_disabled(self, embed_fn):
        lookup = await CachedAnswerService().lookup("q", embed_fn)
        assert lookup.eligible is False
        assert lookup.skip_reason == "disabled"

    @pytest.mark.asyncio
    async def test_embedder_error_propagates(self, service):
        embed = MagicMock(side_effect=RuntimeError("embedder down"))
        with pytest.raises(RuntimeError):
            await service.lookup("q", embed, language="en")

    @pytest.mark.asyncio
    async def test_embedding_storage_failure_still_eligible(self, embed_fn):
        """A broken embedding store recomputes the vector and the lookup goes on."""
        broken = MemoryBackend(max_items=10)
        broken.get = AsyncMock(side_effect=CacheBackendError("down"))
        broken.set = AsyncMock(side_effect=CacheBackendError("down"))
        service = CachedAnswerService(
            EmbeddingCache(backend=broken, model_key="test-model"),
            ResponseCache(backend=MemoryBackend(max_items=10), model_key="test-model"),
        )

        lookup = await service.lookup("What is the loan cap?", embed_fn, language="en")

        assert lookup.eligible is True
        assert lookup.skip_reason is None
        assert lookup.vector == [1.0, 0.0, 0.0, 0.0]
        embed_fn.assert_called_once()

    @pytest.mark.asyncio
    async def test_to_dict(self, service, embed_fn):
        await answer_and_store(service, "What is the loan cap?", embed_fn)
        lookup = await service.lookup("What is the loan cap?", embed_fn, language="en")
        data = lookup.to_dict()
        assert data["hit"] is True
        assert data["item"]["response_text"] == "Loan cap is ₹15 lakh"
        assert data["hit_count"] == 1


class TestStore:
    """Test store()."""

    @pytest.mark.asyncio
    async def test_metadata_written(self, service, embed_fn):
        lookup = await answer_and_store(service, "What is the loan cap?", embed_fn, language="hi")
        hit = await service.lookup("What is the loan cap?", embed_fn, language="hi")

        meta = hit.result.item.metadata
        assert meta.language == "hi"
        assert meta.sources == ["doc1"]
        assert meta.relevant_links == ["https://example.org/scheme"]
        assert "cached_at" in meta.extra
        assert hit.result.item.question == lookup.question

    @pytest.mark.asyncio
    async def test_low_quality_not_stored(self, service, embed_fn):
        lookup = await service.lookup("What is the loan cap?", embed_fn, language="en")
        record_id = await service.store(lookup, "answer", sources=[], confidence=0.9, language="en")
        assert record_id is None

        again = await service.lookup("What is the loan cap?", embed_fn, language="en")
        assert again.hit is False

    @pytest.mark.asyncio
    async def test_ineligible_lookup_not_stored(self, service, embed_fn):
        lookup = CacheLookup("q", "en", eligible=False, skip_reason="history")
        service.response_cache.put = AsyncMock()
        assert await service.store(lookup, "answer", ["doc1"], confidence=0.9) is None
        service.response_cache.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hit_not_restored(self, service, embed_fn):
        await answer_and_store(service, "What is the loan cap?", embed_fn)
        hit = await service.lookup("What is the loan cap?", embed_fn, language="en")
        service.response_cache.put = AsyncMock()
        assert await service.store(hit, "answer", ["doc1"], confidence=0.9) is None
        service.response_cache.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_language_defaults_to_lookup(self, service, embed_fn):
        lookup = await service.lookup("What is the loan cap?", embed_fn, language="pa")
        await service.store(lookup, "answer", ["doc1"], confidence=0.9)
        hit = await service.lookup("What is the loan cap?", embed_fn, language="pa")
        assert hit.hit is True
