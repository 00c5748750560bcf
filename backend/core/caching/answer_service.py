"""
Cached Answer Service.

FOCUS: The chat path's single entry point to both caches
MUST: Never serve or store context-dependent answers (session has history)
MUST: Serve a cached answer only in the language it was generated in
FAILURE MODE: Any cache-layer failure degrades to "generate fresh"
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from .embedding_cache import ComputeFn, EmbeddingCache
from .response_cache import CachePayload, AnswerMetadata, ResponseCache, SimilarResult

logger = logging.getLogger(__name__)


@dataclass
class CacheLookup:
    """Outcome of a chat-path cache check; pass it back to store() after generating."""
    question: str
    language: Optional[str]
    eligible: bool
    vector: Optional[list[float]] = None
    result: Optional[SimilarResult] = None
    skip_reason: Optional[str] = None

    @property
    def hit(self) -> bool:
        return self.result is not None and self.result.hit

    @property
    def answer_text(self) -> Optional[str]:
        if not self.hit:
            return None
        return self.result.item.answer_text

    def to_dict(self) -> dict[str, Any]:
        data = {
            "hit": self.hit,
            "eligible": self.eligible,
            "skip_reason": self.skip_reason,
            "similarity": self.result.similarity if self.result else 0.0,
        }
        if self.hit:
            data["item"] = self.result.item.to_public_dict()
            data["hit_count"] = self.result.hit_count
        return data


class CachedAnswerService:
    """
    Wraps EmbeddingCache + ResponseCache the way the chat route uses them.

    Usage:
        service = CachedAnswerService(embedding_cache, response_cache)

        lookup = await service.lookup(question, embedder.embed_query, language="en", history=history)
        if lookup.hit:
            return lookup.answer_text

        answer = await generate(question, query_vector=lookup.vector)
        await service.store(lookup, answer.text, answer.sources, answer.links, answer.confidence, "en")
    """

    def __init__(
        self,
        embedding_cache: Optional[EmbeddingCache] = None,
        response_cache: Optional[ResponseCache] = None,
    ):
        self.embedding_cache = embedding_cache
        self.response_cache = response_cache

    @property
    def enabled(self) -> bool:
        return self.embedding_cache is not None and self.response_cache is not None

    async def lookup(
        self,
        question: str,
        embed_fn: ComputeFn,
        language: Optional[str] = None,
        history: Optional[list[dict]] = None,
    ) -> CacheLookup:
        """Embed (through the embedding cache) and probe the response cache."""
        if not self.enabled:
            return CacheLookup(question, language, eligible=False, skip_reason="disabled")

        if history:
            logger.info(f"Skipping response cache: session has {len(history)} history messages")
            return CacheLookup(question, language, eligible=False, skip_reason="history")

        # embedder failures propagate; storage failures already degrade to a recompute
        vector = await self.embedding_cache.get_query_embedding(question, embed_fn)

        result = await self.response_cache.get_similar(vector)
        lookup = CacheLookup(question, language, eligible=True, vector=vector)

        if not result.hit:
            lookup.result = result
            return lookup

        cached_language = result.item.metadata.language
        if cached_language != language:
            logger.info(
                f"Cache hit skipped: language mismatch (cached={cached_language}, requested={language})"
            )
            lookup.result = SimilarResult(
                hit=False,
                similarity=result.similarity,
                candidates=result.candidates,
                latency_ms=result.latency_ms,
            )
            lookup.skip_reason = "language"
            return lookup

        logger.info(
            f"Serving cached answer sim={result.similarity:.4f} language={language}",
            extra={"extra_data": {"id": result.item.id, "similarity": result.similarity}},
        )
        lookup.result = result
        return lookup

    async def store(
        self,
        lookup: CacheLookup,
        answer_text: str,
        sources: list[Any],
        relevant_links: Optional[list[Any]] = None,
        confidence: Optional[float] = None,
        language: Optional[str] = None,
    ) -> Optional[str]:
        """Cache a freshly generated answer for an eligible lookup. Returns the record id or None."""
        if not self.enabled or not lookup.eligible or lookup.hit or not lookup.vector:
            return None

        payload = CachePayload(
            response_text=answer_text or "",
            question=lookup.question,
            metadata=AnswerMetadata(
                sources=list(sources or []),
                relevant_links=list(relevant_links or []),
                confidence=confidence,
                language=language if language is not None else lookup.language,
                extra={"cached_at": datetime.now(timezone.utc).isoformat()},
            ),
        )
        record_id = await self.response_cache.put(lookup.vector, payload)
        if record_id:
            logger.info(f"Cached answer id={record_id} language={payload.metadata.language}")
        return record_id
