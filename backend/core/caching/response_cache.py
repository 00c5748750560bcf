"""
Semantic Response Cache for the RAG Pipeline.

Recognises when a question is approximately the same as one already answered
and returns the stored answer without retrieval or generation.

Lookup path:
1. Random-hyperplane signature of the query vector
2. Probe every bucket within the Hamming radius (multi-probe LSH)
3. Exact cosine re-rank of at most max_candidates records
4. Hit only if best similarity >= threshold AND the record is still usable

Write path is quality-gated: only answers with text, cited sources and a
positive confidence are stored. Bad answers must never poison later requests.

Consistency: a record and its bucket membership are written and removed
together. Memory backend: eviction listener unlinks synchronously. Redis:
stale ids are repaired lazily on the read path (eventually consistent).
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Mapping, Optional

import numpy as np

from ..config import settings
from ...monitoring.metrics import MetricsCollector
from .backends import CacheBackend, CacheBackendError, MemoryBackend
from .lsh import RandomHyperplaneLSH
from .vectors import (
    VectorLike,
    cosine_similarity,
    decode_vector,
    encode_vector,
    stable_hash,
    to_vector,
)

logger = logging.getLogger(__name__)


def _finite_number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _as_list(value) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


@dataclass
class AnswerMetadata:
    """Provenance and quality signals attached to a cached answer."""
    sources: list[Any] = field(default_factory=list)
    relevant_links: list[Any] = field(default_factory=list)
    confidence: Optional[float] = None
    language: Optional[str] = None
    success: Optional[bool] = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({
        "sources", "relevant_links", "relevantLinks", "confidence", "language", "success",
    })

    @classmethod
    def from_dict(cls, data) -> "AnswerMetadata":
        """Lenient coercion: wrong-typed fields become empty so the gate rejects them."""
        if not isinstance(data, Mapping):
            return cls()
        links = data.get("relevant_links", data.get("relevantLinks"))
        success = data.get("success")
        language = data.get("language")
        return cls(
            sources=_as_list(data.get("sources")),
            relevant_links=_as_list(links),
            confidence=_finite_number(data.get("confidence")),
            language=language if isinstance(language, str) else None,
            success=success if isinstance(success, bool) else None,
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "sources": list(self.sources),
            "relevant_links": list(self.relevant_links),
            "confidence": self.confidence,
            "language": self.language,
            "success": self.success,
        })
        return data


@dataclass
class CachePayload:
    """What the caller hands to put(): a freshly generated answer."""
    response_text: str
    metadata: AnswerMetadata = field(default_factory=AnswerMetadata)
    question: Optional[str] = None

    @classmethod
    def from_dict(cls, data) -> "CachePayload":
        if not isinstance(data, Mapping):
            return cls(response_text="")
        text = data.get("response_text", data.get("responseText"))
        question = data.get("question")
        metadata = data.get("metadata")
        return cls(
            response_text=text if isinstance(text, str) else "",
            metadata=metadata if isinstance(metadata, AnswerMetadata) else AnswerMetadata.from_dict(metadata),
            question=question if isinstance(question, str) else None,
        )


@dataclass
class CacheRecord:
    """Stored answer entry."""
    id: str
    model_key: str
    dim: int
    vector: list[float]
    answer_text: str
    metadata: AnswerMetadata
    created_at: str
    ttl_seconds: int
    bucket_key: Optional[str] = None
    question: Optional[str] = None

    def vector_array(self) -> np.ndarray:
        return to_vector(self.vector)

    def to_json(self) -> str:
        return json.dumps({
            "id": self.id,
            "model_key": self.model_key,
            "dim": self.dim,
            "vector_b64": encode_vector(self.vector),
            "response_text": self.answer_text,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
            "ttl_seconds": self.ttl_seconds,
            "bucket_key": self.bucket_key,
            "question": self.question,
        })

    @classmethod
    def from_json(cls, raw: str) -> "CacheRecord":
        """Strict decode; raises ValueError / KeyError / TypeError on corrupt data."""
        data = json.loads(raw)
        vector = decode_vector(data["vector_b64"])
        dim = int(data["dim"])
        if vector.size != dim:
            raise ValueError(f"vector length {vector.size} does not match dim {dim}")
        text = data["response_text"]
        if not isinstance(text, str):
            raise TypeError("response_text must be a string")
        return cls(
            id=str(data["id"]),
            model_key=str(data["model_key"]),
            dim=dim,
            vector=vector.tolist(),
            answer_text=text,
            metadata=AnswerMetadata.from_dict(data.get("metadata")),
            created_at=str(data.get("created_at", "")),
            ttl_seconds=int(data.get("ttl_seconds", 0)),
            bucket_key=data.get("bucket_key"),
            question=data.get("question"),
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Record without its vector, for API responses."""
        return {
            "id": self.id,
            "model_key": self.model_key,
            "dim": self.dim,
            "response_text": self.answer_text,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
            "ttl_seconds": self.ttl_seconds,
            "question": self.question,
        }


@dataclass
class SimilarResult:
    """Result from a similarity lookup."""
    hit: bool
    similarity: float = 0.0
    item: Optional[CacheRecord] = None
    candidates: int = 0
    hit_count: Optional[int] = None
    latency_ms: float = 0.0


def is_usable(record: Optional[CacheRecord]) -> bool:
    """
    A record may be served only with non-empty text, at least one source,
    a finite confidence > 0, and success not explicitly False.
    """
    if record is None:
        return False
    if not record.answer_text.strip():
        return False
    meta = record.metadata
    if not meta.sources:
        return False
    confidence = _finite_number(meta.confidence)
    if confidence is None or confidence <= 0:
        return False
    if meta.success is False:
        return False
    return True


def quality_issues(vector: np.ndarray, payload: CachePayload) -> list[str]:
    """Names of the quality-gate checks the payload fails (empty = cacheable)."""
    reasons = []
    if vector.size == 0 or not np.all(np.isfinite(vector)):
        reasons.append("vector")
    if not payload.response_text.strip():
        reasons.append("response_text")
    if not payload.metadata.sources:
        reasons.append("sources")
    confidence = _finite_number(payload.metadata.confidence)
    if confidence is None or confidence <= 0:
        reasons.append("confidence")
    return reasons


class ResponseCache:
    """
    LSH-indexed semantic answer cache.

    Usage:
        cache = ResponseCache(backend=RedisBackend(client), model_key=model_id)

        result = await cache.get_similar(vector)
        if result.hit:
            return result.item.answer_text

        answer = await generate(question)
        await cache.put(vector, {"response_text": answer.text, "metadata": {...}})
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        lsh: Optional[RandomHyperplaneLSH] = None,
        ttl_seconds: Optional[int] = None,
        namespace: Optional[str] = None,
        model_key: Optional[str] = None,
        lsh_bits: Optional[int] = None,
        threshold: Optional[float] = None,
        hamming_radius: Optional[int] = None,
        max_radius: Optional[int] = None,
        max_candidates: Optional[int] = None,
        max_bucket_size: Optional[int] = None,
        memory_max_items: Optional[int] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            backend: Storage backend (in-memory LRU if None)
            lsh: Pre-built index; must match namespace/model_key/bits if given
            ttl_seconds: Record TTL, 0 disables expiry (default 7 days)
            namespace: Key prefix, also the hyperplane seed
            model_key: Embedding model identity; isolates buckets per model
            lsh_bits: Signature width
            threshold: Cosine similarity needed for a hit
            hamming_radius: Default probe radius
            max_radius: Hard cap on probe radius
            max_candidates: Cap on records re-ranked per lookup
            max_bucket_size: Cap on ids per bucket
            memory_max_items: Capacity of the in-memory fallback
            metrics: Metrics collector
        """
        cfg = settings.cache
        self.namespace = namespace or cfg.response_cache_namespace
        self.ttl_seconds = cfg.response_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.model_key = model_key or settings.get_embedding_model_id()
        self.threshold = cfg.response_cache_sim_threshold if threshold is None else threshold
        self.hamming_radius = cfg.response_cache_lsh_radius if hamming_radius is None else hamming_radius
        self.max_candidates = max_candidates or cfg.response_cache_max_candidates
        self.max_bucket_size = max_bucket_size or cfg.response_cache_max_bucket_size
        self.metrics = metrics or MetricsCollector()

        if lsh is None:
            lsh = RandomHyperplaneLSH(
                bits=lsh_bits or cfg.response_cache_lsh_bits,
                seed=self.namespace,
                model_key=self.model_key,
                max_radius=cfg.response_cache_max_radius if max_radius is None else max_radius,
            )
        self.lsh = lsh
        self.bits = lsh.bits

        if backend is None:
            backend = MemoryBackend(max_items=memory_max_items or cfg.response_cache_memory_max_items)
            logger.warning("Redis not configured; response cache is using in-memory LRU")
        self.backend = backend
        if isinstance(backend, MemoryBackend):
            backend.add_eviction_listener(self._on_evicted)

        self.hits = 0
        self.misses = 0

        logger.info(
            f"ResponseCache initialized: backend={self.backend.name}, ttl={self.ttl_seconds}s, "
            f"bits={self.bits}, radius={self.hamming_radius}, threshold={self.threshold}, "
            f"model_key={self.model_key}"
        )

    # =========================================================================
    # Keys
    # =========================================================================

    @property
    def item_prefix(self) -> str:
        return f"{self.namespace}:item:"

    def item_key(self, record_id: str) -> str:
        return f"{self.item_prefix}{record_id}"

    def bucket_key(self, sig: int) -> str:
        """Bucket keys are isolated per namespace, model and bit-width."""
        return f"{self.namespace}:b:{self.model_key}:{self.bits}:{sig:x}"

    def hit_count_key(self, record_id: str) -> str:
        return f"{self.namespace}:hits:{record_id}"

    def make_id(self, vector: VectorLike, response_text: str) -> str:
        """Content-derived id: same (vector, answer) always collapses to one record."""
        return stable_hash(f"{encode_vector(vector)}:{response_text}")

    # =========================================================================
    # Write path
    # =========================================================================

    async def put(self, vector: VectorLike, payload) -> Optional[str]:
        """
        Quality-gate, store and index an answer.

        Returns:
            The record id, or None when the payload was rejected or the
            write failed (never raises for either)
        """
        try:
            vec = to_vector(vector)
        except (TypeError, ValueError):
            vec = np.zeros(0, dtype=np.float32)

        if not isinstance(payload, CachePayload):
            payload = CachePayload.from_dict(payload)

        reasons = quality_issues(vec, payload)
        if reasons:
            self.metrics.record_rejection(reasons)
            logger.info(
                f"ResponseCache skip put (payload not eligible: {', '.join(reasons)})",
                extra={"extra_data": {"reasons": reasons}},
            )
            return None

        response_text = payload.response_text.strip()
        record_id = self.make_id(vec, response_text)
        bkey = self.bucket_key(self.lsh.signature(vec))

        record = CacheRecord(
            id=record_id,
            model_key=self.model_key,
            dim=int(vec.size),
            vector=vec.tolist(),
            answer_text=response_text,
            metadata=replace(
                payload.metadata,
                sources=list(payload.metadata.sources),
                relevant_links=list(payload.metadata.relevant_links),
                confidence=_finite_number(payload.metadata.confidence),
                success=True,
            ),
            created_at=datetime.now(timezone.utc).isoformat(),
            ttl_seconds=self.ttl_seconds,
            bucket_key=bkey,
            question=payload.question,
        )

        item_key = self.item_key(record_id)
        try:
            existed = await self.backend.get(item_key) is not None
            await self.backend.set(item_key, record.to_json(), ttl_seconds=self.ttl_seconds)
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "put")
            logger.warning(f"ResponseCache put failed: {e}")
            return None

        await self._make_room(bkey, record_id)

        try:
            await self.backend.sadd(bkey, record_id, ttl_seconds=self.ttl_seconds)
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "index")
            if existed:
                # an earlier put already indexed this id
                logger.warning(f"ResponseCache bucket add failed, keeping existing record id={record_id}: {e}")
            else:
                logger.warning(f"ResponseCache bucket add failed, rolling back record: {e}")
                await self._delete_records([record_id])
            return None

        logger.info(
            f"ResponseCache SET backend={self.backend.name} id={record_id} bucket={bkey}",
            extra={"extra_data": {"id": record_id, "bucket": bkey}},
        )
        return record_id

    async def _make_room(self, bkey: str, fresh_id: str) -> None:
        """Randomly evict members so the bucket stays within max_bucket_size after the add."""
        try:
            size = await self.backend.scard(bkey)
            if size < self.max_bucket_size:
                return
            evicted = await self.backend.spop(bkey, size - self.max_bucket_size + 1)
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "bucket_cap")
            logger.debug(f"ResponseCache bucket cap check failed: {e}")
            return

        # a re-put may pop its own id; the add that follows restores it
        evicted = [i for i in evicted if i != fresh_id]
        if evicted:
            logger.debug(f"ResponseCache bucket {bkey} at cap; evicting {len(evicted)} records")
            await self._delete_records(evicted)

    async def _delete_records(self, record_ids: list[str]) -> None:
        if not record_ids:
            return
        try:
            await self.backend.delete(*(self.item_key(i) for i in record_ids))
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "delete")
            logger.warning(f"ResponseCache record delete failed: {e}")

    # =========================================================================
    # Read path
    # =========================================================================

    async def get_similar(
        self,
        vector: VectorLike,
        radius: Optional[int] = None,
        threshold: Optional[float] = None,
        max_candidates: Optional[int] = None,
        track: bool = True,
    ) -> SimilarResult:
        """
        Find the most similar usable cached answer.

        Never raises for backend failures; they surface as a miss.
        On a miss, `similarity` still reports the best score seen.
        With track=False no stats or hit counters move (admin inspection).
        """
        start = time.perf_counter()
        radius = self.hamming_radius if radius is None else radius
        threshold = self.threshold if threshold is None else threshold
        max_candidates = self.max_candidates if max_candidates is None else max_candidates

        try:
            vec = to_vector(vector)
        except (TypeError, ValueError):
            vec = np.zeros(0, dtype=np.float32)
        if vec.size == 0:
            return self._miss(start, best_similarity=0.0, candidates=0, track=track)

        bucket_keys = [self.bucket_key(code) for code in self.lsh.neighbors(self.lsh.signature(vec), radius)]

        try:
            candidate_ids = await self.backend.sunion(bucket_keys)
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "sunion")
            logger.warning(f"ResponseCache candidate fetch failed: {e}")
            return self._miss(start, best_similarity=0.0, candidates=0, track=track)

        ids = candidate_ids[:max_candidates]
        if not ids:
            return self._miss(start, best_similarity=0.0, candidates=0, track=track)

        try:
            raws = await self.backend.mget([self.item_key(i) for i in ids])
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "mget")
            logger.warning(f"ResponseCache record fetch failed: {e}")
            return self._miss(start, best_similarity=0.0, candidates=len(ids), track=track)

        best: Optional[CacheRecord] = None
        best_similarity = 0.0
        stale: list[str] = []
        corrupt: list[str] = []

        for candidate_id, raw in zip(ids, raws):
            if raw is None:
                stale.append(candidate_id)
                continue
            try:
                record = CacheRecord.from_json(raw)
            except (ValueError, KeyError, TypeError) as e:
                logger.debug(f"ResponseCache corrupt record id={candidate_id}: {e}")
                stale.append(candidate_id)
                corrupt.append(candidate_id)
                continue
            if not is_usable(record):
                stale.append(candidate_id)
                corrupt.append(candidate_id)
                continue
            if record.model_key != self.model_key or record.dim != vec.size:
                continue

            sim = cosine_similarity(vec, record.vector_array())
            # strict > keeps the first of equal scores
            if best is None or sim > best_similarity:
                best = record
                best_similarity = sim

        if stale:
            await self._repair(bucket_keys, stale, corrupt)

        if best is not None and best_similarity >= threshold and is_usable(best):
            hit_count = None
            if track:
                self.hits += 1
                hit_count = await self._bump_hit_count(best.id)
            latency = time.perf_counter() - start
            if track:
                self.metrics.record_cache("response", hit=True)
                self.metrics.record_lookup(latency, self.backend.name, best_similarity)
            logger.info(
                f"ResponseCache HIT backend={self.backend.name} id={best.id} sim={best_similarity:.4f}",
                extra={"extra_data": {"id": best.id, "similarity": best_similarity}},
            )
            return SimilarResult(
                hit=True,
                similarity=best_similarity,
                item=best,
                candidates=len(ids),
                hit_count=hit_count,
                latency_ms=latency * 1000,
            )

        return self._miss(start, best_similarity=best_similarity, candidates=len(ids), track=track)

    def _miss(
        self, start: float, best_similarity: float, candidates: int, track: bool = True
    ) -> SimilarResult:
        latency = time.perf_counter() - start
        if track:
            self.misses += 1
            self.metrics.record_cache("response", hit=False)
            self.metrics.record_lookup(latency, self.backend.name, best_similarity)
        logger.debug(
            f"ResponseCache MISS backend={self.backend.name} candidates={candidates} "
            f"best_sim={best_similarity:.4f}"
        )
        return SimilarResult(
            hit=False,
            similarity=best_similarity,
            item=None,
            candidates=candidates,
            latency_ms=latency * 1000,
        )

    async def _repair(self, bucket_keys: list[str], stale: list[str], corrupt: list[str]) -> None:
        """
        Best-effort removal of stale ids from every probed bucket.

        Correctness does not depend on this succeeding: a stale id can only
        ever produce a miss.
        """
        if corrupt:
            await self._delete_records(corrupt)

        results = await asyncio.gather(
            *(self.backend.srem(bkey, *stale) for bkey in bucket_keys),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, CacheBackendError):
                raise failure
        if failures:
            self.metrics.record_backend_error("response", "cleanup")
            logger.debug(f"ResponseCache stale cleanup partially failed: {failures[0]}")

        self.metrics.record_stale(len(stale))
        logger.debug(f"ResponseCache removed {len(stale)} stale ids from {len(bucket_keys)} buckets")

    async def _bump_hit_count(self, record_id: str) -> Optional[int]:
        try:
            return await self.backend.incr(self.hit_count_key(record_id), ttl_seconds=self.ttl_seconds)
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "incr")
            logger.debug(f"ResponseCache hit counter failed: {e}")
            return None

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _on_evicted(self, key: str, value: Any) -> None:
        """Memory backend listener: unlink an evicted record from its bucket."""
        if not key.startswith(self.item_prefix) or not isinstance(value, str):
            return
        record_id = key[len(self.item_prefix):]
        try:
            data = json.loads(value)
            bkey = data.get("bucket_key")
            if not bkey:
                bkey = self.bucket_key(self.lsh.signature(decode_vector(data["vector_b64"])))
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"ResponseCache cannot resolve bucket for evicted id={record_id}: {e}")
            return
        self.backend.discard(bkey, record_id)

    async def clear(self) -> int:
        """Remove every record, bucket and counter in this namespace; reset stats."""
        try:
            removed = await self.backend.delete_prefix(f"{self.namespace}:")
        except CacheBackendError as e:
            self.metrics.record_backend_error("response", "clear")
            logger.warning(f"ResponseCache clear failed: {e}")
            removed = 0
        self.hits = 0
        self.misses = 0
        logger.info(f"ResponseCache cleared ({removed} keys removed)")
        return removed

    def get_stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "backend": self.backend.name,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total > 0 else 0,
            "namespace": self.namespace,
            "lsh_bits": self.bits,
            "hamming_radius": self.hamming_radius,
            "threshold": self.threshold,
            "model_key": self.model_key,
            "items": self.backend.count(self.item_prefix),
        }
