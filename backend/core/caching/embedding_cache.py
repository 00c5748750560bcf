"""
Query Embedding Cache.

FOCUS: Skip the embedding-model call for queries we have already embedded
MUST: Exact match on the normalized query only (semantic matching is the
      response cache's job)
FAILURE MODE: Storage errors are logged and the cache degrades to always
              recomputing - it never raises to the caller
"""

import inspect
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from ..config import settings
from ...monitoring.metrics import MetricsCollector
from .backends import CacheBackend, CacheBackendError, MemoryBackend
from .normalization import QueryNormalizer
from .vectors import decode_vector, encode_vector, stable_hash, to_vector

logger = logging.getLogger(__name__)

ComputeFn = Callable[[str], Union[list[float], Awaitable[list[float]]]]


@dataclass
class QueryEmbeddingRecord:
    """Stored embedding for one normalized query."""
    normalized_query: str
    vector: list[float]
    created_at: str

    def to_json(self) -> str:
        return json.dumps({
            "q_norm": self.normalized_query,
            "vector_b64": encode_vector(self.vector),
            "created_at": self.created_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> "QueryEmbeddingRecord":
        data = json.loads(raw)
        return cls(
            normalized_query=data["q_norm"],
            vector=decode_vector(data["vector_b64"]).tolist(),
            created_at=data.get("created_at", ""),
        )


class EmbeddingCache:
    """
    Exact-match cache: normalized query -> embedding vector.

    Usage:
        cache = EmbeddingCache(backend=RedisBackend(client))
        vector = await cache.get_query_embedding(question, embedder.embed_query)
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl_seconds: Optional[int] = None,
        namespace: Optional[str] = None,
        model_key: Optional[str] = None,
        memory_max: Optional[int] = None,
        normalizer: Optional[QueryNormalizer] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            backend: Storage backend (in-memory LRU if None)
            ttl_seconds: Entry TTL, 0 disables expiry (default 30 days)
            namespace: Key prefix
            model_key: Embedding model identity; isolates keys per model when set
            memory_max: Capacity of the in-memory fallback
            normalizer: Query normalizer (defaults: no stop-word stripping)
            metrics: Metrics collector
        """
        cfg = settings.cache
        self.ttl_seconds = cfg.embedding_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.namespace = namespace or cfg.embedding_cache_namespace
        self.model_key = model_key
        self.normalizer = normalizer or QueryNormalizer()
        self.metrics = metrics or MetricsCollector()

        if backend is None:
            backend = MemoryBackend(max_items=memory_max or cfg.embedding_cache_memory_max)
            logger.warning("Redis not configured; embedding cache is using in-memory LRU")
        self.backend = backend

        self.hits = 0
        self.misses = 0

        logger.info(
            f"EmbeddingCache initialized: backend={self.backend.name}, "
            f"ttl={self.ttl_seconds}s, namespace={self.namespace}"
        )

    @property
    def key_prefix(self) -> str:
        if self.model_key:
            return f"{self.namespace}:{self.model_key}:q:"
        return f"{self.namespace}:q:"

    def key_for_query(self, normalized_query: str) -> str:
        """Short stable key for an already-normalized query."""
        return f"{self.key_prefix}{stable_hash(normalized_query)}"

    async def get_query_embedding(self, query: str, compute_fn: ComputeFn) -> list[float]:
        """
        Return the cached vector for `query`, computing and storing it on a miss.

        Errors raised by `compute_fn` propagate unchanged; cache errors never do.
        """
        q_norm = self.normalizer.normalize(query)
        key = self.key_for_query(q_norm)

        cached = await self._read(key)
        if cached is not None:
            self.hits += 1
            self.metrics.record_cache("embedding", hit=True)
            logger.debug(
                f"EmbeddingCache HIT key={key}",
                extra={"extra_data": {"key": key, "created_at": cached.created_at}},
            )
            return cached.vector

        self.misses += 1
        self.metrics.record_cache("embedding", hit=False)
        logger.debug(f"EmbeddingCache MISS key={key}")

        result = compute_fn(query)
        if inspect.isawaitable(result):
            result = await result
        vector = to_vector(result).tolist()

        if not vector:
            logger.warning(f"Embedding function returned an empty vector; not caching key={key}")
            return vector

        record = QueryEmbeddingRecord(
            normalized_query=q_norm,
            vector=vector,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        await self._write(key, record)
        return vector

    async def _read(self, key: str) -> Optional[QueryEmbeddingRecord]:
        try:
            raw = await self.backend.get(key)
        except CacheBackendError as e:
            self.metrics.record_backend_error("embedding", "get")
            logger.warning(f"EmbeddingCache get failed: {e}")
            return None

        if raw is None:
            return None

        try:
            return QueryEmbeddingRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"EmbeddingCache dropping corrupt entry key={key}: {e}")
            await self._delete(key)
            return None

    async def _write(self, key: str, record: QueryEmbeddingRecord) -> None:
        try:
            await self.backend.set(key, record.to_json(), ttl_seconds=self.ttl_seconds)
            logger.debug(f"EmbeddingCache SET key={key} ttl={self.ttl_seconds}s")
        except CacheBackendError as e:
            self.metrics.record_backend_error("embedding", "set")
            logger.warning(f"EmbeddingCache set failed: {e}")

    async def _delete(self, key: str) -> bool:
        try:
            return await self.backend.delete(key) > 0
        except CacheBackendError as e:
            self.metrics.record_backend_error("embedding", "delete")
            logger.warning(f"EmbeddingCache delete failed: {e}")
            return False

    async def invalidate(self, query: str) -> bool:
        """Forget the cached embedding for one query."""
        key = self.key_for_query(self.normalizer.normalize(query))
        removed = await self._delete(key)
        if removed:
            logger.info(f"Invalidated embedding for key={key}")
        return removed

    async def clear(self) -> int:
        """Remove every entry under this cache's prefix and reset counters."""
        try:
            removed = await self.backend.delete_prefix(self.key_prefix)
        except CacheBackendError as e:
            self.metrics.record_backend_error("embedding", "clear")
            logger.warning(f"EmbeddingCache clear failed: {e}")
            removed = 0
        self.hits = 0
        self.misses = 0
        logger.info(f"EmbeddingCache cleared ({removed} entries removed)")
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
            "items": self.backend.count(self.key_prefix),
        }
