"""
Metrics Collection using Prometheus.

FOCUS: Cache effectiveness + cache health
MUST: Hit rate per cache, lookup latency, rejected writes
TARGET: Response cache hit rate >30%, lookup P99 <20ms
"""

from prometheus_client import Counter, Histogram


# Request metrics
REQUESTS_TOTAL = Counter(
    "answer_cache_requests_total",
    "Total HTTP requests",
    ["endpoint", "status"],
)

# Cache metrics
CACHE_HITS = Counter(
    "answer_cache_hits_total",
    "Cache hits",
    ["cache_type"],  # response, embedding
)

CACHE_MISSES = Counter(
    "answer_cache_misses_total",
    "Cache misses",
    ["cache_type"],
)

LOOKUP_LATENCY = Histogram(
    "answer_cache_lookup_latency_seconds",
    "Response cache lookup latency",
    ["backend"],
    buckets=[0.001, 0.0025, 0.005, 0.01, 0.02, 0.05, 0.1, 0.5],
)

BEST_SIMILARITY = Histogram(
    "answer_cache_best_similarity",
    "Best cosine similarity seen per lookup",
    buckets=[0.5, 0.7, 0.8, 0.85, 0.9, 0.92, 0.95, 0.98, 1.0],
)

PUT_REJECTED = Counter(
    "answer_cache_put_rejected_total",
    "Writes skipped by the quality gate",
    ["reason"],  # vector, response_text, sources, confidence
)

STALE_REMOVED = Counter(
    "answer_cache_stale_ids_removed_total",
    "Stale candidate ids removed during reads",
)

BACKEND_ERRORS = Counter(
    "answer_cache_backend_errors_total",
    "Storage backend failures",
    ["cache_type", "operation"],
)


class MetricsCollector:
    """
    Simple wrapper for recording metrics.

    Usage:
        metrics = MetricsCollector()

        metrics.record_cache("response", hit=True)
        metrics.record_lookup(latency=0.004, backend="redis", similarity=0.97)
    """

    def record_request(self, endpoint: str, status: str = "success"):
        """Record request count."""
        REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()

    def record_cache(self, cache_type: str, hit: bool):
        """Record cache hit/miss."""
        if hit:
            CACHE_HITS.labels(cache_type=cache_type).inc()
        else:
            CACHE_MISSES.labels(cache_type=cache_type).inc()

    def record_lookup(self, latency: float, backend: str, similarity: float = 0.0):
        """Record a similarity lookup."""
        LOOKUP_LATENCY.labels(backend=backend).observe(latency)
        if similarity > 0:
            BEST_SIMILARITY.observe(similarity)

    def record_rejection(self, reasons: list[str]):
        """Record quality-gate rejections."""
        for reason in reasons:
            PUT_REJECTED.labels(reason=reason).inc()

    def record_stale(self, count: int):
        """Record stale ids removed by read-time cleanup."""
        if count:
            STALE_REMOVED.inc(count)

    def record_backend_error(self, cache_type: str, operation: str):
        """Record a storage backend failure."""
        BACKEND_ERRORS.labels(cache_type=cache_type, operation=operation).inc()
