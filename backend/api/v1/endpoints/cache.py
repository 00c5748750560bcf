"""
Cache Admin Endpoints.

FOCUS: Observe hit rates, drop poisoned or outdated answers after re-ingestion
MUST: Clearing is admin-only
"""

import logging
from enum import Enum
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from backend.api.v1.dependencies import AdminKey, EmbeddingCacheDep, ResponseCacheDep

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class ClearTarget(str, Enum):
    ALL = "all"
    RESPONSE = "response"
    EMBEDDING = "embedding"


class CacheStatsResponse(BaseModel):
    """Counters and configuration for both caches."""
    embedding_cache: dict
    response_cache: dict


class CacheLookupRequest(BaseModel):
    """Probe the response cache with a precomputed query embedding."""
    vector: list[float] = Field(..., min_length=1)
    threshold: Optional[float] = Field(default=None, gt=0, le=1)
    radius: Optional[int] = Field(default=None, ge=0)


class CacheLookupResponse(BaseModel):
    hit: bool
    similarity: float
    candidates: int
    latency_ms: float
    hit_count: Optional[int] = None
    item: Optional[dict] = None


class CacheClearResponse(BaseModel):
    """Keys removed per cache."""
    target: ClearTarget
    removed: dict[str, int] = Field(default_factory=dict)


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/stats", response_model=CacheStatsResponse)
async def get_cache_stats(
    embedding_cache: EmbeddingCacheDep,
    response_cache: ResponseCacheDep,
):
    return CacheStatsResponse(
        embedding_cache=embedding_cache.get_stats(),
        response_cache=response_cache.get_stats(),
    )


@router.post("/clear", response_model=CacheClearResponse)
async def clear_cache(
    embedding_cache: EmbeddingCacheDep,
    response_cache: ResponseCacheDep,
    _admin: AdminKey,
    target: ClearTarget = ClearTarget.ALL,
):
    """
    Remove cached answers and/or embeddings.

    Run after re-ingesting documents so answers built on old sources are
    not served again.
    """
    removed = {}
    if target in (ClearTarget.ALL, ClearTarget.RESPONSE):
        removed["response_cache"] = await response_cache.clear()
    if target in (ClearTarget.ALL, ClearTarget.EMBEDDING):
        removed["embedding_cache"] = await embedding_cache.clear()

    logger.info(
        f"Cache cleared: target={target.value}",
        extra={"extra_data": {"target": target.value, "removed": removed}},
    )
    return CacheClearResponse(target=target, removed=removed)


@router.post("/lookup", response_model=CacheLookupResponse)
async def lookup_cache(request: CacheLookupRequest, response_cache: ResponseCacheDep):
    """Run a similarity lookup without generating anything or touching cache stats."""
    result = await response_cache.get_similar(
        request.vector,
        radius=request.radius,
        threshold=request.threshold,
        track=False,
    )
    return CacheLookupResponse(
        hit=result.hit,
        similarity=result.similarity,
        candidates=result.candidates,
        latency_ms=result.latency_ms,
        hit_count=result.hit_count,
        item=result.item.to_public_dict() if result.item else None,
    )
