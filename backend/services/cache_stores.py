"""
Cache store wiring.

One shared Redis connection for every store when REDIS_URL is set and
reachable; otherwise each store gets its own in-process LRU.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from backend.core.caching.backends import (
    CacheBackend,
    CacheBackendError,
    MemoryBackend,
    RedisBackend,
    create_redis_client,
)
from backend.core.caching.embedding_cache import EmbeddingCache
from backend.core.caching.response_cache import ResponseCache
from backend.core.config import Settings
from backend.core.memory.chat_history import ChatHistory

logger = logging.getLogger(__name__)


@dataclass
class CacheStores:
    backend: Optional[CacheBackend]  # shared Redis, None when in-process
    embedding_cache: Optional[EmbeddingCache]
    response_cache: Optional[ResponseCache]
    chat_history: ChatHistory


async def connect_redis(settings: Settings) -> Optional[RedisBackend]:
    """Return a pinged RedisBackend, or None when unset or unreachable."""
    cfg = settings.cache
    if not cfg.redis_url:
        return None

    backend = RedisBackend(
        create_redis_client(
            cfg.redis_url,
            socket_timeout=cfg.redis_socket_timeout,
            connect_timeout=cfg.redis_connect_timeout,
            retries=cfg.redis_retries,
        )
    )
    try:
        await backend.ping()
    except CacheBackendError as e:
        logger.warning(f"Redis not available (using in-memory caches): {e}")
        try:
            await backend.close()
        except CacheBackendError as close_error:
            logger.debug(f"Ignoring close error on unreachable Redis: {close_error}")
        return None

    logger.info("Redis connected")
    return backend


async def init_cache_stores(settings: Settings) -> CacheStores:
    cfg = settings.cache
    redis_backend = await connect_redis(settings)
    if redis_backend is None:
        logger.warning("Caches and chat history are per-process (no shared Redis)")
    model_key = settings.get_embedding_model_id()

    embedding_cache = None
    if cfg.embedding_cache_enabled:
        embedding_cache = EmbeddingCache(
            backend=redis_backend or MemoryBackend(max_items=cfg.embedding_cache_memory_max),
            model_key=model_key,
        )

    response_cache = None
    if cfg.response_cache_enabled:
        response_cache = ResponseCache(
            backend=redis_backend or MemoryBackend(max_items=cfg.response_cache_memory_max_items),
            model_key=model_key,
        )

    chat_history = ChatHistory(
        backend=redis_backend or MemoryBackend(max_items=cfg.chat_history_memory_max_sessions),
    )

    return CacheStores(
        backend=redis_backend,
        embedding_cache=embedding_cache,
        response_cache=response_cache,
        chat_history=chat_history,
    )


async def close_cache_stores(stores: CacheStores) -> None:
    if stores.backend is None:
        return
    try:
        await stores.backend.close()
        logger.info("Cache backend closed")
    except CacheBackendError as e:
        logger.error(f"Error closing cache backend: {e}")
