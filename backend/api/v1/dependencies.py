"""
FastAPI Dependencies.

FOCUS: Cache stores, settings, admin auth
Provides reusable dependencies injected into route handlers.
"""

import secrets
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from backend.core.caching.embedding_cache import EmbeddingCache
from backend.core.caching.response_cache import ResponseCache
from backend.core.config import Settings, get_settings
from backend.core.memory.chat_history import ChatHistory


# =============================================================================
# Settings Dependency
# =============================================================================

def get_current_settings() -> Settings:
    """Get application settings."""
    return get_settings()


CurrentSettings = Annotated[Settings, Depends(get_current_settings)]


# =============================================================================
# Cache Store Dependencies
# =============================================================================

def _state_attr(request: Request, name: str):
    store = getattr(request.app.state, name, None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not initialized",
        )
    return store


def get_embedding_cache(request: Request) -> EmbeddingCache:
    return _state_attr(request, "embedding_cache")


def get_response_cache(request: Request) -> ResponseCache:
    return _state_attr(request, "response_cache")


def get_chat_history(request: Request) -> ChatHistory:
    return _state_attr(request, "chat_history")


EmbeddingCacheDep = Annotated[EmbeddingCache, Depends(get_embedding_cache)]
ResponseCacheDep = Annotated[ResponseCache, Depends(get_response_cache)]
ChatHistoryDep = Annotated[ChatHistory, Depends(get_chat_history)]


# =============================================================================
# Authentication Dependencies
# =============================================================================

async def verify_admin_key(
    x_api_key: Annotated[Optional[str], Header()] = None,
    settings: Settings = Depends(get_current_settings),
) -> str:
    """
    Guard for destructive endpoints.

    Without a configured admin key only development mode is let through.
    """
    if settings.admin_api_key is None:
        if settings.is_development:
            return "dev-mode"
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin endpoints are disabled",
        )

    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not secrets.compare_digest(x_api_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return x_api_key


AdminKey = Annotated[str, Depends(verify_admin_key)]
