"""API v1 endpoints package."""

from backend.api.v1.endpoints import cache, sessions

__all__ = ["cache", "sessions"]
