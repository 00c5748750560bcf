"""
Configuration Management for the Answer Cache Backend.

FOCUS: Environment variables, cache tuning knobs
MUST: Separate dev/staging/prod configs
CRITICAL: Embedding model identity is part of every cache key - a model swap
          must never return stale-format hits
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class EmbeddingModelConfig(BaseSettings):
    """
    Embedding model identity.

    CRITICAL: Vectors from different models are not comparable.
    The identifier below namespaces the response cache buckets and
    the embedding cache keys.
    """

    model_config = SettingsConfigDict(protected_namespaces=())

    model_provider: str = Field(
        default="cohere",
        description="Provider: openai, cohere, huggingface, local"
    )
    model_name: str = Field(
        default="embed-multilingual-v3.0",
        description="Embedding model name"
    )
    model_version: str = Field(
        default="v1",
        description="Version tag for tracking cache compatibility"
    )

    @property
    def model_identifier(self) -> str:
        """Unique identifier for this model configuration."""
        return f"{self.model_provider}/{self.model_name}/{self.model_version}"


class CacheConfig(BaseSettings):
    """
    Caching configuration.

    FOCUS: Semantic response cache + exact-match embedding cache
    LSH defaults (16 bits / radius 1) are empirical - tune against real traffic.
    """

    # Redis (absent -> in-process fallback)
    redis_url: Optional[str] = Field(default=None)
    redis_socket_timeout: float = Field(default=2.0, gt=0)
    redis_connect_timeout: float = Field(default=2.0, gt=0)
    redis_retries: int = Field(default=2, ge=0)

    # Semantic response cache
    response_cache_enabled: bool = Field(default=True)
    response_cache_namespace: str = Field(default="resp:v1")
    response_cache_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        ge=0,
        description="Record TTL in seconds (0 disables expiry)"
    )
    response_cache_lsh_bits: int = Field(
        default=16,
        ge=1,
        le=32,
        description="Signature width B"
    )
    response_cache_sim_threshold: float = Field(
        default=0.92,
        gt=0.0,
        le=1.0,
        description="Cosine similarity needed for a hit (start conservative)"
    )
    response_cache_lsh_radius: int = Field(
        default=1,
        ge=0,
        description="Hamming radius probed around the query signature"
    )
    response_cache_max_radius: int = Field(
        default=2,
        ge=0,
        le=3,
        description="Upper bound on probed radius (cost grows combinatorially)"
    )
    response_cache_max_candidates: int = Field(default=200, ge=1)
    response_cache_max_bucket_size: int = Field(default=1000, ge=1)
    response_cache_memory_max_items: int = Field(default=1000, ge=1)

    # Embedding cache
    embedding_cache_enabled: bool = Field(default=True)
    embedding_cache_namespace: str = Field(default="emb:v1")
    embedding_cache_ttl_seconds: int = Field(
        default=30 * 24 * 3600,
        ge=0,
        description="Embedding cache TTL (30 days)"
    )
    embedding_cache_memory_max: int = Field(default=1000, ge=1)

    # Chat history
    chat_history_namespace: str = Field(default="chat:v1")
    chat_history_limit: int = Field(default=30, ge=1)
    chat_history_ttl_seconds: int = Field(default=24 * 3600, ge=0)
    chat_history_memory_max_sessions: int = Field(default=500, ge=1)

    @model_validator(mode="after")
    def check_radius(self) -> "CacheConfig":
        if self.response_cache_lsh_radius > self.response_cache_max_radius:
            raise ValueError(
                "response_cache_lsh_radius must not exceed response_cache_max_radius"
            )
        return self


class MonitoringConfig(BaseSettings):
    """Monitoring and observability configuration."""

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    metrics_enabled: bool = Field(default=True)


def get_environment_settings(env: Environment) -> dict:
    """
    Get environment-specific defaults, keyed by sub-config.

    MUST: Different configs for dev/staging/prod
    Only fields left unset (no env var, no explicit argument) take these values.
    """
    overrides = {
        Environment.DEVELOPMENT: {},
        Environment.STAGING: {
            "cache": {"response_cache_sim_threshold": 0.92},
            "monitoring": {"log_level": "INFO"},
        },
        Environment.PRODUCTION: {
            "cache": {"response_cache_sim_threshold": 0.95},  # Conservative for accuracy
            "monitoring": {"log_level": "WARNING"},
        },
    }
    return overrides.get(env, {})


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration based on environment.
    Uses Pydantic settings for validation and environment variable loading.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Scheme Assistant Answer Cache")
    app_version: str = Field(default="1.0.0")
    environment: Environment = Field(default=Environment.DEVELOPMENT)

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/v1")
    cors_origins: list[str] = Field(default=["*"])

    # Admin key for destructive cache endpoints (None = open in development only)
    admin_api_key: Optional[str] = Field(default=None)

    # Sub-configurations
    embedding: EmbeddingModelConfig = Field(default_factory=EmbeddingModelConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @model_validator(mode="after")
    def apply_environment_defaults(self) -> "Settings":
        for section, values in get_environment_settings(self.environment).items():
            sub = getattr(self, section)
            updates = {k: v for k, v in values.items() if k not in sub.model_fields_set}
            if updates:
                setattr(self, section, sub.model_copy(update=updates))
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    def get_embedding_model_id(self) -> str:
        """
        Get unique embedding model identifier.

        CRITICAL: This ID is baked into every bucket key.
        Querying with a different model will simply miss.
        """
        return self.embedding.model_identifier


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once and cached for performance.
    To reload, clear the cache: get_settings.cache_clear()
    """
    return Settings()


# Global settings instance
settings = get_settings()
