"""
Application Configuration
Loads environment variables and provides typed configuration.
"""
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # LLM (any OpenAI-compatible endpoint, e.g. Groq via llm_base_url)
    openai_api_key: Optional[str] = None
    llm_base_url: Optional[str] = None
    reasoning_model: str = "gpt-4o-mini"
    answer_model: str = "gpt-4o"

    # Embedding Settings
    embedding_model: str = "text-embedding-3-large"
    embedding_dimensions: int = 3072
    embedding_provider: str = "openai"

    # Pinecone
    pinecone_api_key: Optional[str] = None
    pinecone_index: str = "ragcore"

    # Supabase
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Redis (unset -> process-local cache and rate limiter)
    redis_url: Optional[str] = None

    # App Settings
    environment: str = "development"
    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Chunking (token budgets, 4 chars per token)
    chunk_target_tokens: int = 400
    chunk_max_tokens: int = 1024
    chunk_overlap_tokens: int = 50

    # Enrichment
    enrichment_batch_size: int = 5
    enrichment_batch_delay_seconds: float = 2.0
    enrichment_max_attempts: int = 3
    enrichment_backoff_seconds: float = 2.0
    skip_enrichment: bool = False

    # Caching
    classification_cache_ttl_seconds: int = 3600
    embedding_cache_ttl_seconds: int = 86400

    # Retry / timeouts
    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 10.0
    llm_timeout_seconds: float = 30.0
    llm_stream_timeout_seconds: float = 45.0
    embedding_timeout_seconds: float = 20.0
    vector_search_timeout_seconds: float = 15.0
    cache_timeout_seconds: float = 5.0

    # Rate limits (requests per window)
    rate_limit_window_ms: int = 60_000
    rate_limit_chat: int = 20
    rate_limit_search: int = 30
    rate_limit_upload: int = 10
    rate_limit_process: int = 5
    rate_limit_general: int = 100


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
