from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings loaded from environment variables and .env files"""

    api_prefix: str = "/api"
    app_name: str = "PO Entity Resolution Backend"
    log_level: str = "INFO"
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173", "http://localhost:8000"]
    )

    # Supabase (customers / contacts / items tables with pgvector columns)
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_audit_table: str = "entity_resolution_audit"

    # Embedding provider
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # LLM arbitration (OpenAI-compatible providers)
    llm_provider: str = "openai"
    llm_fallback_provider: Optional[str] = None
    llm_openai_model: str = "gpt-4o-mini"
    deepseek_api_key: Optional[str] = None
    llm_timeout_ms: Optional[int] = 30000

    # Embedding maintenance
    embedding_mega_batch_size: int = 2000
    embedding_provider_chunk_size: int = 100
    embedding_max_retries: int = 3
    embedding_backoff_base_ms: int = 2000
    embedding_cooldown_ms: int = 1000
    embedding_pause_every: int = 10
    embedding_pause_seconds: float = 1.0

    # Continuous scheduler
    continuous_embedding_enabled: bool = False
    continuous_embedding_batch_size: int = 75
    continuous_embedding_interval_seconds: int = 60
    # Comma separated, e.g. "contact,customer,item"
    continuous_embedding_kinds: str = "contact"

    # Resource guard
    memory_soft_limit_mb: int = 700
    memory_hard_limit_mb: int = 900
    memory_check_interval_seconds: float = 2.0

    # Resolution
    vector_similarity_floor: float = 0.80
    vector_candidate_count: int = 10
    rule_acceptance: float = 0.75
    arbitration_top_k: int = 3
    item_cache_max_entries: int = 1000
    item_cache_ttl_seconds: float = 300.0
    confidence_auto_accept: float = 0.90
    confidence_review: float = 0.75

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def continuous_kinds(self) -> List[str]:
        kinds = [k.strip().lower() for k in self.continuous_embedding_kinds.split(",") if k.strip()]
        return kinds or ["contact"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
