"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# .env lives at the project root (one level above backend/)
_ENV_FILE = str(Path(__file__).resolve().parents[3] / ".env")


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    app_name: str = "Support Resolver"
    debug: bool = False
    cors_origins: str = "http://localhost:3000"

    # OpenAI
    openai_api_key: str = ""
    openai_chat_model: str = "gpt-4o"
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536
    generation_temperature: float = 0.3
    generation_max_tokens: int = 1024

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Response cache (disabled when unset)
    redis_url: str = ""
    cache_ttl_seconds: int = 3600

    # Resolution defaults, overridable per tenant
    default_confidence_threshold: float = 0.7
    retrieval_top_k: int = 5
    max_history_messages: int = 10

    # Per-call timeouts (seconds)
    collaborator_timeout: float = 5.0
    retrieval_timeout: float = 10.0
    generation_timeout: float = 60.0
    procedure_http_timeout: float = 10.0
    procedure_timeout: float = 30.0

    model_config = {"env_file": _ENV_FILE, "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
