"""Configuration management using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from pathlib import Path
from typing import List, Optional
import os


def _default_cors_origins() -> List[str]:
    """Build CORS defaults from the frontend port when one is set."""
    frontend_port = os.getenv("FRONTEND_PORT", "").strip()
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    if frontend_port:
        origins = [
            f"http://localhost:{frontend_port}",
            f"http://127.0.0.1:{frontend_port}",
            *origins,
        ]
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # CORS Configuration
    cors_origins: List[str] = Field(default_factory=_default_cors_origins)

    # Completion + embedding gateway (OpenAI-compatible)
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-3.5-turbo"
    embedding_model: str = "text-embedding-3-small"
    embedding_batch_size: int = 64

    # Web search gateway
    tavily_api_key: str = ""
    tavily_timeout_seconds: int = 10

    # Vector index gateway
    pinecone_api_key: str = ""
    pinecone_index_host: str = ""
    pinecone_namespace: str = ""
    pinecone_timeout_seconds: int = 15

    # Context cache
    redis_url: str = "redis://localhost:6379/0"
    rag_cache_enabled: bool = True

    # Storage
    data_dir: Path = Path("data/state")
    keyword_index_path: Path = Path("data/state/rag_bm25.sqlite3")

    # Logging
    log_level: str = "INFO"
    logs_dir: Path = Path("logs")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value):
        if value in (None, ""):
            return _default_cors_origins()
        if isinstance(value, str) and not value.strip().startswith("["):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("openai_base_url", mode="before")
    @classmethod
    def blank_base_url_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


# Global settings instance
settings = Settings()
