"""Configuration management for Email Triage.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the EMAIL_TRIAGE_ prefix (e.g., EMAIL_TRIAGE_OLLAMA_HOST).
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_TRIAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ollama Configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama API host URL",
    )
    query_parser_model: str = Field(
        default="llama3.1:8b",
        description="Ollama model used to turn search queries into filters",
    )
    query_parser_temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for query parsing",
    )
    embedding_model: str = Field(
        default="all-minilm",
        description="Ollama embedding model (must produce embedding_dimension floats)",
    )
    embedding_dimension: int = Field(
        default=384,
        gt=0,
        description="Dimensionality of stored embeddings",
    )
    ollama_timeout: int = Field(
        default=30,
        gt=0,
        description="Timeout for Ollama API requests in seconds",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries for provider calls that fail to connect or time out",
    )

    # Storage Configuration
    database_path: Path = Field(
        default=Path("email_triage.sqlite3"),
        description="Path to the SQLite database holding messages and buckets",
    )
    qdrant_host: str | None = Field(
        default=None,
        description="Qdrant server host. If unset, a local on-disk store is used",
    )
    qdrant_port: int = Field(
        default=6333,
        description="Qdrant server port",
    )
    qdrant_path: Path = Field(
        default=Path("email_vectors"),
        description="Directory of the local Qdrant store (used when qdrant_host is unset)",
    )
    qdrant_collection: str = Field(
        default="email_messages",
        description="Qdrant collection holding message embeddings",
    )

    # Search Configuration
    similarity_threshold: float = Field(
        default=0.3,
        ge=-1.0,
        le=1.0,
        description="Vector matches must score strictly above this similarity",
    )
    candidate_limit: int = Field(
        default=50,
        gt=0,
        description="Maximum number of messages any single retriever returns",
    )
    hybrid_candidate_limit: int = Field(
        default=200,
        gt=0,
        description="Maximum number of structured candidates re-ranked by hybrid search",
    )
    result_page_size: int = Field(
        default=50,
        gt=0,
        description="Number of messages returned to the caller of smart search",
    )
    max_query_length: int = Field(
        default=500,
        gt=0,
        description="Longest accepted smart search query",
    )
    embedding_batch_size: int = Field(
        default=100,
        gt=0,
        description="Default number of messages embedded per backfill run",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    @model_validator(mode="after")
    def _check_limits(self) -> "Settings":
        if self.result_page_size > self.candidate_limit:
            raise ValueError(
                f"result_page_size ({self.result_page_size}) must not exceed "
                f"candidate_limit ({self.candidate_limit})"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
