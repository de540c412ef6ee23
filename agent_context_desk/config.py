"""
Configuration management for Agent Context Desk.

Every field maps to the upper-cased environment variable of the same name
(``DATABASE_URL``, ``OPENAI_API_KEY``...), optionally read from ``.env``.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Agent Context Desk")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Database
    database_url: str = Field(default="sqlite:///./agent_context_desk.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="'json' or 'console'")

    # Distillation (OpenAI-compatible chat completions)
    openai_api_key: Optional[str] = Field(default=None)
    openai_model: str = Field(default="gpt-4o-mini")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    distill_timeout_seconds: float = Field(default=60.0, gt=0)
    distill_max_concurrency: int = Field(default=3, ge=1)
    distill_max_body_chars: int = Field(default=50_000, ge=1)

    # Bundle building
    manifest_schema_version: str = Field(default="v0")
    require_red_document: bool = Field(
        default=False,
        description="Reject bundle builds when the ticket has no requirements expansion document.",
    )
    version_conflict_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts at allocating a bundle version before giving up with a conflict.",
    )


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
