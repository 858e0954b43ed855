"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``ECOHUB_`` prefix; provider keys and infrastructure
settings use their canonical environment variable names via
``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the EcoHub ingestion service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``ECOHUB_``; provider / infra keys
    use their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="ECOHUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Redis ──────────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── AI / search providers ──────────────────────────────────────────
    perplexity_api_key: str = Field(default="", validation_alias="PERPLEXITY_API_KEY")
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_model: str = "sonar"
    openai_api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    websearch_enabled: bool = True
    websearch_base_url: str = "https://html.duckduckgo.com"
    websearch_max_pages: int = Field(default=3, ge=1)
    curated_data_path: str | None = None  # None -> bundled dataset

    # ── Ingestion Pipeline ─────────────────────────────────────────────
    source_timeout_seconds: float = Field(default=20.0, gt=0)
    max_concurrent_sources: int = Field(default=3, ge=1)
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    default_sector: str | None = None
    default_geography: str = "Malaysia"
    default_keywords: list[str] = Field(default_factory=lambda: ["startups", "funding", "events"])

    # ── Scheduler ──────────────────────────────────────────────────────
    scheduler_enabled: bool | None = None  # None -> enabled in production only
    scrape_interval_ms: int = Field(default=24 * 60 * 60 * 1000, gt=0)  # 24 hours
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=5 * 60 * 1000, ge=0)  # 5 minutes
    result_cache_ttl: int = Field(default=7 * 24 * 60 * 60, ge=1)  # 7 days

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def auto_ingestion_enabled(self) -> bool:
        if self.scheduler_enabled is not None:
            return self.scheduler_enabled
        return self.is_production


# Module-level singleton; import ``settings`` everywhere.
settings = Settings()
