"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="PlayNext", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    openrouter_api_key: str | None = Field(
        default=None, alias="OPENROUTER_API_KEY"
    )
    openrouter_model: str = Field(
        default="meta-llama/llama-3.3-70b-instruct", alias="OPENROUTER_MODEL"
    )
    openrouter_api_url: HttpUrl = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_API_URL"
    )

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_api_url: HttpUrl = Field(
        default="https://api.openai.com/v1", alias="OPENAI_API_URL"
    )

    provider_timeout_seconds: float = Field(
        default=30.0, alias="PROVIDER_TIMEOUT", gt=0, le=300
    )

    rawg_api_key: str | None = Field(default=None, alias="RAWG_API_KEY")
    rawg_api_url: HttpUrl = Field(
        default="https://api.rawg.io/api", alias="RAWG_API_URL"
    )

    recommendation_count: int = Field(
        default=12, alias="RECOMMENDATION_COUNT", ge=1, le=50
    )
    load_more_budget: int = Field(
        default=24, alias="LOAD_MORE_BUDGET", ge=1, le=100
    )
    resolution_batch_size: int = Field(
        default=4, alias="RESOLUTION_BATCH_SIZE", ge=1, le=16
    )
    catalog_lookup_timeout_seconds: float = Field(
        default=10.0, alias="CATALOG_LOOKUP_TIMEOUT", gt=0, le=120
    )
    recommendation_cache_seconds: int = Field(
        default=7_200, alias="RECOMMENDATION_CACHE_TTL", ge=60
    )
    studio_cache_days: int = Field(
        default=30, alias="STUDIO_CACHE_DAYS", ge=1, le=365
    )
    exclusion_history_limit: int = Field(
        default=50, alias="EXCLUSION_HISTORY_LIMIT", ge=0, le=500
    )
    liked_history_limit: int = Field(
        default=20, alias="LIKED_HISTORY_LIMIT", ge=0, le=200
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./playnext.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("openrouter_api_key", "openai_api_key", "rawg_api_key", mode="before")
    @classmethod
    def _blank_keys_are_missing(cls, value: object) -> object:
        """Treat empty strings from .env files as unset credentials."""

        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_load_more_budget(self) -> "Settings":
        """Load-more passes must be allowed to ask for at least a full page."""

        if self.load_more_budget < self.recommendation_count:
            raise ValueError(
                "LOAD_MORE_BUDGET must be greater than or equal to RECOMMENDATION_COUNT"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
