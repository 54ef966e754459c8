"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # App
    app_name: str = "AbeAI Coach"
    debug: bool = False

    # CORS - comma-separated allowed origins, "*" allows any origin
    allowed_origins: str = "*"

    # OpenAI
    openai_api_key: str
    openai_base_url: Optional[str] = None  # e.g. an AI gateway in front of OpenAI

    # Key-value store (SQLite for local dev, any async SQLAlchemy URL for production)
    database_url: str = "sqlite+aiosqlite:///./abeai.db"
    sqlite_busy_timeout_ms: int = 5000  # wait on a locked file instead of failing the request

    # LLM defaults
    default_model: str = "gpt-4o-mini"
    default_temperature: float = 0.6
    tier_max_tokens: dict[str, int] = Field(
        default_factory=lambda: {
            "free": 200,
            "PAYG": 250,
            "Essentials": 300,
            "Premium": 400,
            "Clinical": 500,
        }
    )
    tier_models: dict[str, str] = Field(default_factory=dict)
    llm_max_retries: int = 3
    llm_retry_delay_base: float = 1.0  # seconds
    llm_timeout_seconds: float = 30.0

    # Monetization
    free_response_limit: int = 3

    # Conversation history
    history_limit: int = 10
    prompt_history_messages: int = 6
    token_budget_history: int = 1200

    # Identity
    session_cookie_name: str = "session_id"
    session_cookie_max_age: int = 31536000
    geo_country_header: str = "cf-ipcountry"

    # Optimistic concurrency on session commits
    state_commit_attempts: int = 3

    @property
    def cors_origins(self) -> list:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    def max_tokens_for(self, tier: str) -> int:
        """Completion budget for a subscription tier."""
        return self.tier_max_tokens.get(tier, self.tier_max_tokens.get("free", 200))

    def model_for(self, tier: str) -> str:
        """Model override for a tier, falling back to the default model."""
        return self.tier_models.get(tier) or self.default_model


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
