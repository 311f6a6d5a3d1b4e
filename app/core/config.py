from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Shared secret sent by the scheduler in X-Cron-Secret.
    CRON_SECRET_KEY: Optional[str] = None

    # Rate limiting (fixed window per job name)
    REDIS_URL: Optional[str] = None
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # Summarization
    OPENAI_API_KEY: Optional[str] = None
    DIGEST_MODEL: str = "gpt-4o-mini"
    DIGEST_MAX_TOKENS: int = 300
    DIGEST_TEMPERATURE: float = 0.7
    LLM_TIMEOUT_SECONDS: float = 60.0
    LLM_CONNECT_TIMEOUT_SECONDS: float = 10.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
