from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Shared secret for the signed dispatch hook - required from .env
    WEBHOOK_SECRET: str

    # Push gateway (Expo-compatible push API)
    PUSH_GATEWAY_URL: str = "https://exp.host/--/api/v2/push/send"
    PUSH_ACCESS_TOKEN: Optional[str] = None
    PUSH_TIMEOUT_SECONDS: float = 10.0
    PUSH_PREVIEW_LENGTH: int = 100

    # Dispatcher
    DISPATCH_DEADLINE_SECONDS: float = 15.0
    DISPATCH_CONCURRENCY: int = 4

    # Pagination
    PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 100

    # Change feed
    FEED_KEEPALIVE_SECONDS: float = 15.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
