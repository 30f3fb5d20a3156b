from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Chat storage settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage backend: sqlite:///path, postgresql://..., or file:path
    CHAT_STORAGE_URI: str = "sqlite:///storages/chatstorage.db"

    # Only meaningful for SQLite; cascading deletes depend on it
    CHAT_STORAGE_ENABLE_FOREIGN_KEYS: bool = True

    # Connection pool bounds
    DB_MAX_OPEN_CONNS: int = 25
    DB_MAX_IDLE_CONNS: int = 5

    DB_ECHO: bool = False

    LOG_LEVEL: str = "INFO"

    # Seed an "admin" row into an empty app_users table at startup
    SEED_DEFAULT_ADMIN: bool = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


# Global settings instance
settings = get_settings()
