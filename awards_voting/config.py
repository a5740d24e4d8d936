"""Configuration management for the awards voting client."""
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "awards-voting-ui"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Web front-end
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    SECRET_KEY: str = "dev-secret-key-change-in-production"

    # Remote voting service
    API_BASE_URL: str = "http://localhost:8080"
    REQUEST_TIMEOUT: float = 10.0
    # Seconds a vote/revoke in flight blocks further vote actions of the same client
    VOTE_LOCK_TTL: int = 30

    # Local persistent storage (memory:// or redis://)
    STORAGE_URL: Optional[str] = None
    STORAGE_PREFIX: str = "awards"

    # Redis configuration, used when STORAGE_URL is not set and REDIS_HOST is
    REDIS_HOST: Optional[str] = None
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_MAX_CONNECTIONS: int = 20

    # Presentation
    LOCALE: str = "ru"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def redis_url(self) -> Optional[str]:
        """Generate Redis connection URL."""
        if not self.REDIS_HOST:
            return None
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def storage_url(self) -> str:
        """Storage backend URL, falling back to Redis and then memory."""
        return self.STORAGE_URL or self.redis_url or "memory://"


settings = Settings()
