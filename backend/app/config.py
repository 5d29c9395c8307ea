from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List
import os


class Settings(BaseSettings):
    """Global app settings loaded from environment.
    - Keep defaults light for dev.
    - Override via .env or real env vars.
    """

    APP_NAME: str = "marketplace_live"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True

    MONGODB_URI: str = "mongodb://localhost:27017/marketplace_live"

    # JWT settings (tokens are issued by the auth service, we only verify them)
    JWT_SECRET: str = "marketplace_live_dev_secret"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Shared secret for server-to-server domain events (reviews, moderation, bookings)
    INTERNAL_API_SECRET: str | None = None

    # Raw CORS string from env (comma-separated); parsed via cors_origins property
    CORS_ORIGINS: str | None = None

    # Live channel endpoint. REST lives under <LIVE_BASE_URL>/api
    LIVE_BASE_URL: str = "http://localhost:5001"
    SOCKETIO_PATH: str = "socket.io"

    # Reconnect policy: linear growth, capped
    RECONNECT_ATTEMPTS: int = 5
    RECONNECT_DELAY_SECONDS: float = 1.0
    RECONNECT_DELAY_MAX_SECONDS: float = 5.0

    TYPING_TTL_SECONDS: float = 1.0
    NOTIFICATION_POLL_SECONDS: float = 30.0
    REST_TIMEOUT_SECONDS: float = 10.0
    DEDUP_CACHE_SIZE: int = 10000

    LOG_DIR: str = "logs"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origins(self) -> List[str]:
        """Return CORS origins as a list, parsing comma-separated env string."""
        raw = self.CORS_ORIGINS or os.getenv("CORS_ORIGINS", "") or ""
        return [o.strip() for o in raw.split(",") if o.strip()]

    @property
    def api_base_url(self) -> str:
        """REST base derived from the live channel base URL."""
        return f"{self.LIVE_BASE_URL.rstrip('/')}/api"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
