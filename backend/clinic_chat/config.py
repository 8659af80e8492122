from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List
import os


class Settings(BaseSettings):
    """Global app settings loaded from environment.
    - Keep defaults light for dev.
    - Override via .env or real env vars.
    """

    APP_NAME: str = "clinic_chat"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True

    MONGODB_URI: str = "mongodb://localhost:27017/clinic_chat"

    # JWT settings (must match the issuer of the clinic access tokens)
    JWT_SECRET: str = "clinic_chat_dev_secret"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Raw CORS string from env (comma-separated); parsed via cors_origins property
    CORS_ORIGINS: str | None = None

    # Chat rules
    CHAT_MAX_CONTENT_LENGTH: int = 1000
    CHAT_EDIT_WINDOW_MINUTES: int = 15
    CHAT_PAGE_SIZE_DEFAULT: int = 50
    CHAT_PAGE_SIZE_MAX: int = 100

    # Live channel
    SOCKET_AUTH_TIMEOUT_SECONDS: float = 5.0
    SOCKET_PATH: str = "socket.io"

    # slowapi limit string for message posting
    RATE_LIMIT_MESSAGES: str = "60/minute"

    LOG_DIR: str = "logs"
    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5
    # python-socketio / engineio are chatty at INFO (every packet)
    SOCKET_LOG_LEVEL: str = "WARNING"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origins(self) -> List[str]:
        """Return CORS origins as a list, parsing comma-separated env string."""
        raw = self.CORS_ORIGINS or os.getenv("CORS_ORIGINS", "") or ""
        return [o.strip() for o in raw.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
