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

    # Database
    DATABASE_URL: str = "sqlite:///./relaychat.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Tokens
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_MINUTES: int = 60
    REFRESH_TOKEN_DAYS: int = 30

    # One-time codes
    OTP_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 300
    OTP_RATE_LIMIT: str = "10/5minutes"

    # Redis (code store + response cache); in-memory codes and no cache when unset
    REDIS_URL: Optional[str] = None
    CACHE_TTL_SECONDS: int = 300

    # Outgoing mail
    EMAIL_HOST: Optional[str] = None
    EMAIL_PORT: int = 587
    EMAIL_USER: Optional[str] = None
    EMAIL_PASSWORD: Optional[str] = None
    EMAIL_FROM: Optional[str] = None
    EMAIL_USE_TLS: bool = True

    # Push notifications (service-account JSON path)
    FIREBASE_CREDENTIALS: Optional[str] = None

    # Attachment storage
    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_API_KEY: Optional[str] = None
    CLOUDINARY_API_SECRET: Optional[str] = None
    SIGNED_URL_DAYS: int = 7
    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024
    DOCUMENT_RETENTION_DAYS: int = 7


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
