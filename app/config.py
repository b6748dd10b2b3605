from functools import lru_cache
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

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chat.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Messages
    MAX_TEXT_LENGTH: int = 1000
    FEED_LIMIT: int = 50

    # Image derivatives (long edge in px, JPEG quality)
    FULL_SIZE_MAX_EDGE: int = 1920
    FULL_SIZE_QUALITY: int = 85
    THUMBNAIL_MAX_EDGE: int = 200
    THUMBNAIL_QUALITY: int = 70

    # Blob storage for uploaded derivatives
    BLOB_DIR: str = "./blobs"
    BLOB_BASE_URL: str = "/blobs"
    UPLOAD_CHUNK_SIZE: int = 64 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
