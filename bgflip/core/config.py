"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.

Cloud and third-party values have no defaults: they are checked at the
point of first use with ``Settings.require()``.
"""

from pydantic_settings import BaseSettings
from typing import Optional

from bgflip.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "bgflip - Background Removal & Mirror Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True
    PORT: int = 3001

    # Set by Vercel inside serverless functions ("1")
    VERCEL: bool = False

    # ==========================================================================
    # Google Cloud Storage
    # ==========================================================================
    GCS_PROJECT_ID: Optional[str] = None
    GCS_BUCKET_NAME: Optional[str] = None

    # Inline service account key JSON (static key strategy)
    GOOGLE_CREDENTIALS: Optional[str] = None

    # Workload Identity Federation
    GCS_SERVICE_ACCOUNT_EMAIL: Optional[str] = None
    GCS_WORKLOAD_IDENTITY_POOL_PROVIDER: Optional[str] = None
    VERCEL_OIDC_TOKEN: Optional[str] = None
    GCS_OIDC_TOKEN_FILE: Optional[str] = None

    # gcs (production) or local (development)
    STORAGE_BACKEND: str = "gcs"
    LOCAL_STORAGE_PATH: str = "./data/storage"

    # Also keep the normalized upload under originals/{id}.png
    STORE_ORIGINALS: bool = False

    # ==========================================================================
    # Clipdrop API
    # ==========================================================================
    CLIPDROP_API_KEY: Optional[str] = None
    CLIPDROP_API_URL: str = "https://clipdrop-api.co/remove-background/v1"

    # ==========================================================================
    # Limits & Timeouts
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 26214400  # 25MB
    CLIPDROP_TIMEOUT_SECONDS: float = 60.0
    TOKEN_EXCHANGE_TIMEOUT_SECONDS: float = 15.0
    STORAGE_TIMEOUT_SECONDS: float = 60.0
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    def require(self, name: str) -> str:
        """
        Return a configured value or fail with ConfigurationError.

        Args:
            name: Settings field / environment variable name

        Returns:
            The non-empty configured value
        """
        value = getattr(self, name, None)
        if not value:
            raise ConfigurationError(f"{name} environment variable is not set")
        return value


# Global settings instance
settings = Settings()
