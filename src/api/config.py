"""Application configuration and constants."""

from typing import Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_FORMATS: Tuple[str, ...] = ("webp", "jpeg", "png")

DEFAULT_MAX_WIDTH = 1920
DEFAULT_MAX_HEIGHT = 1080
DEFAULT_QUALITY = 0.8
DEFAULT_FORMAT = "webp"

MAX_INPUT_SIZE_MB = 20
REQUEST_TIMEOUT_SECONDS = 60
UPLOAD_CONCURRENCY = 4


class Settings(BaseSettings):
    """Application configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    storage_access_key_id: Optional[str] = None
    storage_secret_access_key: Optional[str] = None
    storage_region: str = "us-east-1"
    storage_endpoint_url: Optional[str] = None
    storage_bucket: str = "media"
    storage_public_base_url: Optional[str] = None
    storage_timeout_seconds: int = 30
    storage_cache_control_seconds: int = 3600

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 4
    api_cors_origins: str = "*"

    max_input_size_mb: int = MAX_INPUT_SIZE_MB
    upload_concurrency: int = UPLOAD_CONCURRENCY
    image_allow_upscale: bool = False
    request_timeout_seconds: int = REQUEST_TIMEOUT_SECONDS

    log_level: str = "INFO"
    log_format: str = "json"

    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 30
    rate_limit_per_hour: int = 500

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        if self.api_cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.api_cors_origins.split(",")]

    @property
    def max_input_size_bytes(self) -> int:
        """Largest accepted upload, in bytes."""
        return self.max_input_size_mb * 1024 * 1024


settings = Settings()
