"""
Application configuration loaded from environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Replicate API
    replicate_api_token: str = ""
    replicate_base_url: str = "https://api.replicate.com/v1"
    replicate_webhook_secret: Optional[str] = None

    # Timeouts and retries
    api_timeout_seconds: int = 60
    replicate_rate_limit_retries: int = 4
    replicate_rate_limit_base_wait_seconds: int = 10

    # Polling
    polling_interval_seconds: float = 5.0
    polling_max_attempts: int = 120  # 10 minutes at 5s intervals
    polling_backoff_factor: float = 1.5
    polling_max_backoff_seconds: float = 30.0
    force_polling: bool = False

    # Finalization (download + durable store)
    finalize_retries: int = 3
    finalize_backoff_seconds: float = 1.0
    download_timeout_seconds: int = 45
    max_artifact_bytes: int = 50 * 1024 * 1024
    temporary_url_ttl_minutes: int = 60  # Replicate output links expire after ~1 hour
    thumbnail_size: int = 400

    # Storage backend: "database" (blobs in the jobs DB) or "s3"
    storage_backend: str = "database"
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_bucket: Optional[str] = None

    # Public base URL (permanent artifact links and webhook callbacks)
    public_base_url: Optional[str] = None

    # Database
    database_url: Optional[str] = None

    # Recovery sweeps
    cron_secret: Optional[str] = None
    sync_stale_after_seconds: int = 60
    sync_batch_limit: int = 20
    sync_item_delay_ms: int = 100
    sync_supervisor_interval_seconds: int = 0  # 0 disables the in-process sweep


@lru_cache
def get_settings() -> Settings:
    return Settings()


def webhooks_available(settings: Settings) -> bool:
    """Replicate only delivers webhooks to public HTTPS endpoints."""
    base = (settings.public_base_url or "").strip()
    return base.startswith("https://")
