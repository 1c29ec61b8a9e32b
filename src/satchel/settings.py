"""Application settings and environment configuration."""

from typing import Optional
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[2]
ENV_FILE = BASE_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = "Satchel"
    debug: bool = False
    worker_mode: bool = False
    environment: str = "dev"  # 'dev' or 'prod'

    # API server
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Application URL (base for emailed download links)
    app_url: str = "http://localhost:8080"

    # Database
    database_url: str = "postgresql://localhost/satchel"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    db_pool_pre_ping: bool = True
    db_connect_timeout: int = 10
    db_pool_use_lifo: bool = True

    # Google Cloud
    gcp_project_id: str = "satchel-local"

    # Cloud Storage
    storage_bucket_name: str = "gallery-images"  # source images
    archive_bucket_name: str = "gallery-archives"  # built bundles
    signing_service_account: Optional[str] = None

    # Asset retrieval: 'gcs' reads storage_bucket_name, 'http' reads asset_base_url
    asset_source: str = "gcs"
    asset_base_url: str = ""
    asset_fetch_timeout_seconds: float = 60.0

    # Archive building
    # Galleries with at most this many assets build inside the request.
    archive_inline_threshold: int = 20
    # Upper bound on concurrent source fetches per build or stream.
    archive_fetch_concurrency: int = 5
    archive_max_attempts: int = 3
    archive_job_timeout_seconds: int = 1800
    archive_inline_timeout_seconds: int = 120
    archive_retry_backoff_seconds: int = 2
    archive_retry_backoff_max_seconds: int = 300
    # Fraction of assets a cached build may drop before it aborts.
    archive_fetch_failure_tolerance: float = 0.1
    # One of: count, count_mtime, membership, ordered
    archive_fingerprint_policy: str = "count_mtime"
    # Higher runs first.
    archive_default_priority: int = 0
    archive_regenerate_priority: int = 10
    archive_stream_chunk_size: int = 65536
    archive_sweep_interval_seconds: float = 30.0

    # Archive delivery
    archive_signed_url_ttl_seconds: int = 3600
    archive_signed_url_cache_seconds: int = 3300
    archive_email_link_ttl_seconds: int = 7 * 24 * 3600
    archive_turbo_rate_limit: str = "10/minute"

    # Secrets
    download_token_secret: str = "change-me"
    cron_secret: Optional[str] = None

    # Email (Resend)
    email_resend_api_key: Optional[str] = None
    email_from_address: str = "Satchel <downloads@satchel.local>"
    archive_notification_max_attempts: int = 3
    # Wait after attempt n is this times 2 ** (n - 1).
    archive_notification_retry_backoff_seconds: int = 60

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "dev"


settings = Settings()
