"""Configuration and environment settings for the Statement Importer."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for the Statement Importer."""

    database_url: str = "sqlite:///./jobs.db"

    # Background execution
    job_backend: Literal["background_tasks", "rq"] = "background_tasks"
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "csv-uploads"
    queue_attempts: int = 3
    queue_backoff_seconds: int = 5
    queue_job_timeout: int = 300

    # Import pipeline
    batch_size: int = 50
    batch_timeout_ms: int = 30000
    batch_max_wait_seconds: int = 5
    sample_lines: int = 5  # header line included
    date_lookback_years: int = 3
    progress_notification_every: int = 5

    # Upload storage
    upload_storage: Literal["inline", "s3"] = "inline"
    s3_endpoint_url: str | None = None
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_bucket: str = "statement-uploads"

    log_file: str = "jobs/import_processing.log"
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


def get_settings() -> "Settings":
    """Return an instance of the application settings."""
    return Settings()
