"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (connection locks + worker heartbeats)
    redis_url: str = "redis://localhost:6379/0"

    # Encryption (connection credentials are stored as a Fernet token)
    encryption_key: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Connection lock
    lock_backend: str = "redis"  # redis, local
    lock_ttl_seconds: int = 3600
    lock_refresh_seconds: int = 60

    # Worker pool
    worker_pool_size: int = 4

    # Sync
    sync_page_size: int = 50
    sync_max_pages: int = 1000
    sync_max_records: int = 50000
    sync_overlap_minutes: int = 15
    sync_safety_delay_minutes: int = 2
    sync_bootstrap_hours: int = 24
    sync_max_window_days: int = 14

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 60
    sync_min_interval_seconds: int = 300

    # Stale job sweep
    stale_job_timeout_minutes: int = 120

    # Marketplace
    marketplace_write_enabled: bool = False  # dry-run writes until explicitly enabled
    marketplace_timeout_seconds: float = 10.0
    marketplace_integration_name: str = "marketsync"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
