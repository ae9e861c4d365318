"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # NewsAPI configuration
    news_api_key: Optional[str] = None
    news_api_base_url: str = "https://newsapi.org/v2"

    # Cache settings
    # "memory", "file" (JSON files in cache_directory) or "sql" (SQLAlchemy)
    cache_backend: str = "file"
    cache_directory: Path = Path("./cache")
    cache_database_url: str = "sqlite:///./cache/feed_cache.db"
    cache_fresh_seconds: int = 2 * 60 * 60       # 2 hours
    cache_stale_seconds: int = 12 * 60 * 60      # 12 hours
    cache_max_age_seconds: int = 24 * 60 * 60    # 24 hours

    # Rate limiting (free tier defaults)
    requests_per_second: int = 1
    requests_per_minute: int = 60
    requests_per_hour: int = 1000
    requests_per_day: int = 1000

    # Request execution
    max_concurrent_requests: int = 1
    queue_tick_seconds: float = 0.1
    request_timeout_seconds: float = 30.0

    # Retry policy
    retry_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter_seconds: float = 1.0

    # Background refresh
    refresh_enabled: bool = True
    refresh_interval_seconds: float = 5 * 60
    refresh_stale_threshold_seconds: float = 2 * 60 * 60
    refresh_priority_threshold_seconds: float = 30 * 60
    refresh_max_concurrent: int = 3

    # Monitoring
    monitor_analysis_interval_seconds: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
