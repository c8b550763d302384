"""
Application Configuration
Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./data/crowding_cache.db"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_debug: bool = False
    api_request_timeout: float = 55.0  # Overall wall-clock budget for /api/crowding

    # CORS Configuration
    cors_origins: List[str] = ["*"]

    # Timezone of the transit operator
    transit_timezone: str = "America/Chicago"

    # Scraper Configuration
    max_concurrent_scrapes: int = 3   # Simultaneous browser pages
    navigation_timeout: float = 20.0
    content_timeout: float = 34.0
    diagnostic_wait: float = 5.0
    browser_headless: bool = True
    browser_executable_path: Optional[str] = None
    scraper_user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    )

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_cooldown_minutes: int = 30
    count_empty_as_failure: bool = True

    # Cache freshness policy
    cache_ttl_active_minutes: int = 10
    cache_ttl_off_minutes: int = 60
    stale_max_age_hours: int = 24
    active_hours_start: int = 4   # 4 AM
    active_hours_end: int = 18    # 6 PM
    service_day_rollover_hour: int = 4

    # Scheduled jobs
    scheduler_enabled: bool = True
    seed_hour: int = 3
    seed_minute: int = 55
    seed_chunk_size: int = 3
    seed_lookback_days: int = 7
    cold_start_min_rows: int = 5
    delay_refresh_minutes: int = 7
    delay_refresh_chunk_size: int = 2
    chunk_pause_seconds: float = 2.0

    # Logging Configuration
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Paths
    @property
    def log_dir(self) -> Path:
        """Get the log directory path."""
        return Path(__file__).parent.parent.parent / "logs"

    @property
    def log_file(self) -> Path:
        """Get the log file path."""
        return self.log_dir / "backend.log"

    @property
    def data_dir(self) -> Path:
        """Get the data directory path."""
        return Path(__file__).parent.parent / "data"

    class Config:
        # Only load .env if it exists to avoid permission errors
        env_file = ".env" if __import__("pathlib").Path(".env").exists() else None
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


# Global settings instance
settings = Settings()
