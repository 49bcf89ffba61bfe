"""
Configuration settings for the Community Votes service.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    app_name: str = "Community Votes API"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./community_votes.db"

    # Read cache
    cache_ttl_seconds: float = 300.0  # 5 minutes
    cache_max_entries: int = 100

    # Consensus
    consensus_threshold_percent: float = 60.0

    # Pagination
    default_page_size: int = 10
    max_page_size: int = 50
    max_batch_size: int = 50  # posts per batch aggregate request

    # Aggregate reconciliation
    enable_scheduler: bool = False
    reconcile_interval_minutes: int = 30

    # API Security
    api_key: Optional[str] = None  # Optional API key for admin endpoints
    allowed_origins: str = "http://localhost:5000,http://localhost:3000"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "CV_"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
