"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "SiteLift"
    debug: bool = False
    timezone: str = "UTC"  # Weekly rate-limit window rolls over at Sunday 00:00 here

    # Database
    database_url: str
    database_statement_timeout_ms: int = 30000  # PostgreSQL only

    # Redis
    redis_url: str
    optimizer_lock_ttl_seconds: int = 900  # Lease expires if a cycle dies mid-flight

    # OpenAI
    openai_api_key: str
    openai_model: str = "gpt-4o-mini"

    # Site generator service (variant materialization)
    site_generator_url: str = "http://localhost:3002"
    external_call_timeout_seconds: float = 120.0

    # API Keys
    admin_api_key: str = "admin-key-change-in-production"

    # CORS
    frontend_url: str = "http://localhost:5173"

    # Statistics
    confidence_level: float = 0.95
    min_sample_size: int = 100
    futility_multiplier: int = 4
    anomaly_threshold: float = 0.5  # 50% relative drop is critical

    # Optimizer
    max_experiments_per_week: int = 3
    queue_size: int = 5
    min_pageviews_for_hypotheses: int = 50
    hypothesis_lookback_days: int = 14
    baseline_lookback_days: int = 30
    min_baseline_visitors: int = 100

    # Scheduler
    scheduler_enabled: bool = True
    optimize_interval_seconds: int = 4 * 60 * 60
    optimize_initial_delay_seconds: int = 30
    restaurant_delay_seconds: float = 2.0
    cleanup_interval_seconds: int = 24 * 60 * 60
    weekly_reset_check_seconds: int = 60 * 60
    events_retention_days: int = 90

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
