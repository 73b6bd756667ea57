"""Configuration settings for the marketplace sync orchestrator."""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Redis Configuration
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_key_prefix: str = "syncq"
    broker_init_timeout_seconds: float = 10.0

    # Database Configuration
    database_url: str = "sqlite:///./orchestrator.db"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Queue Configuration
    queue_names: List[str] = [
        "marketplace-sync",
        "product-processing",
        "ai-optimization",
        "marketplace-updates",
    ]
    sync_queue: str = "marketplace-sync"
    batch_queue: str = "product-processing"

    # Job Configuration
    default_attempts: int = 3
    default_backoff_type: str = "exponential"
    default_backoff_delay_ms: int = 2000
    max_backoff_ms: int = 300_000
    stall_interval_seconds: float = 30.0
    poll_interval_seconds: float = 0.1
    promote_interval_seconds: float = 1.0
    shutdown_timeout_seconds: float = 30.0
    consumer_heartbeat_seconds: float = 15.0

    # Worker Configuration
    sync_concurrency: int = 2
    batch_concurrency: int = 3
    individual_concurrency: int = 5

    # Sync Configuration
    sync_batch_size: int = 50
    sync_max_scanned_items: int = 10_000
    adapter_timeout_seconds: float = 30.0
    adapter_page_size: int = 50

    # Retention
    job_retention_days: int = 30
    history_retention_days: int = 7
    health_retention_days: int = 7

    # Health Monitoring
    health_check_interval_seconds: float = 300.0
    health_backlog_threshold: int = 1000
    health_failure_rate_threshold: float = 0.10
    health_processing_time_threshold_ms: float = 60_000
    health_low_throughput_per_hour: float = 10
    health_db_response_threshold_ms: float = 1000
    health_recent_failure_limit: int = 50
    health_emergency_pause_queues: bool = False

    # Process Roles
    run_workers: bool = True
    run_monitor: bool = True

    # Monitoring
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, read once from the environment."""
    return Settings()
