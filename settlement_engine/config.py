"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./settlement_engine.db"
    log_level: str = "INFO"

    # Event store
    max_event_attempts: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 300.0
    stuck_event_threshold_seconds: int = 300

    # Worker pool
    worker_enabled: bool = False
    worker_count: int = 2
    worker_poll_interval_seconds: float = 1.0
    worker_shutdown_timeout_seconds: float = 10.0
    claim_batch_size: int = 10

    platform_fee_bps: int = 500  # 5% of the order total, in the seller currency

    mock_failure_rate: float = 0.0
    mock_latency_ms: int = 0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
