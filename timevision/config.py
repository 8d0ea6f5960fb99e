from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Subscription
    subscription_monthly: float = 50.0
    subscription_annual: float = 540.0
    min_contract_months: int = 6

    # Session limits (anti-fraud)
    max_daily_seconds: int = 57600
    max_session_seconds: int = 21600
    heartbeat_interval_seconds: int = 60
    heartbeat_timeout_seconds: int = 300
    watchdog_interval_seconds: int = 30
    watchdog_scan_count: int = 100
    daily_counter_ttl_seconds: int = 172800
    event_stream_maxlen: int = 100_000

    # Settlement
    settlement_day: int = 1
    settlement_hour: int = 0
    settlement_minute: int = 5
    hub_cost_margin: float = 0.05
    anomaly_check_hour: int = 1

    # Stores
    database_path: str = "./data/timevision.db"
    redis_url: str = "redis://localhost:6379/0"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def pattern_threshold_seconds(self) -> float:
        """Daily total above which a day counts as near-maximum usage."""
        return self.max_daily_seconds * 0.875

    @property
    def database_path_resolved(self) -> Path:
        """Get resolved database path."""
        path = Path(self.database_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


settings = Settings()
