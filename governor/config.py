"""Configuration settings for the task governance engine."""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="GOVERNOR_", env_file=".env", extra="ignore")

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "governor"
    db_user: str = "governor"
    db_password: str = "governor"
    database_url_override: str | None = None
    db_echo: bool = False

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False
    redis_queue_enabled: bool = False
    redis_queue_max_depth: int = 100

    # Approvals
    approval_ttl_minutes: int = 60
    approval_sweep_minutes: int = 15

    # Loop detection
    loop_sweep_minutes: int = 15
    comment_storm_max_messages: int = 20
    comment_storm_window_minutes: int = 10
    review_loop_max_cycles: int = 3
    review_loop_window_minutes: int = 60
    tool_failure_max_consecutive: int = 5

    # Budget defaults for newly registered agents (USD)
    default_budget_daily: Decimal = Decimal("5.00")
    default_budget_per_run: Decimal = Decimal("0.75")

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


# Global settings instance
settings = Settings()
