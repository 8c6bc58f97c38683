"""Environment-driven configuration with Pydantic v2."""

from typing import Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8010, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/automations.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # Scheduler (due-run polling)
    scheduler_enabled: bool = Field(default=True)
    scheduler_poll_interval: float = Field(default=5.0, gt=0, le=300)
    scheduler_batch_size: int = Field(default=100, ge=1, le=5000)
    scheduler_concurrency: int = Field(default=10, ge=1, le=200)
    scheduler_lease_seconds: int = Field(default=300, ge=10)
    stats_recompute_cron: str = Field(default="0 3 * * *")

    # Graph walk
    walk_max_hops: int = Field(default=50, ge=1, le=1000)

    # Retry policy for failed node executions
    default_max_retries: int = Field(default=3, ge=1, le=20)
    retry_initial_delay: float = Field(default=60.0, ge=0.0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    retry_max_delay: float = Field(default=3600.0, ge=1.0)

    # Outbound message sender
    email_send_timeout: float = Field(default=30.0, gt=0, le=300)
    message_sender_url: Optional[str] = Field(default=None)
    message_sender_api_key: Optional[str] = Field(default=None)

    # Condition evaluation
    condition_case_sensitive: bool = Field(default=True)
    condition_coerce_numbers: bool = Field(default=False)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
