"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = Field(default=False)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/workflows.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Cache Configuration (shared counters, locks, job queue)
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)

    # Execution Engine
    node_timeout_seconds: float = Field(default=300.0, gt=0)
    execution_max_retries: int = Field(default=3, ge=0, le=10)
    execution_retry_initial_delay: float = Field(default=1.0, ge=0.0, le=60.0)
    execution_retry_max_delay: float = Field(default=30.0, ge=0.0, le=600.0)
    default_max_concurrency: int = Field(default=5, ge=1, le=100)
    concurrency_lease_seconds: int = Field(default=900, ge=30)
    concurrency_poll_interval: float = Field(default=0.25, gt=0)
    queue_workers: int = Field(default=4, ge=1, le=64)

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    polling_enabled: bool = Field(default=True)
    polling_interval_seconds: int = Field(default=300, ge=10)
    polling_check_timeout: float = Field(default=60.0, gt=0)
    recovery_enabled: bool = Field(default=True)
    recovery_sweep_interval: int = Field(default=60, ge=5)
    recovery_stale_seconds: int = Field(default=600, ge=30)

    # Plans
    plans_file: Optional[str] = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

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

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
