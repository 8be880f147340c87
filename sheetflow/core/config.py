"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/sheetflow.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Pub/sub Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    schema_channel_prefix: str = Field(default="sheetflow:schema")

    # Schema Cache TTL tiers (seconds)
    schema_ttl_trusted: int = Field(default=1800, ge=1)       # database, manual, refresh
    schema_ttl_live: int = Field(default=3600, ge=1)          # subscription, polling
    schema_ttl_propagation: int = Field(default=300, ge=1)
    schema_ttl_temporary: int = Field(default=60, ge=1)

    # Schema Propagation
    propagation_max_age: float = Field(default=30.0, gt=0)
    propagation_debounce_interval: float = Field(default=2.0, ge=2.0)
    propagation_cooldown: float = Field(default=30.0, ge=0)
    propagation_hash_types: bool = Field(default=False)

    # Step Scheduler
    step_timeout: float = Field(default=120.0, gt=0)
    step_max_attempts: int = Field(default=3, ge=1, le=10)
    step_retry_initial_delay: float = Field(default=1.0, ge=0)
    step_retry_max_delay: float = Field(default=30.0, ge=0)
    step_dispatch_mode: Literal["queue", "http"] = Field(default="queue")
    step_dispatch_url: str = Field(default="http://localhost:8010/api/workflow/steps/execute")
    step_worker_concurrency: int = Field(default=4, ge=1, le=64)

    # AI Assistant
    ai_service_url: Optional[str] = Field(default=None)
    ai_timeout: float = Field(default=60.0, ge=1, le=600)
    ai_poll_interval: float = Field(default=1.0, gt=0, le=30)

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

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
