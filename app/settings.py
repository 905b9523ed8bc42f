from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(
        default=Path("data/gov-notices.db"), validation_alias="DB_PATH"
    )
    feeds_dir: Path = Field(default=Path("feeds"), validation_alias="FEEDS_DIR")

    user_agent: str = Field(
        default="gov-notice-ingest/0.1", validation_alias="USER_AGENT"
    )

    max_concurrent_groups: int = Field(
        default=4, ge=1, le=8, validation_alias="MAX_CONCURRENT_GROUPS"
    )
    fetch_retries: int = Field(default=2, ge=0, le=5, validation_alias="FETCH_RETRIES")
    fetch_backoff_seconds: float = Field(
        default=0.5, ge=0.0, validation_alias="FETCH_BACKOFF_SECONDS"
    )
    fetch_connect_timeout: float = Field(
        default=5.0, validation_alias="FETCH_CONNECT_TIMEOUT"
    )
    fetch_read_timeout: float = Field(default=15.0, validation_alias="FETCH_READ_TIMEOUT")

    poll_interval_seconds: int = Field(
        default=300, ge=30, validation_alias="POLL_INTERVAL_SECONDS"
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
