"""Process-level settings for the probe, loaded from environment variables."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings that live outside the YAML probe configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONITORLY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"

    # Config file location (None = search default locations)
    config_path: Optional[str] = None

    # Lifecycle
    shutdown_timeout: float = 10.0
    queue_size: int = 100
    config_poll_interval: float = 1.0

    # Delivery
    request_timeout: float = 10.0

    # Release checks
    update_repo: str = "monitorly-app/probe"


settings = Settings()
