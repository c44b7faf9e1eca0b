"""Production configuration — env-driven.

Centralized config using pydantic-settings.  Reads from a .env file and
DEPLOYFORGE_* environment variables.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProdConfig(BaseSettings):
    """Production configuration with environment variable overrides.

    All settings can be overridden via DEPLOYFORGE_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export DEPLOYFORGE_ENVIRONMENT=staging
        export DEPLOYFORGE_LOG_LEVEL=DEBUG
        export DEPLOYFORGE_DB_PATH=/data/deployforge.db

    Or via .env file::

        DEPLOYFORGE_ENVIRONMENT=production
        DEPLOYFORGE_URGENT_CHANNEL=pager
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DEPLOYFORGE_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage: ledger and state share one SQLite file
    db_path: Path = Path(".deployforge/deployforge.db")
    events_dir: Path = Path(".deployforge/events")

    # Trigger
    poll_interval_seconds: float = Field(default=30.0, gt=0)

    # Deploy stage defaults (a stage's own fields take precedence)
    deploy_retries: int = Field(default=3, ge=0)
    deploy_backoff_seconds: float = Field(default=5.0, ge=0)

    # Per-service cutover lock
    cutover_lock_policy: Literal["block", "fail_fast"] = "block"
    cutover_lock_timeout_seconds: float = Field(default=300.0, gt=0)

    # Notifications
    default_channel: str = "default"
    urgent_channel: str = ""
    # Sinks the orchestrator registers on the default channel when it builds
    # the dispatcher itself
    notification_sinks: list[Literal["local_file", "email"]] = ["local_file"]
    email_recipient: str = ""
    email_sender: str = "deployforge@localhost"

    # Worker pool for concurrent executions
    max_workers: int = Field(default=4, ge=1)

    @model_validator(mode="after")
    def _check_email_sink(self) -> ProdConfig:
        if "email" in self.notification_sinks and not self.email_recipient:
            raise ValueError("the email notification sink needs email_recipient")
        return self

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level singleton; import as `from deployforge.config import config`
config = ProdConfig()
