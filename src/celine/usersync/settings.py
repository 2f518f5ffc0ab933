"""Runtime settings loaded from the environment (CELINE_USERSYNC_*).

These tune how a run executes; what is reconciled lives in the run
configuration document.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class UserSyncSettings(BaseSettings):
    """Execution settings for a sync run."""

    model_config = SettingsConfigDict(
        env_prefix="CELINE_USERSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = Field(default=False, description="Render log events as JSON")

    # HTTP
    timeout: float = Field(default=30.0, description="HTTP request timeout in seconds")
    page_size: int = Field(default=100, ge=1, description="Users fetched per listing page")

    # Concurrency
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Users whose roles are fetched or operations applied concurrently",
    )

    # Throttling retries
    max_attempts: int = Field(default=3, ge=1, description="Attempts per throttled operation")
    backoff_base: float = Field(default=0.5, ge=0, description="First backoff delay in seconds")
    backoff_max: float = Field(default=10.0, ge=0, description="Upper bound for a backoff delay")

    def with_overrides(self, **overrides: object) -> "UserSyncSettings":
        """Create a new settings instance with non-None CLI overrides applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return self.model_copy(update=values)
