"""Workspace engine configuration."""

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    shutdown_timeout: int = 30  # Max seconds for graceful shutdown before forcing exit

    # Internal service authentication (shared with the UI backend)
    internal_service_token: str | None = None

    # CORS - allowed origins for API access
    cors_origins: list[str] = ["http://localhost:3000"]

    # Sandbox provider (reads DAYTONA_ env vars, not WORKSPACE_)
    daytona_api_key: str = Field(default="", validation_alias="DAYTONA_API_KEY")
    daytona_api_url: str | None = Field(default=None, validation_alias="DAYTONA_API_URL")
    daytona_target: str | None = Field(default=None, validation_alias="DAYTONA_TARGET")

    # Repository metadata store
    repository_store: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379"

    # Layout inside the sandbox
    projects_dir: str = "projects"  # Relative to the sandbox user's root dir
    service_log_dir: str = "/tmp"
    agent_command: str = "claude"  # Runs in the agent terminal's tmux session

    # Remote command budgets (seconds)
    short_command_timeout: int = 5
    check_command_timeout: int = 10

    # Restart policy (seconds). Empirical values, tune against the provider.
    sandbox_ready_timeout: float = 10.0
    kill_settle_seconds: float = 3.0
    launch_settle_seconds: float = 2.0

    # Health monitor policy (seconds)
    health_poll_interval: float = 120.0
    restart_poll_interval: float = 5.0
    restart_timeout: float = 180.0
    initial_check_delay: float = 2.0
    restarting_check_delay: float = 8.0

    # Terminal wire client
    terminal_connect_timeout: float = 5.0
    terminal_columns: int = 80
    terminal_rows: int = 24

    # Sentry (reads from SENTRY_ env vars, not WORKSPACE_)
    sentry_dsn: str | None = Field(default=None, validation_alias="SENTRY_DSN")
    sentry_traces_sample_rate: float = Field(
        default=0.2, validation_alias="SENTRY_TRACES_SAMPLE_RATE"
    )
    sentry_profiles_sample_rate: float = Field(
        default=0.1, validation_alias="SENTRY_PROFILES_SAMPLE_RATE"
    )

    model_config = {"env_prefix": "WORKSPACE_", "case_sensitive": False, "populate_by_name": True}

    @property
    def log_level(self) -> int:
        return logging.DEBUG if self.debug else logging.INFO


settings = Settings()
