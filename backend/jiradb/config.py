"""Application configuration using Pydantic settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Jira Cloud REST API
    jira_endpoint: str = ""
    jira_username: str = ""
    jira_api_token: str = ""
    jira_timezone: str = "UTC"  # Timezone Jira uses to interpret JQL dates
    jira_timeout_seconds: float = 30.0

    # Sync settings
    page_size: int = 100
    incremental_sync_enabled: bool = True
    incremental_sync_margin_minutes: int = 5
    auto_sync_interval_minutes: int = 0  # 0 disables the scheduler job

    # Local storage
    storage_database_url: str = "sqlite+aiosqlite:///./data/jiradb.sqlite"
    storage_snapshot_path: Path = Path("./data/jiradb-snapshot.json")
    project_store_path: Path = Path("./data/projects.json")

    # Storage worker
    storage_worker_mode: Literal["process", "thread"] = "process"
    worker_handshake_attempts: int = 50
    worker_handshake_interval_seconds: float = 0.1
    worker_call_timeout_seconds: float | None = None

    # API settings
    api_v1_prefix: str = "/api/v1"
    cors_origins: list[str] = ["*"]  # Restrict in production
    rate_limit_per_minute: int = 60

    # Environment
    debug: bool = False

    @property
    def jira_configured(self) -> bool:
        """Whether endpoint and credentials are all present."""
        return bool(self.jira_endpoint and self.jira_username and self.jira_api_token)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
