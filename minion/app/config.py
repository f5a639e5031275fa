"""Application configuration."""

from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, overridable via ``MINION_*`` environment variables."""

    # Repository
    repo_path: Path = Path(".")
    worktrees_dir_name: str = ".minion-worktrees"
    branch_prefix: str = "minion/"
    default_target_branch: str = "main"

    # Orchestrator
    max_concurrent_tasks: int = 5
    stop_timeout: float = 10.0  # seconds
    event_queue_size: int = 256

    # Executor
    executor: Literal["stub", "bedrock"] = "stub"
    stub_delay: float = 2.0  # seconds

    # AWS Bedrock
    aws_profile: Optional[str] = None
    aws_region: str = "eu-west-1"
    bedrock_model_id: str = "eu.anthropic.claude-sonnet-4-5-20250929-v1:0"
    max_tokens: int = 8000

    # Database
    database_url: str = "sqlite+aiosqlite:///./minion.db"
    persistence_enabled: bool = True

    # Server
    host: str = "127.0.0.1"
    port: int = 3000

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="MINION_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
