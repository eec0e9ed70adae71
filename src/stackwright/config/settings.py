"""
Application settings using Pydantic.

Provides environment-based configuration loading with STACKWRIGHT_ prefix.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Execution engine
    concurrency_limit: int = 4
    failure_policy: Literal["rollback", "contain"] = "rollback"
    node_timeout_seconds: float = 300.0

    # Retry policy for transient backend errors
    max_attempts: int = 5
    backoff_multiplier: float = 1.0
    backoff_min_seconds: float = 0.5
    backoff_max_seconds: float = 30.0

    # Rollback / teardown
    rollback_max_attempts: int = 3

    # Service discovery
    allow_empty_binding: bool = False
    binding_timeout_seconds: float = 120.0
    binding_max_reconcile_rounds: int = 3

    # Persisted execution state
    state_dir: Path = Path(".stackwright")

    # Backend
    backend: str = "memory"

    # Logging
    log_level: str = "WARNING"
    debug: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "STACKWRIGHT_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
