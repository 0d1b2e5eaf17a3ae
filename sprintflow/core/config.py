"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Scheduler settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SPRINTFLOW_",
        case_sensitive=False,
        extra="ignore",
    )

    # Sprint sizing
    max_sprint_duration: float = Field(
        default=10,
        gt=0,
        description="Maximum sprint duration in minutes",
    )
    min_sprint_duration: float = Field(
        default=3,
        ge=0,
        description="Sprints shorter than this are reported as warnings",
    )
    max_sprints_per_project: int = Field(
        default=50,
        ge=1,
        description="Hard limit on sprints produced by one decomposition",
    )

    # Graph
    max_depth: int = Field(
        default=10,
        ge=1,
        description="Dependency chains deeper than this are reported as warnings",
    )
    priority_mode: Literal["critical-path", "priority"] = Field(
        default="critical-path",
        description="Whether ready tasks on the critical path are allocated first",
    )

    # Execution
    max_retries: int = Field(
        default=3,
        ge=1,
        description="Execution attempts per sprint before it is abandoned",
    )
    timeout_multiplier: float = Field(
        default=2.0,
        gt=0,
        description="Sprint timeout as a multiple of its estimated duration",
    )
    time_unit_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds per duration unit (durations are in minutes)",
    )
    acceptance_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Fraction of acceptance criteria a sprint must meet",
    )
    max_concurrent: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum sprints executed concurrently in layered mode",
    )

    # Knowledge store
    store_max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts per knowledge store call",
    )
    store_retry_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Initial backoff between knowledge store attempts in seconds",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    log_to_file: bool = Field(
        default=False,
        description="Also write logs to logs/sprintflow_<date>.log",
    )

    def sprint_timeout(self, estimated_duration: float) -> float:
        """Timeout in seconds for a sprint of the given estimated duration."""
        return estimated_duration * self.time_unit_seconds * self.timeout_multiplier


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.max_retries
        3
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
