from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from SPINDLE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPINDLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Logging ---
    log_level: str = "WARNING"
    log_format: Literal["console", "json"] = "console"

    # --- Diagnostics ---
    debug: bool = False

    """Seconds a single task step may run before debug mode warns about it."""
    slow_step_threshold: float = Field(default=0.1, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Settings singleton, built from the environment on first use."""
    return Settings()
