"""Engine configuration using Pydantic Settings.

Environment variables are loaded from .env files and system environment.
An engine receives a Settings instance at construction time; nothing
below the engine reads settings through the module-level instance.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings.

    All settings can be overridden via environment variables.
    Environment variables take precedence over .env file values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    PROJECT_NAME: str = "Canvasflow"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None  # File logging only when set
    LOG_JSON_FORMAT: bool = True  # Use JSON format for file logs

    # External content upgrade
    EXTERNAL_CONTENT_ENABLED: bool = True
    EXTERNAL_TEXT_THRESHOLD_BYTES: int = 10 * 1024
    EXTERNAL_CONTENT_ROOT: Path = Path(".canvasflow") / "session"

    # Transport
    BROADCAST_QUEUE_SIZE: int = 256

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> str:
        """Accept lower-case level names from the environment."""
        if isinstance(v, str):
            return v.strip().upper() or "INFO"
        return "INFO"

    @field_validator("EXTERNAL_TEXT_THRESHOLD_BYTES", "BROADCAST_QUEUE_SIZE")
    @classmethod
    def non_negative(cls, v: int) -> int:
        """Reject negative sizes."""
        if v < 0:
            raise ValueError("must be >= 0")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings.

    Settings are cached after first load for performance.
    """
    return Settings()


# Global settings instance
settings = get_settings()
