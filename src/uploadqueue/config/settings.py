"""Upload queue configuration settings using pydantic-settings."""

from functools import cached_property
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the upload queue.

    Settings are loaded from environment variables with the UPLOADQUEUE_ prefix.
    For example, UPLOADQUEUE_RETRY_DELAY=30 sets retry_delay to 30.
    """

    model_config = SettingsConfigDict(
        env_prefix="UPLOADQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote sink
    server_url: str = "http://localhost:8000"
    upload_timeout: float = 30.0  # seconds per request
    max_retries: int = 3  # transport-level attempts per upload

    # Queue behaviour
    retry_delay: float = 60.0  # seconds before re-driving after a failure

    # Storage
    data_dir: Path = Path("~/.local/share/uploadqueue")
    namespace: str = "default"

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    @field_validator("retry_delay", "upload_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Ensure delays and timeouts are positive."""
        if v <= 0:
            raise ValueError("must be greater than 0 seconds")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Ensure at least one attempt is made."""
        if v < 1:
            raise ValueError("max_retries must be at least 1")
        return v

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Ensure the namespace is usable as a single directory name."""
        v = v.strip()
        if not v or v in (".", "..") or "/" in v or "\\" in v:
            raise ValueError("namespace must be a plain directory name")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @cached_property
    def data_path(self) -> Path:
        """Return expanded data directory path."""
        return self.data_dir.expanduser()
