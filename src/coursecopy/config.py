"""Configuration management for the course structure service."""

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_file: str = ""

    # Document store
    data_dir: str = "data"
    store_lock_timeout_seconds: float = 10.0

    # Copy-structure defaults
    copy_batch_size: int = 50
    copy_retries: int = 2
    copy_backoff_base_seconds: float = 0.2
    copy_verify_max_cycles: int = 3

    # Plan clamps
    batch_size_min: int = 1
    batch_size_max: int = 200
    retries_min: int = 0
    retries_max: int = 5

    @model_validator(mode="after")
    def _check_clamps(self) -> "Settings":
        """Keep the default plan inside its own clamp range."""
        if self.batch_size_min > self.batch_size_max:
            raise ValueError("batch_size_min must not exceed batch_size_max")
        if self.retries_min > self.retries_max:
            raise ValueError("retries_min must not exceed retries_max")
        return self

    @property
    def data_path(self) -> Path:
        """Resolved document store root."""
        return Path(self.data_dir).resolve()

    def clamp_batch_size(self, value: int) -> int:
        return max(self.batch_size_min, min(self.batch_size_max, int(value)))

    def clamp_retries(self, value: int) -> int:
        return max(self.retries_min, min(self.retries_max, int(value)))


# Global settings instance
settings = Settings()
