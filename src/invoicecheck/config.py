"""Configuration management backed by pydantic-settings."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from invoicecheck.harness.models import RunConfig


class Settings(BaseSettings):
    """Harness settings loaded from ``INVOICECHECK_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="INVOICECHECK_",
        case_sensitive=False,
        extra="ignore",
    )

    # Target
    base_url: str = "http://localhost:3000"
    api_base_path: str = "/api"
    auth_token: Optional[str] = "test-token"
    environment: str = "development"

    # Runner policy
    timeout_ms: int = Field(default=30000, gt=0)
    retries: int = Field(default=3, ge=1)
    parallel: bool = True
    retry_initial_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=10000, ge=0)
    retry_failed_results: bool = True
    request_timeout_s: float = Field(default=15.0, gt=0)

    # Realtime probes
    sync_poll_window_ms: int = Field(default=3000, ge=0)
    sync_poll_interval_ms: int = Field(default=250, gt=0)

    # Application
    log_level: str = "INFO"
    reports_dir: Path = Field(default=Path("test-reports"))

    def run_config(self, **overrides: Any) -> RunConfig:
        """Build the immutable run configuration, applying per-invocation overrides."""
        values = {
            "base_url": self.base_url,
            "api_base_path": self.api_base_path,
            "default_timeout_ms": self.timeout_ms,
            "retry_count": self.retries,
            "concurrent": self.parallel,
            "retry_initial_delay_ms": self.retry_initial_delay_ms,
            "retry_max_delay_ms": self.retry_max_delay_ms,
            "retry_failed_results": self.retry_failed_results,
            "request_timeout_s": self.request_timeout_s,
            "auth_token": self.auth_token,
            "sync_poll_window_ms": self.sync_poll_window_ms,
            "sync_poll_interval_ms": self.sync_poll_interval_ms,
            "environment": self.environment,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return RunConfig(**values)


# Global settings instance
settings = Settings()
