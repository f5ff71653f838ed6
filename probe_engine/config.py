"""Service configuration read from the environment."""

from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from probe_engine.admission.quota import DEFAULT_MAX, DEFAULT_WINDOW_MS


class Settings(BaseSettings):
    """Configuration for the probe engine service.

    Every field maps to the upper-cased environment variable of the same name,
    e.g. ``ALLOWLIST_DOMAINS=example.com,*.example.org``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0", description="Listen address")
    port: int = Field(default=5050, description="Listen port")
    log_level: str = Field(default="INFO", description="Root log level")

    # Admission
    allowlist_domains: str = Field(
        default="",
        description="Comma-separated domain suffixes; empty denies every host",
    )
    allowlist_enabled: bool = Field(
        default=True, description="Disable to skip the allowlist stage entirely"
    )
    ssrf_allow_unresolved: bool = Field(
        default=False,
        description="Admit hosts whose DNS lookup fails (fail-open, opt-in)",
    )
    quota_window_ms: int = Field(default=DEFAULT_WINDOW_MS, ge=1)
    quota_max: int = Field(default=DEFAULT_MAX, ge=0)
    admin_api_key: SecretStr | None = Field(
        default=None, description="Require this value in X-API-KEY when set"
    )

    # Retention
    reports_dir: Path = Field(default=Path("reports"))
    report_ttl_days: float = Field(default=7, gt=0)
    job_ttl_seconds: float = Field(default=3600, gt=0)
    cleanup_interval_seconds: float = Field(default=24 * 60 * 60, gt=0)

    @field_validator("admin_api_key", mode="before")
    @classmethod
    def _blank_key_is_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def report_ttl_seconds(self) -> float:
        return self.report_ttl_days * 24 * 60 * 60


def get_settings() -> Settings:
    """Retrieve application settings."""
    return Settings()
