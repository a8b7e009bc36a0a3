"""Pydantic models describing cdr-fetcher settings."""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ConfigError(Exception):
    """Settings are missing or unusable; the run cannot start."""


class IdentityConfig(BaseModel):
    """Client-credentials identity used for the token exchange."""

    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    authority_host: str = "https://login.microsoftonline.com"
    scope: str = "https://graph.microsoft.com/.default"
    refresh_margin_seconds: int = Field(default=300, ge=0)

    @property
    def is_complete(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


class ApiConfig(BaseModel):
    """Remote API endpoint and pagination behaviour."""

    base_url: str = "https://graph.microsoft.com/v1.0/communications/callRecords"
    timeout: float = Field(default=30.0, gt=0)
    items_field: str = "value"
    next_link_field: str = "@odata.nextLink"
    max_pages: int = Field(default=500, ge=1)
    parallel_subresources: bool = True

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return value.rstrip("/")


class PathsConfig(BaseModel):
    """Input, output and failure-report locations."""

    input_path: Path = Field(default=Path("data/input"))
    output_dir: Path = Field(default=Path("data/output"))
    failure_report: Path = Field(default=Path("data/failed_calls.csv"))
    partition_format: str = "%Y/%m/%d"

    @field_validator("input_path", "output_dir", "failure_report", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("partition_format")
    @classmethod
    def _check_partition(cls, value: str) -> str:
        if not value or "%" not in value:
            raise ValueError("partition_format must contain strftime directives")
        return value

    def resolved(self, base_dir: Path) -> "PathsConfig":
        """Return a copy with relative paths anchored at ``base_dir``."""

        def _anchor(path: Path) -> Path:
            path = path.expanduser()
            return path if path.is_absolute() else (base_dir / path).resolve()

        return self.model_copy(
            update={
                "input_path": _anchor(self.input_path),
                "output_dir": _anchor(self.output_dir),
                "failure_report": _anchor(self.failure_report),
            }
        )

    def failure_report_for(self, run_date: date) -> Path:
        """Failure report path; ``{date}`` in the file name expands to the run date."""

        return Path(str(self.failure_report).replace("{date}", run_date.isoformat()))


class RetryConfig(BaseModel):
    """Backoff policy for page fetches."""

    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=1.0, ge=0)
    jitter: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=60.0, ge=0)


class RunConfig(BaseModel):
    """Per-run orchestration options."""

    max_concurrency: int = Field(default=4, ge=1)
    skip_existing: bool = False
    key_column: str = "ConferenceId"
    # None: the first row is a header only when it names key_column.
    has_header: Optional[bool] = None


class AppConfig(BaseModel):
    """Top-level settings document."""

    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    run: RunConfig = Field(default_factory=RunConfig)

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> "AppConfig":
        if self.retry.max_delay < self.retry.backoff_base:
            raise ValueError("retry.max_delay must be >= retry.backoff_base")
        return self

    def require_identity(self) -> IdentityConfig:
        if not self.identity.is_complete:
            missing = [
                name
                for name in ("tenant_id", "client_id", "client_secret")
                if not getattr(self.identity, name)
            ]
            raise ConfigError(f"Identity settings incomplete: missing {', '.join(missing)}")
        return self.identity

    def masked(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        if payload["identity"].get("client_secret"):
            payload["identity"]["client_secret"] = "***"
        return payload


__all__ = [
    "ApiConfig",
    "AppConfig",
    "ConfigError",
    "IdentityConfig",
    "PathsConfig",
    "RetryConfig",
    "RunConfig",
]
