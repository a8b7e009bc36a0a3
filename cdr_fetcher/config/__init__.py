"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    ApiConfig,
    AppConfig,
    ConfigError,
    IdentityConfig,
    PathsConfig,
    RetryConfig,
    RunConfig,
)

__all__ = [
    "ApiConfig",
    "AppConfig",
    "ConfigError",
    "ConfigLocator",
    "ConfigRepository",
    "IdentityConfig",
    "PathsConfig",
    "RetryConfig",
    "RunConfig",
]
