"""Settings file discovery and IO for cdr-fetcher."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import AppConfig, ConfigError

HOME_ENV = "CDR_FETCHER_HOME"
SETTINGS_FILENAME = "settings.yaml"
YAML_SUFFIXES = frozenset({".yaml", ".yml"})
IDENTITY_ENV = {
    "tenant_id": "CDR_FETCHER_TENANT_ID",
    "client_id": "CDR_FETCHER_CLIENT_ID",
    "client_secret": "CDR_FETCHER_CLIENT_SECRET",
}


def _load_mapping(path: Path) -> dict:
    with path.open(encoding="utf-8") as stream:
        data = yaml.safe_load(stream) if path.suffix in YAML_SUFFIXES else json.load(stream)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file must contain a mapping: {path}")
    return data


def _dump_mapping(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in YAML_SUFFIXES:
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Project home plus the ``data/`` and ``logs/`` directories under it.

    The home is the explicit ``project_root``, else ``$CDR_FETCHER_HOME``, else
    the working directory.
    """

    project_root: Path | None = None
    data_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        home = self._home(self.project_root)
        self.project_root = home
        self.data_dir = home / "data"
        self.logs_dir = home / "logs"
        for directory in (self.data_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _home(explicit: Path | None) -> Path:
        if explicit is not None:
            return Path(explicit).expanduser().resolve()
        from_env = os.environ.get(HOME_ENV)
        if from_env:
            return Path(from_env).expanduser().resolve()
        return Path.cwd().resolve()

    def settings_path(self) -> Path:
        return self.data_dir / SETTINGS_FILENAME


class ConfigRepository:
    """Load, validate and persist the settings document."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._cache: AppConfig | None = None

    def load(self) -> AppConfig:
        """Return validated settings with env overrides and anchored paths.

        A missing settings file is created with defaults so the user has
        something to edit.
        """

        if self._cache is not None:
            return self._cache
        path = self.locator.settings_path()
        if path.exists():
            payload = _load_mapping(path)
        else:
            payload = AppConfig().model_dump(mode="json")
            _dump_mapping(path, payload)
        self._apply_env(payload)
        try:
            config = AppConfig.model_validate(payload)
        except ValidationError as exc:
            raise ConfigError(f"Invalid settings in {path}:\n{exc}") from exc
        config = config.model_copy(
            update={"paths": config.paths.resolved(self.locator.project_root)}
        )
        self._cache = config
        return config

    def save(self, config: AppConfig) -> Path:
        path = self.locator.settings_path()
        _dump_mapping(path, config.model_dump(mode="json"))
        self._cache = None
        return path

    def init(self, force: bool = False) -> Path:
        path = self.locator.settings_path()
        if path.exists() and not force:
            raise FileExistsError(f"Settings already exist: {path}")
        return self.save(AppConfig())

    @staticmethod
    def _apply_env(payload: dict) -> None:
        identity = payload.setdefault("identity", {})
        if not isinstance(identity, dict):
            raise ConfigError("identity section must be a mapping")
        for field_name, env_name in IDENTITY_ENV.items():
            value = os.environ.get(env_name)
            if value:
                identity[field_name] = value


__all__ = ["ConfigLocator", "ConfigRepository", "HOME_ENV", "IDENTITY_ENV", "SETTINGS_FILENAME"]
