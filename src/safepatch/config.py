"""YAML configuration for SafePatch projects."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

DEFAULT_CONFIG_NAME = "safepatch.yaml"
BACKUP_DIR_ENV = "SAFEPATCH_BACKUP_DIR"


class ConfigError(ValueError):
    """Raised when a configuration file cannot be loaded."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProjectSection(_Section):
    root: str = "."


class PathsSection(_Section):
    backups: str = ".safepatch/backups"
    db_path: str = ".safepatch/history.sqlite"
    suggestions: str = ".safepatch/suggestions.json"


class BackupSection(_Section):
    enabled: bool = True
    keep: int = Field(default=10, ge=0)


class ApplySection(_Section):
    strict: bool = False


class LoggingSection(_Section):
    level: str = "INFO"


class SafePatchConfig(_Section):
    """Validated configuration with paths resolved against ``base_dir``."""

    project: ProjectSection = Field(default_factory=ProjectSection)
    paths: PathsSection = Field(default_factory=PathsSection)
    backup: BackupSection = Field(default_factory=BackupSection)
    apply: ApplySection = Field(default_factory=ApplySection)
    logging: LoggingSection = Field(default_factory=LoggingSection)

    _base_dir: Path = PrivateAttr(default_factory=Path.cwd)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def with_base_dir(self, base_dir: Path | str) -> "SafePatchConfig":
        self._base_dir = Path(base_dir).resolve()
        return self

    def _resolve(self, value: str) -> Path:
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = self._base_dir / candidate
        return candidate.resolve()

    @property
    def project_root(self) -> Path:
        return self._resolve(self.project.root)

    @property
    def backup_dir(self) -> Path:
        return self._resolve(self.paths.backups)

    @property
    def db_path(self) -> Path:
        return self._resolve(self.paths.db_path)

    @property
    def suggestions_path(self) -> Path:
        return self._resolve(self.paths.suggestions)


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    backup_dir = (env.get(BACKUP_DIR_ENV) or "").strip()
    if backup_dir:
        paths = dict(data.get("paths") or {})
        paths["backups"] = backup_dir
        data["paths"] = paths
    return data


def load_config(
    config_path: Optional[Path | str] = None,
    *,
    env: Mapping[str, str] | None = None,
) -> SafePatchConfig:
    """Load ``config_path`` (default ``./safepatch.yaml``); a missing file yields defaults."""
    path = Path(config_path) if config_path is not None else Path.cwd() / DEFAULT_CONFIG_NAME
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise ConfigError(f"Failed to parse config {path}: {error}") from error
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration {path} must be a mapping at the top level.")
        data = loaded

    data = _apply_env_overrides(data, os.environ if env is None else env)
    try:
        config = SafePatchConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration in {path}: {error}") from error
    return config.with_base_dir(path.resolve().parent)


__all__ = [
    "BACKUP_DIR_ENV",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "SafePatchConfig",
    "load_config",
]
