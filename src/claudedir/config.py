"""TOML configuration loading for claudedir."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_FILENAME = "claudedir.toml"

DEFAULT_WATCH_DIRS = ("skills", "agents", "rules", "hooks", "prompts", "templates")
DEFAULT_WATCH_FILES = ("CLAUDE.md", "settings.json")
DEFAULT_EPHEMERAL_DIRS = (
    "projects",
    "shell-snapshots",
    "file-history",
    "todos",
    "session-env",
    "debug",
    "cache",
    "downloads",
    "statsig",
    "ide",
)
DEFAULT_BACKUP_ITEMS = (
    "CLAUDE.md",
    "README.md",
    "settings.json",
    "skills",
    "agents",
    "rules",
    "hooks",
    "prompts",
    "templates",
)


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be parsed or validated."""


def _expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return Path(os.path.normpath(expanded))
    return Path(os.path.normpath(base_dir / expanded))


def default_root() -> Path:
    return Path.home() / ".claude"


class Settings(BaseModel):
    """Runtime options for the file store, change stream, and server."""

    model_config = ConfigDict(frozen=True)

    root: Path = Field(default_factory=default_root)
    watch_dirs: tuple[str, ...] = DEFAULT_WATCH_DIRS
    watch_files: tuple[str, ...] = DEFAULT_WATCH_FILES
    heartbeat_interval: float = Field(default=30.0, gt=0)
    debounce_ms: int = Field(default=100, ge=0)
    ephemeral_dirs: tuple[str, ...] = DEFAULT_EPHEMERAL_DIRS
    backup_items: tuple[str, ...] = DEFAULT_BACKUP_ITEMS
    host: str = "127.0.0.1"
    port: int = Field(default=3000, gt=0, lt=65536)
    log_level: str = "INFO"

    @field_validator("root")
    @classmethod
    def _root_is_absolute(cls, value: Path) -> Path:
        if not value.is_absolute():
            raise ValueError(f"root '{value}' must be an absolute path")
        return Path(os.path.normpath(value))

    @field_validator("watch_dirs", "watch_files", "backup_items")
    @classmethod
    def _names_are_plain(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for name in value:
            candidate = Path(name)
            if candidate.is_absolute() or ".." in candidate.parts or len(candidate.parts) != 1:
                raise ValueError(f"'{name}' must be a single name directly under the root")
        return value

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, base_dir: Path) -> "Settings":
        values = dict(raw)
        if "root" in values:
            values["root"] = _expand_path(values["root"], base_dir=base_dir)
        return cls(**values)


def load_config(path: Path | None = None) -> Settings:
    """Load and validate a configuration file.

    Args:
        path: Optional path to the TOML file or to a directory holding
            ``claudedir.toml``. When omitted, ``claudedir.toml`` in the current
            working directory is used if present, otherwise defaults apply.
    """

    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            return Settings()
        path = candidate

    config_path = _resolve_config_path(path)

    try:
        with config_path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Configuration file '{config_path}' is not valid TOML: {exc}") from exc

    section = data.get("settings") or {}
    if not isinstance(section, dict):
        raise ConfigError("The [settings] entry must be a table")

    try:
        return Settings.from_raw(section, base_dir=config_path.parent)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings in '{config_path}': {exc}") from exc


def render_default_config(*, root: str = "~/.claude") -> str:
    """Return a starter configuration document."""

    defaults = Settings(root=default_root())
    data = {
        "settings": {
            "root": root,
            "host": defaults.host,
            "port": defaults.port,
            "log_level": defaults.log_level,
            "heartbeat_interval": defaults.heartbeat_interval,
            "debounce_ms": defaults.debounce_ms,
            "watch_dirs": list(defaults.watch_dirs),
            "watch_files": list(defaults.watch_files),
        }
    }
    return "# claudedir configuration\n\n" + tomli_w.dumps(data)


def _resolve_config_path(path: Path) -> Path:
    path = Path(path)

    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' does not exist")
    if path.is_dir():
        candidate = path / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            raise ConfigError(f"Expected to find '{DEFAULT_CONFIG_FILENAME}' inside '{path}', but none was located")
        path = candidate

    return path.resolve(strict=False)
