"""Config file loading and auto-discovery for caddy-fleet.

Searches for ``caddy-fleet.yaml`` in the current directory and parent
directories, parses it, and resolves the data directory against the
config file's location.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from caddy_fleet.client.admin import ClientTimeouts

CONFIG_FILENAME = "caddy-fleet.yaml"
DATA_DIR_ENV = "CADDY_FLEET_DATA_DIR"

DEFAULT_DATA_DIR = "./data"
DEFAULT_AUDIT_MAX_ENTRIES = 10_000
DEFAULT_RETENTION_DAYS = 30


class ConfigError(Exception):
    """Raised when the config file is present but invalid."""


@dataclass(frozen=True)
class FleetConfig:
    """Parsed caddy-fleet configuration."""

    config_path: Path | None = None
    data_dir: str = DEFAULT_DATA_DIR
    audit_max_entries: int = DEFAULT_AUDIT_MAX_ENTRIES
    metrics_retention_days: int = DEFAULT_RETENTION_DAYS
    timeouts: ClientTimeouts = field(default_factory=ClientTimeouts)
    log_level: str = "INFO"

    @property
    def registry_path(self) -> Path:
        return Path(self.data_dir) / "instances.json"

    @property
    def metrics_dir(self) -> Path:
        return Path(self.data_dir) / "metrics"

    @property
    def audit_path(self) -> Path:
        return Path(self.data_dir) / "audit.jsonl"


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``caddy-fleet.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> FleetConfig:
    """Load a caddy-fleet config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``FleetConfig`` (all defaults).

    ``CADDY_FLEET_DATA_DIR`` overrides ``data_dir`` in every case.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    config = FleetConfig() if config_path is None else _parse_config(config_path)

    env_dir = os.environ.get(DATA_DIR_ENV)
    if env_dir:
        config = replace(config, data_dir=str(Path(env_dir).resolve()))
    return config


def _parse_config(config_path: Path) -> FleetConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    base = config_path.parent
    data_dir = str((base / data.get("data_dir", DEFAULT_DATA_DIR)).resolve())

    return FleetConfig(
        config_path=config_path,
        data_dir=data_dir,
        audit_max_entries=_positive_int(
            data, "audit_max_entries", DEFAULT_AUDIT_MAX_ENTRIES, config_path,
        ),
        metrics_retention_days=_positive_int(
            data, "metrics_retention_days", DEFAULT_RETENTION_DAYS, config_path,
        ),
        timeouts=_parse_timeouts(data.get("timeouts"), config_path),
        log_level=str(data.get("log_level", "INFO")).upper(),
    )


def _positive_int(data: dict[str, Any], key: str, default: int, path: Path) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"'{key}' must be a positive integer in {path}, got {value!r}")
    return value


def _parse_timeouts(raw: Any, path: Path) -> ClientTimeouts:
    if raw is None:
        return ClientTimeouts()
    if not isinstance(raw, dict):
        raise ConfigError(f"'timeouts' must be a mapping in {path}")

    defaults = ClientTimeouts()
    values: dict[str, float] = {}
    for key in ("ping", "default", "long"):
        value = raw.get(key, getattr(defaults, key))
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"'timeouts.{key}' must be a positive number in {path}")
        values[key] = float(value)
    return ClientTimeouts(**values)
