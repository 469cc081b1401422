"""Configuration loading.

Settings come from YAML files, later files overriding earlier ones:

1. ``$XDG_CONFIG_HOME/remindervault/config.yaml``
2. ``.remindervault.yaml`` in the working directory
3. ``remindervault.yaml`` in the working directory

then from ``REMINDERVAULT_*`` environment variables, then from explicit
overrides (CLI flags). The merged mapping is converted into
``StorageSettings``.
"""

import os
from pathlib import Path
from typing import Any

import msgspec
import yaml

TIER_NAMES = ("durable", "flat", "ephemeral")

ENV_PREFIX = "REMINDERVAULT_"


def default_data_dir() -> str:
    """Per-user data directory following the XDG layout."""
    xdg_data_home = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return str(xdg_data_home / "remindervault")


class StorageSettings(msgspec.Struct, kw_only=True):
    """Tunables for tier selection and the individual tiers.

    ``data_dir=None`` runs without any persistent location, leaving only
    the ephemeral tier.
    """

    data_dir: str | None = msgspec.field(default_factory=default_data_dir)
    database_name: str = "reminders.sqlite3"
    flat_store_dir: str = "flat"
    max_size_bytes: int = 5 * 1024 * 1024
    flat_quota_bytes: int | None = None
    connect_timeout: float = 15.0
    operation_timeout: float = 15.0
    probe_timeout: float = 3.0
    quota_probe_limit: int = 10 * 1024 * 1024
    estimate_quota: bool = True
    disabled_tiers: list[str] = msgspec.field(default_factory=list)
    slow_threshold_ms: float = 1000.0
    optimistic_locking: bool = False
    metrics_history: int = 500

    def __post_init__(self):
        unknown = [t for t in self.disabled_tiers if t not in TIER_NAMES]
        if unknown:
            raise ValueError(f"Unknown storage tiers: {', '.join(unknown)}")
        if "ephemeral" in self.disabled_tiers:
            raise ValueError("The ephemeral tier cannot be disabled")
        for name in ("max_size_bytes", "quota_probe_limit", "metrics_history"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("connect_timeout", "operation_timeout", "probe_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def data_path(self) -> Path | None:
        return Path(self.data_dir).expanduser() if self.data_dir is not None else None


def from_file(path: Path) -> dict[str, Any]:
    """Load configuration from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Error reading config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def get_config_paths() -> list[Path]:
    """Get configuration paths in precedence order."""
    xdg_config_home = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return [
        xdg_config_home / "remindervault" / "config.yaml",
        Path(".remindervault.yaml"),
        Path("remindervault.yaml"),
    ]


def env_overrides() -> dict[str, Any]:
    """Settings taken from REMINDERVAULT_* environment variables."""
    overrides: dict[str, Any] = {}
    if data_dir := os.environ.get(f"{ENV_PREFIX}DATA_DIR"):
        overrides["data_dir"] = data_dir
    if max_size := os.environ.get(f"{ENV_PREFIX}MAX_SIZE_BYTES"):
        overrides["max_size_bytes"] = max_size
    if disabled := os.environ.get(f"{ENV_PREFIX}DISABLED_TIERS"):
        overrides["disabled_tiers"] = [t.strip() for t in disabled.split(",") if t.strip()]
    return overrides


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Merge config files and environment variables into one mapping.

    An explicit ``path`` replaces the default search locations and must
    exist.
    """
    config: dict[str, Any] = {}

    if path is not None:
        config = from_file(Path(path))
    else:
        for candidate in get_config_paths():
            if candidate.exists():
                config = merge_configs(config, from_file(candidate))

    return merge_configs(config, env_overrides())


def load_settings(
    path: Path | None = None, overrides: dict[str, Any] | None = None
) -> StorageSettings:
    """Load configuration and convert it into StorageSettings.

    Raises:
        ValueError: if a file is unreadable or a value has the wrong type.
    """
    config = merge_configs(load_config(path), overrides or {})
    try:
        return msgspec.convert(config, StorageSettings, strict=False)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
    """Merge multiple configuration dictionaries."""
    result: dict[str, Any] = {}
    for config in configs:
        result = _deep_merge(result, config)
    return result


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result
