"""Shared configuration loader for utxoshell."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import ConfigurationError

DEFAULT_HOME_DIR = Path.home() / ".utxoshell"
DEFAULT_CONFIG_PATH = DEFAULT_HOME_DIR / "config.yaml"
DEFAULT_STORE_FILENAME = "store.yaml"
_CONFIG_PATH_OVERRIDE: Path | None = None

ENV_PREFIX = "UTXOSHELL_"


@dataclass
class ShellConfig:
    """Runtime settings for stores, provider clients and the invocation engine."""

    store_path: Path
    log_level: str = "INFO"
    request_timeout: float = 30.0
    max_retries: int = 4
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    confirm_attempts: int = 10
    confirm_interval: float = 5.0
    case_sensitive_names: bool = False
    max_fee_lovelace: int = 5_000_000


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    return None


def _coerce_number(raw: Any, kind: type, *, key: str, source: str) -> Any:
    if raw is None:
        return None
    try:
        value = kind(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {key} in {source}: {raw}") from exc
    if value < 0:
        raise ConfigurationError(f"{key} in {source} must not be negative: {raw}")
    return value


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


_NUMERIC_FIELDS: dict[str, type] = {
    "request_timeout": float,
    "max_retries": int,
    "backoff_base": float,
    "backoff_max": float,
    "confirm_attempts": int,
    "confirm_interval": float,
    "max_fee_lovelace": int,
}


def load_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ShellConfig:
    """Load settings from an optional YAML file, ``UTXOSHELL_*`` variables and overrides.

    Precedence is overrides, then environment, then the file, then defaults.
    """

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )

    file_config = _load_config_file(path, required=explicit_path)
    override_map = dict(overrides or {})

    def env_value(key: str) -> str | None:
        return env_map.get(f"{ENV_PREFIX}{key.upper()}")

    home_dir = _first_value(env_value("home"), default=None)
    default_store = (
        Path(home_dir).expanduser() / DEFAULT_STORE_FILENAME
        if home_dir
        else path.parent / DEFAULT_STORE_FILENAME
    )
    store_path = _first_value(
        override_map.get("store_path"),
        env_value("store"),
        file_config.get("store_path"),
        default=default_store,
    )

    resolved: dict[str, Any] = {}
    for key, kind in _NUMERIC_FIELDS.items():
        resolved[key] = _first_value(
            _coerce_number(override_map.get(key), kind, key=key, source="overrides"),
            _coerce_number(env_value(key), kind, key=key, source="environment"),
            _coerce_number(file_config.get(key), kind, key=key, source=str(path)),
        )

    log_level = _first_value(
        override_map.get("log_level"), env_value("log_level"), file_config.get("log_level"), "INFO"
    )
    case_sensitive = _first_value(
        _coerce_bool(override_map.get("case_sensitive_names")),
        _coerce_bool(env_value("case_sensitive_names")),
        _coerce_bool(file_config.get("case_sensitive_names")),
        False,
    )

    log_level = str(log_level).strip().upper()
    if log_level not in logging.getLevelNamesMapping():
        raise ConfigurationError(f"Unknown log_level: {log_level}")

    config = ShellConfig(
        store_path=Path(store_path).expanduser(),
        log_level=log_level,
        case_sensitive_names=bool(case_sensitive),
        **{key: value for key, value in resolved.items() if value is not None},
    )
    if config.backoff_max < config.backoff_base:
        raise ConfigurationError("backoff_max must be greater than or equal to backoff_base")
    return config
