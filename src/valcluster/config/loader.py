# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/config/loader.py

import logging
import os
import tomllib
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ConfigError, ConfigReason
from .models import ClusterConfig

log = logging.getLogger("valcluster")

CONFIG_ENV_VAR = "VALCLUSTER_CONFIG"

# pydantic field -> error reason, checked in this order
_FIELD_REASONS = (
    ("node_count", ConfigReason.INVALID_NODE_COUNT),
    ("network_mode", ConfigReason.UNKNOWN_NETWORK_MODE),
)


def resolve_config_path(explicit: str | Path | None = None) -> Path:
    """
    Config path priority:

    1. explicit path (``--config``)
    2. ``VALCLUSTER_CONFIG`` environment variable
    """
    if explicit:
        return Path(explicit)
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    raise ConfigError(
        f"No config given: pass --config or set {CONFIG_ENV_VAR}",
        ConfigReason.MALFORMED_FILE,
    )


def _load_raw(path: Path) -> dict:
    """Load a YAML (with ${ENV_VAR} expansion) or TOML file into a dict."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}", ConfigReason.MALFORMED_FILE) from e

    try:
        if path.suffix == ".toml":
            data = tomllib.loads(raw)
        else:
            data = yaml.safe_load(os.path.expandvars(raw)) or {}
    except (yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot parse config {path}: {e}", ConfigReason.MALFORMED_FILE) from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a mapping at the top level of {path}, got {type(data).__name__}",
            ConfigReason.MALFORMED_FILE,
        )
    return data


def _anchor_paths(data: dict, root: Path) -> None:
    """Relative paths in the config are relative to the config file."""
    for key in ("executable_path", "base_dir"):
        value = data.get(key)
        if isinstance(value, str) and value and not Path(value).is_absolute():
            data[key] = str(root / value)
    genesis = data.get("genesis_params")
    if isinstance(genesis, dict):
        snap = genesis.get("prebaked_snapshot")
        if isinstance(snap, str) and snap and not Path(snap).is_absolute():
            genesis["prebaked_snapshot"] = str(root / snap)


def _reason_for(err: ValidationError) -> ConfigReason:
    failed = {e["loc"][0] for e in err.errors() if e.get("loc")}
    for field, reason in _FIELD_REASONS:
        if field in failed:
            return reason
    return ConfigReason.INVALID_VALUE


def validate_executable(path: Path) -> None:
    if not path.is_file() or not os.access(path, os.X_OK):
        raise ConfigError(
            f"Validator executable {path} does not exist or is not executable",
            ConfigReason.MISSING_EXECUTABLE,
        )


def load_config(path: str | Path) -> ClusterConfig:
    """
    Load and validate a cluster config.

    Nothing is returned unless every check passes: a negative node count,
    an unknown network mode or a missing/non-executable validator binary all
    raise ``ConfigError`` with the matching reason.
    """
    path = Path(path)
    data = _load_raw(path)
    _anchor_paths(data, path.resolve().parent)

    try:
        cfg = ClusterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}", _reason_for(e)) from e

    validate_executable(cfg.executable_path)

    log.debug(
        "loaded config %s: validators=%d mode=%s base_dir=%s",
        path, cfg.node_count, cfg.network_mode.value, cfg.base_dir,
    )
    return cfg
