"""Configuration loading utilities for the journal server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable JOURNAL_SERVER_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``JOURNAL_SERVER__`` (e.g., JOURNAL_SERVER__STORAGE__DATA_DIR=/tmp/rooms).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "JOURNAL_SERVER__"
ENV_CONFIG_PATH = "JOURNAL_SERVER_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "storage": {"backend": "disk", "data_dir": "data/rooms"},
    "inference": {
        "backend": "http",
        "url": "http://127.0.0.1:8080/v1",
        "model": "llama-3-8b-instruct",
        "timeout": 60.0,
    },
    "chat": {"default_room": "default"},
    "logging": {"level": "INFO"},
}


def _coerce(value: str) -> Any:
    # Attempt to parse simple types (bool, int, float)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix JOURNAL_SERVER__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., JOURNAL_SERVER__INFERENCE__URL -> cfg["inference"]["url"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the journal server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``JOURNAL_SERVER_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file contents, then environment overrides.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))
