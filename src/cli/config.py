"""Locate, read and validate the fact engine's YAML config."""

import os
from pathlib import Path
from typing import Optional

import yaml

from .config_models import FactsConfig

CONFIG_ENV_VAR = "FACTS_CONFIG"

# Environment variables that win over the file, as (env var, dotted config key)
ENV_OVERRIDES = [
    ("FACTS_DB_PATH", "paths.db_path"),
    ("FACTS_CATALOG_URL", "catalog.base_url"),
    ("FACTS_INSTANCE_ID", "coordination.instance_id"),
]


def find_config() -> Optional[Path]:
    """First existing config among $FACTS_CONFIG, ./facts.yaml, ~/.facts/config.yaml."""
    env_path = os.getenv(CONFIG_ENV_VAR)
    candidates = [Path(env_path).expanduser()] if env_path else []
    candidates += [Path.cwd() / "facts.yaml", Path.home() / ".facts" / "config.yaml"]
    return next((c for c in candidates if c.exists()), None)


def _read_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def apply_env_overrides(data: dict) -> dict:
    """Overlay ``ENV_OVERRIDES`` onto raw config data (in place)."""
    for env_var, dotted in ENV_OVERRIDES:
        value = os.getenv(env_var)
        if not value:
            continue
        *parents, leaf = dotted.split(".")
        section = data
        for key in parents:
            if not isinstance(section.get(key), dict):
                section[key] = {}
            section = section[key]
        section[leaf] = value
    return data


def load_config_model(config_path: Optional[Path] = None) -> FactsConfig:
    """Load and validate config. Raises ValueError for anything unusable.

    An explicit ``config_path`` must exist; without one the standard
    locations are searched and defaults apply when none is found.
    """
    if config_path is not None and not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    path = config_path or find_config()
    data = _read_yaml(path) if path else {}

    try:
        return FactsConfig.from_dict(apply_env_overrides(data))
    except Exception as e:
        raise ValueError(f"Config validation failed: {e}")
