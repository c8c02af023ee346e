from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .models import Settings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("node.yaml")

_FIELD_TYPES = {f.name: f.type for f in fields(Settings)}
_POSITIVE_FIELDS = ("connect_timeout", "read_timeout", "chunk_size")


def _check_value(path: Path, key: str, value: Any) -> Any:
    """
    Check one settings value against the type of its field. Integers are
    accepted where a float is expected; booleans never stand in for numbers.
    """
    expected = _FIELD_TYPES[key]
    if value is None:
        return None
    if expected == "bool":
        ok = isinstance(value, bool)
    elif expected == "int":
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif expected == "float":
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok:
            value = float(value)
    else:
        ok = isinstance(value, str) and value != ""
    if not ok:
        raise ConfigError(f"Invalid value for {key} in {path}: expected {expected}, got {value!r}")
    if key in _POSITIVE_FIELDS and value <= 0:
        raise ConfigError(f"Invalid value for {key} in {path}: must be positive, got {value!r}")
    return value


def load_config_file(path: Path) -> Dict[str, Any]:
    """
    Read a YAML settings file and return its top-level mapping.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")

    known = set(Settings.field_names())
    unknown = sorted(str(key) for key in data if key not in known)
    if unknown:
        raise ConfigError(f"Unknown keys in {path}: {', '.join(unknown)}")
    return {key: _check_value(path, key, value) for key, value in data.items()}


def load_settings(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """
    Build settings from defaults, then the config file, then CLI overrides.

    An explicit ``config_path`` must exist; the implicit ``node.yaml`` in the
    working directory is only used when present.
    """
    settings = Settings()

    if config_path is not None:
        settings.update(load_config_file(config_path))
        logger.info("Loaded settings from %s", config_path)
    elif DEFAULT_CONFIG_FILE.is_file():
        settings.update(load_config_file(DEFAULT_CONFIG_FILE))
        logger.info("Loaded settings from %s", DEFAULT_CONFIG_FILE.resolve())

    if overrides:
        settings.update(overrides)
    return settings
