"""
Configuration files for the detection tool.

Two formats are accepted:
  - the legacy algorithm config, one `key = value` per line with the keys
    threshold, type, model, data and listfile
  - a YAML mapping using the long option names (confidence_threshold,
    file_type, model_file, weights_file, list_file, ...)
"""

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ssd_errors import ConfigError
from ssd_logging import get_logger

logger = get_logger(__name__)

# legacy key -> AlgConfig field
LEGACY_KEYS = {
    "threshold": "confidence_threshold",
    "type": "file_type",
    "model": "model_file",
    "data": "weights_file",
    "listfile": "list_file",
}


@dataclass
class AlgConfig:
    """Values read from a config file; None means not set"""
    confidence_threshold: Optional[float] = None
    file_type: Optional[str] = None
    model_file: Optional[str] = None
    weights_file: Optional[str] = None
    list_file: Optional[str] = None
    mean_value: Optional[str] = None
    mean_file: Optional[str] = None
    backend: Optional[str] = None
    device: Optional[str] = None
    out_file: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


def _parse_threshold(value: Any, path: str) -> float:
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid threshold {value!r} in {path}")
    if not 0.0 <= threshold <= 1.0:
        raise ConfigError(f"Threshold must be within 0.0-1.0, got {threshold} in {path}")
    return threshold


def load_alg_config(path: str) -> AlgConfig:
    """Parse the legacy `key = value` algorithm config"""
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ConfigError(f"Unable to read config {path}: {e}")

    values: Dict[str, Any] = {}
    for line in lines:
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        field_name = LEGACY_KEYS.get(key.strip(" "))
        if field_name is None:
            continue
        values[field_name] = value.strip(" ")

    if "confidence_threshold" in values:
        values["confidence_threshold"] = _parse_threshold(values["confidence_threshold"], path)

    config = AlgConfig(**values)
    logger.debug(f"Loaded algorithm config {path}: {config.as_dict()}")
    return config


def load_yaml_config(path: str) -> AlgConfig:
    try:
        with open(path, "r", encoding="utf-8") as file:
            data = yaml.safe_load(file)
    except OSError as e:
        raise ConfigError(f"Unable to read config {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    known = {f.name for f in fields(AlgConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {path}: {unknown}")

    values = {k: v for k, v in data.items() if k in known and v is not None}
    for key, value in values.items():
        if key != "confidence_threshold":
            values[key] = str(value)
    if "confidence_threshold" in values:
        values["confidence_threshold"] = _parse_threshold(values["confidence_threshold"], path)

    config = AlgConfig(**values)
    logger.debug(f"Loaded YAML config {path}: {config.as_dict()}")
    return config


def load_config(path: str) -> AlgConfig:
    """Load a YAML (.yaml/.yml) or legacy key=value config file"""
    if Path(path).suffix.lower() in (".yaml", ".yml"):
        return load_yaml_config(path)
    return load_alg_config(path)
