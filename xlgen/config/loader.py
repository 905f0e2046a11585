# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Config loader: YAML on disk -> validated, frozen XLGenConfig.

  1. Read the file
  2. Parse it with yaml.safe_load
  3. Validate with pydantic
  4. Return the frozen config

Any failure stops here with a ConfigLoadError or ConfigValidationError.
There are no fallback defaults for a broken file.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from xlgen.config.exceptions import ConfigLoadError, ConfigValidationError
from xlgen.config.schema import XLGenConfig


def _read_text(path: Path) -> str:
    if not path.exists():
        raise ConfigLoadError(f"Config file not found: {path}")
    if not path.is_file():
        raise ConfigLoadError(f"Config path is not a file: {path}")
    try:
        return path.read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigLoadError(f"Cannot read config file {path}: {err}") from err


def _read_yaml_file(config_path: Path) -> dict[str, Any]:
    """
    Read a YAML mapping from disk.

    Raises:
        ConfigLoadError: If the file is missing, unreadable, not YAML, or
            not a mapping at the top level.
    """
    raw_text = _read_text(config_path)

    try:
        parsed = yaml.safe_load(raw_text)
    except yaml.YAMLError as err:
        raise ConfigLoadError(f"Invalid YAML in {config_path}: {err}") from err

    if not isinstance(parsed, dict):
        raise ConfigLoadError(
            f"Config file must contain a YAML mapping (dict), got {type(parsed).__name__}"
        )

    return parsed


def read_json_mapping(json_path: Path) -> dict[str, Any]:
    """
    Read a JSON object from disk, e.g. a model's ``config.json``.

    Raises:
        ConfigLoadError: Same conditions as the YAML reader.
    """
    raw_text = _read_text(json_path)
    try:
        parsed = json.loads(raw_text)
    except json.JSONDecodeError as err:
        raise ConfigLoadError(f"Invalid JSON in {json_path}: {err}") from err
    if not isinstance(parsed, dict):
        raise ConfigLoadError(
            f"{json_path} must contain a JSON object, got {type(parsed).__name__}"
        )
    return parsed


def load_config(config_path: Path) -> XLGenConfig:
    """
    Load, validate, and freeze a YAML config file.

    Args:
        config_path: Path to a YAML config file.

    Returns:
        A validated, immutable XLGenConfig.

    Raises:
        ConfigLoadError: File I/O or YAML parse failures.
        ConfigValidationError: Schema violations (missing fields, wrong types,
            unknown keys, contradictory generation options).
    """
    raw_data = _read_yaml_file(config_path)

    try:
        config = XLGenConfig.model_validate(raw_data)
    except ValidationError as err:
        raise ConfigValidationError(
            f"Config validation failed for {config_path}:\n{err}"
        ) from err

    return config
