#!/usr/bin/env python3
"""Configuration loading for the downlighter bridge.

Settings are merged from, in order:
- built-in defaults
- options.json (add-on options, JSON)
- devices.yaml (standalone installs, YAML)
- environment variables (LOG_LEVEL, BRIDGE_PORT)

The ``devices`` list is validated one entry at a time; invalid entries are
logged and skipped so one typo never takes the whole fleet down.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

import voluptuous as vol
import yaml

from device_link import (
    DEFAULT_ACTIVITY_TIMEOUT,
    DEFAULT_RECONNECT_INTERVAL,
    DEFAULT_STATUS_INTERVAL,
)
from state import get_data_directory

logger = logging.getLogger(__name__)

DEVICE_TYPE_CCT_DOWNLIGHTER = "cct_downlighter"

CONFIG_FILES = ["options.json", "devices.yaml"]

DEFAULT_PORT = 8099
DEFAULT_LOG_LEVEL = "info"

LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]


POSITIVE_SECONDS = vol.All(vol.Coerce(float), vol.Range(min=0.1))


GLOBAL_SCHEMA = vol.Schema(
    {
        vol.Optional("reconnect_interval", default=DEFAULT_RECONNECT_INTERVAL): POSITIVE_SECONDS,
        vol.Optional("status_interval", default=DEFAULT_STATUS_INTERVAL): POSITIVE_SECONDS,
        vol.Optional("activity_timeout", default=DEFAULT_ACTIVITY_TIMEOUT): POSITIVE_SECONDS,
        vol.Optional("port", default=DEFAULT_PORT): vol.All(vol.Coerce(int), vol.Range(min=1, max=65535)),
        vol.Optional("log_level", default=DEFAULT_LOG_LEVEL): vol.All(str, vol.Lower, vol.In(LOG_LEVELS)),
        vol.Optional("devices", default=list): list,
    },
    extra=vol.ALLOW_EXTRA,
)

DEVICE_SCHEMA = vol.Schema(
    {
        vol.Required("ip"): vol.All(str, vol.Strip, vol.Length(min=1)),
        vol.Optional("name"): vol.All(str, vol.Strip, vol.Length(min=1)),
        vol.Required("device_type"): DEVICE_TYPE_CCT_DOWNLIGHTER,
        vol.Optional("restore_state", default=False): vol.Boolean(),
    },
    extra=vol.ALLOW_EXTRA,
)


def _read_file(path: str) -> Optional[Dict[str, Any]]:
    """Read one JSON or YAML config file, returning None if unusable."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.endswith((".yaml", ".yml")):
                part = yaml.safe_load(f)
            else:
                part = json.load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        logger.warning(f"Parse error reading {path}: {e}")
        return None
    except OSError as e:
        logger.warning(f"Could not read config from {path}: {e}")
        return None

    if part is None:
        return {}
    if not isinstance(part, dict):
        logger.warning(f"Ignoring {path}: expected a mapping, got {type(part).__name__}")
        return None
    return part


def validate_devices(devices: Any) -> List[Dict[str, Any]]:
    """Validate the devices list, dropping invalid entries.

    Args:
        devices: Raw ``devices`` value from the config

    Returns:
        List of normalized device dicts with ip, name, device_type, restore_state
    """
    if not isinstance(devices, list):
        logger.error("Invalid configuration format: 'devices' must be a list")
        return []

    valid = []
    for device in devices:
        try:
            normalized = DEVICE_SCHEMA(device)
        except vol.Invalid as e:
            logger.error(f"Invalid device configuration {device!r}: {e}")
            continue
        normalized.setdefault("name", normalized["ip"])
        valid.append(normalized)

    if not valid:
        logger.error("No valid devices found in config")
    return valid


def load_config_from_files(data_dir: Optional[str] = None) -> Dict[str, Any]:
    """Load, merge and validate the bridge configuration.

    Args:
        data_dir: Optional data directory path. If None, auto-detected.

    Returns:
        The validated config dict. ``devices`` holds only valid entries.
    """
    if data_dir is None:
        data_dir = get_data_directory()

    config: Dict[str, Any] = {}

    for filename in CONFIG_FILES:
        path = os.path.join(data_dir, filename)
        if not os.path.exists(path):
            continue
        part = _read_file(path)
        if part is not None:
            config.update(part)
            logger.debug(f"Loaded config from {path}")

    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        config["log_level"] = env_level
    env_port = os.getenv("BRIDGE_PORT")
    if env_port:
        config["port"] = env_port

    try:
        config = GLOBAL_SCHEMA(config)
    except vol.Invalid as e:
        logger.error(f"Invalid configuration ({e}), falling back to defaults for global settings")
        devices = config.get("devices", [])
        config = GLOBAL_SCHEMA({})
        config["devices"] = devices if isinstance(devices, list) else []

    config["devices"] = validate_devices(config["devices"])
    logger.info(f"Loaded configuration with {len(config['devices'])} device(s) from {data_dir}")
    return config
