#!/usr/bin/env python3
"""State management for the downlighter bridge - per-device desired state.

This module persists the hub-visible state of every configured fixture
(power, brightness, color temperature) so it survives a restart.

State is:
- Loaded from JSON at startup
- Held in memory for fast access
- Written to JSON immediately after every change
- Keyed by the device id derived from the fixture's network address
"""

import json
import logging
import os
import tempfile
from typing import Any, Dict, List, Optional

from color_model import (
    DEFAULT_BRIGHTNESS,
    DEFAULT_COLOR_TEMPERATURE,
    MAX_BRIGHTNESS,
    MAX_MIREDS,
    MIN_BRIGHTNESS,
    MIN_MIREDS,
    DesiredState,
)

logger = logging.getLogger(__name__)

STATE_FILENAME = "downlighter_state.json"

# In-memory state dict
_state: Dict[str, Dict[str, Any]] = {}

# Path to state file (set during init)
_state_file_path: Optional[str] = None


def _get_default_device_state() -> Dict[str, Any]:
    """Return default persisted record for a new device."""
    return {
        "On": False,
        "Brightness": DEFAULT_BRIGHTNESS,
        "ColorTemperature": DEFAULT_COLOR_TEMPERATURE,  # mireds
    }


def get_data_directory() -> str:
    """Get the appropriate data directory based on environment."""
    env_dir = os.getenv("DATA_DIR")
    if env_dir:
        os.makedirs(env_dir, exist_ok=True)
        return env_dir
    elif os.path.exists("/data"):
        return "/data"
    else:
        # Running in development - use local .data directory
        data_dir = os.path.join(os.path.dirname(__file__), ".data")
        os.makedirs(data_dir, exist_ok=True)
        return data_dir


def init(state_file: Optional[str] = None) -> None:
    """Initialize the state module and load state from disk.

    Args:
        state_file: Optional path to state file. If not provided, uses default location.
    """
    global _state_file_path, _state

    if state_file:
        _state_file_path = state_file
    else:
        _state_file_path = os.path.join(get_data_directory(), STATE_FILENAME)

    _state = {}

    if os.path.exists(_state_file_path):
        try:
            with open(_state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)

            if isinstance(data, dict) and isinstance(data.get("devices"), dict):
                _state = data["devices"]
                logger.info(f"Loaded state for {len(_state)} device(s) from {_state_file_path}")
            else:
                logger.warning(f"Invalid state file format at {_state_file_path}, starting fresh")

        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load state from {_state_file_path}: {e}")
    else:
        logger.info(f"No state file found at {_state_file_path}, starting fresh")


def _save() -> None:
    """Save current state to disk."""
    if not _state_file_path:
        logger.error("State module not initialized, cannot save")
        return

    directory = os.path.dirname(_state_file_path) or "."
    try:
        # Write to a temp file first so a crash never leaves a torn file
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp", prefix=".state_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"devices": _state}, f, indent=2)
            os.replace(tmp_path, _state_file_path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug(f"Saved state to {_state_file_path}")
    except OSError as e:
        logger.error(f"Failed to save state to {_state_file_path}: {e}")


def get_device(device_id: str) -> Dict[str, Any]:
    """Get the persisted record for a device.

    Args:
        device_id: The device id

    Returns:
        Dict with On, Brightness and ColorTemperature. Unknown devices and
        missing keys fall back to defaults.
    """
    record = _get_default_device_state()
    record.update(_state.get(device_id, {}))
    return record


def has_device(device_id: str) -> bool:
    """Return True if a record was persisted for the device."""
    return device_id in _state


def update_device(device_id: str, updates: Dict[str, Any]) -> None:
    """Update the persisted record for a device.

    Args:
        device_id: The device id
        updates: Dict of fields to update
    """
    if device_id not in _state:
        _state[device_id] = _get_default_device_state()

    _state[device_id].update(updates)
    _save()
    logger.debug(f"Updated state for device {device_id}: {updates}")


def remove_device(device_id: str) -> None:
    """Forget a device that is no longer configured."""
    if _state.pop(device_id, None) is not None:
        _save()
        logger.info(f"Removed stored state for device {device_id}")


def get_device_ids() -> List[str]:
    """Return ids of all devices with persisted state."""
    return list(_state.keys())


def _stored_int(device_id: str, key: str, value: Any, minimum: int, maximum: int, default: int) -> int:
    """Coerce one stored numeric field, or return its default if unusable."""
    try:
        number = None if isinstance(value, bool) else int(value)
    except (TypeError, ValueError):
        number = None
    if number is None:
        logger.warning(f"Invalid stored {key} for device {device_id}: {value!r}, using {default}")
        return default
    if not minimum <= number <= maximum:
        logger.warning(
            f"Stored {key} for device {device_id} out of range {minimum}-{maximum}: {number}, using {default}"
        )
        return default
    return number


def load_desired_state(device_id: str) -> DesiredState:
    """Build a DesiredState from the persisted record.

    Each field is checked against the characteristic bounds on its own; a
    missing, malformed or out-of-range value falls back to that field's
    default while the other fields are kept.
    """
    record = get_device(device_id)
    on = record["On"]
    if not isinstance(on, bool):
        logger.warning(f"Invalid stored On for device {device_id}: {on!r}, using False")
        on = False
    return DesiredState(
        on=on,
        brightness=_stored_int(
            device_id, "Brightness", record["Brightness"],
            MIN_BRIGHTNESS, MAX_BRIGHTNESS, DEFAULT_BRIGHTNESS,
        ),
        color_temperature=_stored_int(
            device_id, "ColorTemperature", record["ColorTemperature"],
            MIN_MIREDS, MAX_MIREDS, DEFAULT_COLOR_TEMPERATURE,
        ),
    )


def save_desired_state(device_id: str, desired: DesiredState) -> None:
    """Overwrite the persisted record with a DesiredState."""
    update_device(device_id, {
        "On": desired.on,
        "Brightness": desired.brightness,
        "ColorTemperature": desired.color_temperature,
    })


class DeviceStateStore:
    """Persisted state scoped to one device."""

    def __init__(self, device_id: str):
        self.device_id = device_id

    def exists(self) -> bool:
        return has_device(self.device_id)

    def load(self) -> DesiredState:
        return load_desired_state(self.device_id)

    def save(self, desired: DesiredState) -> None:
        save_desired_state(self.device_id, desired)

    def forget(self) -> None:
        remove_device(self.device_id)
