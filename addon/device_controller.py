#!/usr/bin/env python3
"""Per-fixture controller: desired state, push policy and responsiveness.

One DeviceController exists for each configured downlighter. It owns the
DesiredState the hub sees, persists it on every change, sends it to the
fixture only while the link is online, and turns link lifecycle events into
the hub-visible "responding" flag.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from color_model import (
    MAX_BRIGHTNESS,
    MAX_MIREDS,
    MIN_BRIGHTNESS,
    MIN_MIREDS,
    DesiredState,
    build_frame,
)
from device_link import DeviceLink, DeviceStatus, LinkListener
from state import DeviceStateStore

logger = logging.getLogger(__name__)

# Characteristic names published to hub subscribers
CHAR_ON = "On"
CHAR_BRIGHTNESS = "Brightness"
CHAR_COLOR_TEMPERATURE = "ColorTemperature"
CHAR_INFORMATION = "AccessoryInformation"

MANUFACTURER = "CCT Downlighter"
MODEL = "CCT-DL1"
DEFAULT_SERIAL = "CCT-001"


class BridgeError(Exception):
    """Base class for bridge errors surfaced to the hub."""


class DeviceNotRespondingError(BridgeError):
    """Raised when the hub reads the primary characteristic of an offline device."""

    def __init__(self, name: str):
        super().__init__(f"{name} is not responding")
        self.name = name


@dataclass(frozen=True)
class DeviceIdentity:
    """Configured identity of a fixture. Immutable for a controller's lifetime."""
    name: str
    address: str
    restore_state: bool = False


@dataclass
class AccessoryInformation:
    """Read-only metadata shown by the hub."""
    manufacturer: str = MANUFACTURER
    model: str = MODEL
    serial_number: str = DEFAULT_SERIAL
    firmware_revision: str = ""
    hostname: Optional[str] = None


CharacteristicCallback = Callable[["DeviceController", str, Any], None]


class DeviceController(LinkListener):
    """Hub-facing controller for one downlighter."""

    def __init__(
        self,
        device_id: str,
        identity: DeviceIdentity,
        store: Optional[DeviceStateStore] = None,
        link: Optional[DeviceLink] = None,
    ):
        """Initialize the controller and load persisted state.

        Args:
            device_id: Stable id derived from the fixture's address
            identity: Name, address and restore-on-reconnect flag
            store: Persisted state scoped to this device
            link: Connection to the fixture (can be attached later)
        """
        self.device_id = device_id
        self.identity = identity
        self.store = store or DeviceStateStore(device_id)
        self.desired: DesiredState = self.store.load()
        self.responding = False
        self.status: Optional[DeviceStatus] = None
        self.information = AccessoryInformation()
        self.link: Optional[DeviceLink] = None
        self._listeners: List[CharacteristicCallback] = []

        if link is not None:
            self.attach_link(link)

        logger.debug(f"[{self.name}] Loaded state: {self.desired}")

    @property
    def name(self) -> str:
        return self.identity.name

    def attach_link(self, link: DeviceLink) -> None:
        """Bind the device link and register as its listener."""
        self.link = link
        link.listener = self

    # ------------------------------------------------------------------
    # Hub subscribers
    # ------------------------------------------------------------------
    def add_listener(self, callback: CharacteristicCallback) -> None:
        """Subscribe to characteristic updates."""
        self._listeners.append(callback)

    def remove_listener(self, callback: CharacteristicCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _publish(self, characteristic: str, value: Any) -> None:
        for callback in list(self._listeners):
            try:
                callback(self, characteristic, value)
            except Exception as e:
                logger.error(f"[{self.name}] Error in {characteristic} listener: {e}")

    # ------------------------------------------------------------------
    # Set / get handlers
    # ------------------------------------------------------------------
    def set_on(self, value: Any) -> None:
        """Handle "SET" requests for the On characteristic."""
        if isinstance(value, bool):
            on = value
        elif isinstance(value, int) and value in (0, 1):
            on = bool(value)
        else:
            raise ValueError(f"On must be a boolean, got {value!r}")
        self._apply(CHAR_ON, "on", on)

    def get_on(self) -> bool:
        """Handle "GET" requests for the On characteristic.

        Raises:
            DeviceNotRespondingError: while the fixture is offline
        """
        if not self.responding:
            raise DeviceNotRespondingError(self.name)
        return self.desired.on

    def set_brightness(self, value: Any) -> None:
        """Handle "SET" requests for the Brightness characteristic."""
        self._apply(
            CHAR_BRIGHTNESS,
            "brightness",
            _validate_int(CHAR_BRIGHTNESS, value, MIN_BRIGHTNESS, MAX_BRIGHTNESS),
        )

    def get_brightness(self) -> int:
        return self.desired.brightness

    def set_color_temperature(self, value: Any) -> None:
        """Handle "SET" requests for the ColorTemperature characteristic (mireds)."""
        self._apply(
            CHAR_COLOR_TEMPERATURE,
            "color_temperature",
            _validate_int(CHAR_COLOR_TEMPERATURE, value, MIN_MIREDS, MAX_MIREDS),
        )

    def get_color_temperature(self) -> int:
        return self.desired.color_temperature

    def _apply(self, characteristic: str, attribute: str, value: Any) -> None:
        setattr(self.desired, attribute, value)
        self.store.save(self.desired)
        logger.debug(f"[{self.name}] Set Characteristic {characteristic} -> {value}")
        self._push_state()
        self._publish(characteristic, value)

    def _push_state(self) -> bool:
        """Send the current desired state if the link is online."""
        if self.link is None or not self.link.is_online:
            logger.debug(f"[{self.name}] Offline, state cached: {self.desired}")
            return False
        return self.link.send(build_frame(self.desired))

    # ------------------------------------------------------------------
    # Link events
    # ------------------------------------------------------------------
    def link_online(self) -> None:
        self._mark_responding()
        if self.identity.restore_state:
            logger.info(f"[{self.name}] Restoring state: {self.desired}")
            self._push_state()

    def link_offline(self) -> None:
        if not self.responding:
            return
        self.responding = False
        logger.warning(f"[{self.name}] Device not responding")
        self._publish(CHAR_ON, DeviceNotRespondingError(self.name))

    def status_received(self, status: DeviceStatus) -> None:
        self.status = status
        info = AccessoryInformation(
            serial_number=status.mac,
            firmware_revision=str(status.firmware_version),
            hostname=status.hostname,
        )
        if info != self.information:
            self.information = info
            logger.info(
                f"[{self.name}] Device info: host={info.hostname}, mac={info.serial_number}, "
                f"firmware={info.firmware_revision}"
            )
            self._publish(CHAR_INFORMATION, asdict(info))

        # Status traffic is evidence of liveness on its own
        self._mark_responding()

    def _mark_responding(self) -> None:
        if self.responding:
            return
        self.responding = True
        logger.info(f"[{self.name}] Device responding")
        self._publish(CHAR_ON, self.desired.on)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.link is not None:
            self.link.start()

    def destroy(self) -> None:
        """Drain the link and cancel its timers. Safe to call more than once."""
        if self.link is not None:
            self.link.stop()

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the accessory for the hub API."""
        return {
            "id": self.device_id,
            "name": self.name,
            "address": self.identity.address,
            "restore_state": self.identity.restore_state,
            "responding": self.responding,
            "connection_state": self.link.state.value if self.link else None,
            "on": self.desired.on,
            "brightness": self.desired.brightness,
            "color_temperature": self.desired.color_temperature,
            "information": asdict(self.information),
            "telemetry": dict(self.status.telemetry) if self.status else {},
        }


def _validate_int(name: str, value: Any, minimum: int, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{name} must be a whole number, got {value!r}")
        value = int(value)
    if not minimum <= value <= maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}, got {value}")
    return value
