#!/usr/bin/env python3
"""Fleet manager - one controller/link pair per configured downlighter."""

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from device_controller import CharacteristicCallback, DeviceController, DeviceIdentity
from device_link import (
    DEFAULT_ACTIVITY_TIMEOUT,
    DEFAULT_RECONNECT_INTERVAL,
    DEFAULT_STATUS_INTERVAL,
    DeviceLink,
)
from state import DeviceStateStore

logger = logging.getLogger(__name__)


def device_id_for(address: str) -> str:
    """Return a stable id for a fixture address.

    Derived from the address only, so renaming a device keeps its id and its
    persisted state.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, address.strip().lower()))


class FleetManager:
    """Builds and tears down DeviceController + DeviceLink pairs."""

    def __init__(
        self,
        *,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        status_interval: float = DEFAULT_STATUS_INTERVAL,
        activity_timeout: float = DEFAULT_ACTIVITY_TIMEOUT,
        connector: Optional[Callable[[str], Any]] = None,
        scheduler: Any = None,
    ):
        self.reconnect_interval = reconnect_interval
        self.status_interval = status_interval
        self.activity_timeout = activity_timeout
        self._connector = connector
        self._scheduler = scheduler
        self.controllers: Dict[str, DeviceController] = {}
        self._listeners: List[CharacteristicCallback] = []
        self._started = False

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs: Any) -> "FleetManager":
        """Create a fleet using the timing settings of a loaded config."""
        return cls(
            reconnect_interval=config["reconnect_interval"],
            status_interval=config["status_interval"],
            activity_timeout=config["activity_timeout"],
            **kwargs,
        )

    def get(self, device_id: str) -> Optional[DeviceController]:
        return self.controllers.get(device_id)

    def add_listener(self, callback: CharacteristicCallback) -> None:
        """Subscribe to characteristic updates of every current and future device."""
        self._listeners.append(callback)
        for controller in self.controllers.values():
            controller.add_listener(callback)

    def remove_listener(self, callback: CharacteristicCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)
        for controller in self.controllers.values():
            controller.remove_listener(callback)

    def _create(self, device_id: str, identity: DeviceIdentity) -> DeviceController:
        controller = DeviceController(device_id, identity, DeviceStateStore(device_id))
        link = DeviceLink(
            identity.address,
            name=identity.name,
            reconnect_interval=self.reconnect_interval,
            status_interval=self.status_interval,
            activity_timeout=self.activity_timeout,
            connector=self._connector,
            scheduler=self._scheduler,
        )
        controller.attach_link(link)
        for callback in self._listeners:
            controller.add_listener(callback)
        return controller

    def sync(self, devices: Iterable[Dict[str, Any]]) -> None:
        """Reconcile running pairs with the configured device list.

        Args:
            devices: Validated device dicts (ip, name, restore_state)
        """
        configured: Dict[str, DeviceIdentity] = {}
        for device in devices:
            identity = DeviceIdentity(
                name=device.get("name") or device["ip"],
                address=device["ip"],
                restore_state=bool(device.get("restore_state", False)),
            )
            device_id = device_id_for(identity.address)
            if device_id in configured:
                logger.warning(f"Duplicate device address {identity.address}, ignoring '{identity.name}'")
                continue
            configured[device_id] = identity

        # Remove accessories that are no longer configured
        for device_id in list(self.controllers):
            if device_id not in configured:
                controller = self.controllers.pop(device_id)
                logger.info(f"Removing accessory: {controller.name}")
                controller.destroy()
                controller.store.forget()

        for device_id, identity in configured.items():
            existing = self.controllers.get(device_id)
            if existing is not None:
                if existing.identity == identity:
                    continue
                # Identity is immutable; rebuild the pair with the new settings
                logger.info(f"Updating accessory: {existing.name} -> {identity.name}")
                existing.destroy()
            elif DeviceStateStore(device_id).exists():
                logger.info(f"Restoring existing accessory from cache: {identity.name}")
            else:
                logger.info(f"Adding new accessory: {identity.name}")

            controller = self._create(device_id, identity)
            self.controllers[device_id] = controller
            if self._started:
                controller.start()

    def start(self) -> None:
        """Start every link. Must be called from within the event loop."""
        self._started = True
        for controller in self.controllers.values():
            controller.start()

    async def stop(self) -> None:
        """Drain every link and wait for the transports to close."""
        self._started = False
        for controller in self.controllers.values():
            controller.destroy()
        for controller in self.controllers.values():
            if controller.link is not None:
                await controller.link.wait_closed()
        logger.info(f"Stopped {len(self.controllers)} device link(s)")
