#!/usr/bin/env python3
"""CCT downlighter bridge - keeps a websocket link to every configured fixture."""

import asyncio
import logging
import os
import signal
from typing import Any, Dict, Optional

import config as bridge_config
import state
from fleet import FleetManager
from webserver import BridgeServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class DownlighterBridge:
    """Wires configuration, persisted state, the fleet and the hub API together."""

    def __init__(self, data_dir: Optional[str] = None, config: Optional[Dict[str, Any]] = None, **fleet_kwargs: Any):
        """Initialize the bridge.

        Args:
            data_dir: Directory holding options.json, devices.yaml and the
                state file. If None, auto-detected.
            config: Already loaded config (skips reading files)
            fleet_kwargs: Extra FleetManager arguments (connector, scheduler)
        """
        self.data_dir = data_dir
        self.config = config if config is not None else bridge_config.load_config_from_files(data_dir)
        logging.getLogger().setLevel(self.config["log_level"].upper())

        self.fleet = FleetManager.from_config(self.config, **fleet_kwargs)
        self.server = BridgeServer(self.fleet, port=self.config["port"])
        self.stop_event: Optional[asyncio.Event] = None

    def _state_file(self) -> Optional[str]:
        if self.data_dir:
            return os.path.join(self.data_dir, state.STATE_FILENAME)
        return None

    def reload(self) -> None:
        """Re-read the config files and reconcile the fleet with them.

        Timing settings and the port only take effect after a restart.
        """
        logger.info("Reloading configuration...")
        config = bridge_config.load_config_from_files(self.data_dir)
        self.fleet.sync(config["devices"])

    def request_stop(self) -> None:
        if self.stop_event is not None:
            self.stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        handlers = {
            signal.SIGINT: self.request_stop,
            signal.SIGTERM: self.request_stop,
        }
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = self.reload
        for sig, handler in handlers.items():
            try:
                loop.add_signal_handler(sig, handler)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handlers not supported for {sig}")

    async def run(self) -> None:
        """Run until a stop is requested."""
        self.stop_event = asyncio.Event()

        state.init(self._state_file())
        self.fleet.sync(self.config["devices"])
        if not self.fleet.controllers:
            logger.warning("No devices configured, serving the API only")

        self.fleet.start()
        await self.server.start()
        self._install_signal_handlers()

        try:
            await self.stop_event.wait()
        finally:
            logger.info("Shutting down...")
            await self.server.stop()
            await self.fleet.stop()


def main():
    """Main entry point."""
    bridge = DownlighterBridge(os.getenv("DATA_DIR"))

    try:
        asyncio.run(bridge.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
