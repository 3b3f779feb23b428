#!/usr/bin/env python3
"""Web server exposing the downlighter fleet to a home-automation hub."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from aiohttp import WSMsgType, web
from aiohttp.web import Request, Response

from device_controller import (
    CHAR_BRIGHTNESS,
    CHAR_COLOR_TEMPERATURE,
    CHAR_ON,
    DeviceController,
    DeviceNotRespondingError,
)
from fleet import FleetManager

logger = logging.getLogger(__name__)

# Request body keys -> (setter name, characteristic)
WRITABLE_FIELDS = {
    "on": ("set_on", CHAR_ON),
    "brightness": ("set_brightness", CHAR_BRIGHTNESS),
    "color_temperature": ("set_color_temperature", CHAR_COLOR_TEMPERATURE),
}


class BridgeServer:
    """HTTP + websocket API for the hub integration."""

    def __init__(self, fleet: FleetManager, port: int = 8099, host: str = "0.0.0.0"):
        self.fleet = fleet
        self.port = port
        self.host = host
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.event_clients: Set[web.WebSocketResponse] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.setup_routes()
        self.app.on_shutdown.append(self._close_event_clients)
        fleet.add_listener(self._on_characteristic_update)

    def setup_routes(self):
        """Set up web routes."""
        self.app.router.add_get('/health', self.health_check)
        self.app.router.add_get('/api/devices', self.list_devices)
        self.app.router.add_get('/api/devices/{device_id}', self.get_device)
        self.app.router.add_put('/api/devices/{device_id}', self.update_device)
        self.app.router.add_get('/api/devices/{device_id}/on', self.get_on)
        self.app.router.add_get('/api/events', self.events)

    def _lookup(self, request: Request) -> DeviceController:
        device_id = request.match_info["device_id"]
        controller = self.fleet.get(device_id)
        if controller is None:
            raise web.HTTPNotFound(
                text=json.dumps({"error": f"Unknown device: {device_id}"}),
                content_type="application/json",
            )
        return controller

    async def health_check(self, request: Request) -> Response:
        """Health check endpoint."""
        return web.json_response({"status": "healthy"})

    async def list_devices(self, request: Request) -> Response:
        """List all accessories."""
        devices = [c.to_dict() for c in self.fleet.controllers.values()]
        return web.json_response({"devices": devices})

    async def get_device(self, request: Request) -> Response:
        """Get one accessory snapshot."""
        return web.json_response(self._lookup(request).to_dict())

    async def get_on(self, request: Request) -> Response:
        """Read the On characteristic; 503 while the device is not responding."""
        controller = self._lookup(request)
        try:
            return web.json_response({"on": controller.get_on()})
        except DeviceNotRespondingError as e:
            return web.json_response({"error": str(e)}, status=503)

    async def update_device(self, request: Request) -> Response:
        """Apply characteristic writes from the hub.

        Body is a JSON object with any of on, brightness, color_temperature.
        The first invalid value stops the update with a 400; values applied
        before it stay applied.
        """
        controller = self._lookup(request)
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Body must be a JSON object"}, status=400)

        updates = {k: v for k, v in body.items() if k in WRITABLE_FIELDS}
        unknown = sorted(set(body) - set(WRITABLE_FIELDS))
        if unknown:
            return web.json_response({"error": f"Unknown fields: {', '.join(unknown)}"}, status=400)
        if not updates:
            return web.json_response({"error": "No characteristics to update"}, status=400)

        try:
            # Power last so brightness/color land before the fixture turns on
            for key in sorted(updates, key=lambda k: k == "on"):
                setter, _ = WRITABLE_FIELDS[key]
                getattr(controller, setter)(updates[key])
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        return web.json_response(controller.to_dict())

    async def events(self, request: Request) -> web.WebSocketResponse:
        """Stream characteristic updates to a hub over a websocket."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self.event_clients.add(ws)
        logger.info(f"Event client connected ({len(self.event_clients)} total)")
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning(f"Event client error: {ws.exception()}")
        finally:
            self.event_clients.discard(ws)
            logger.info(f"Event client disconnected ({len(self.event_clients)} total)")
        return ws

    def _on_characteristic_update(self, controller: DeviceController, characteristic: str, value: Any) -> None:
        if not self.event_clients:
            return
        message: Dict[str, Any] = {"device_id": controller.device_id, "characteristic": characteristic}
        if isinstance(value, Exception):
            message["error"] = str(value)
        else:
            message["value"] = value
        for ws in list(self.event_clients):
            task = asyncio.ensure_future(self._send_event(ws, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _send_event(self, ws: web.WebSocketResponse, message: Dict[str, Any]) -> None:
        if ws.closed:
            return
        try:
            await ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            logger.debug(f"Dropping event for closed client: {e}")
            self.event_clients.discard(ws)

    async def _close_event_clients(self, app: web.Application) -> None:
        for ws in list(self.event_clients):
            await ws.close()
        self.event_clients.clear()

    async def start(self):
        """Start the web server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Bridge API server started on port {self.port}")

    async def stop(self):
        """Stop the web server."""
        self.fleet.remove_listener(self._on_characteristic_update)
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
