#!/usr/bin/env python3
"""Persistent websocket link to one CCT downlighter.

The link owns the connection lifecycle for a single fixture:

    DISCONNECTED -> CONNECTING -> ONLINE -> DISCONNECTED -> ...

with DRAINING as the terminal state entered on ``stop()``. Every change of
state goes through ``_transition`` which runs the entry actions for the new
state (arming and cancelling timers, notifying the listener). Three timers
are owned by the link, each a single ``ScheduledTimer`` slot:

- reconnect: fixed interval, armed on every entry into DISCONNECTED
- status: repeating poll that sends ``{"cmd": "STATUS"}`` while ONLINE
- activity: re-armed on every inbound frame; firing drops the connection
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from timers import ScheduledTimer

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL = 15.0  # seconds
DEFAULT_STATUS_INTERVAL = 20.0  # seconds
DEFAULT_ACTIVITY_TIMEOUT = 30.0  # seconds

STATUS_REQUEST = json.dumps({"cmd": "STATUS"})

# A frame is a status response only if it carries all of these
STATUS_FIELDS = ("hostname", "mac", "firmwareVersion")


class ConnectionState(Enum):
    """Lifecycle state of a device link."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ONLINE = "online"
    DRAINING = "draining"


@dataclass
class DeviceStatus:
    """Status telemetry reported by the fixture."""
    hostname: str
    mac: str
    firmware_version: int
    telemetry: Dict[str, Any] = field(default_factory=dict)


def parse_status(frame: Any) -> Optional[DeviceStatus]:
    """Parse an inbound frame as a status response.

    Returns:
        DeviceStatus if the frame is a JSON object carrying hostname, mac and
        firmwareVersion, otherwise None.
    """
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        data = json.loads(frame)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or not all(key in data for key in STATUS_FIELDS):
        return None

    telemetry = {k: v for k, v in data.items() if k not in STATUS_FIELDS}
    return DeviceStatus(
        hostname=str(data["hostname"]),
        mac=str(data["mac"]),
        firmware_version=data["firmwareVersion"],
        telemetry=telemetry,
    )


class LinkListener(ABC):
    """Receiver of link lifecycle and status events."""

    @abstractmethod
    def link_online(self) -> None:
        """Called after the link entered ONLINE."""
        pass

    @abstractmethod
    def link_offline(self) -> None:
        """Called after an ONLINE link dropped to DISCONNECTED."""
        pass

    @abstractmethod
    def status_received(self, status: DeviceStatus) -> None:
        """Called for every status response received while ONLINE."""
        pass


class DeviceLink:
    """Websocket connection manager for one fixture."""

    def __init__(
        self,
        address: str,
        listener: Optional[LinkListener] = None,
        *,
        name: Optional[str] = None,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        status_interval: float = DEFAULT_STATUS_INTERVAL,
        activity_timeout: float = DEFAULT_ACTIVITY_TIMEOUT,
        connector: Optional[Callable[[str], Any]] = None,
        scheduler: Any = None,
    ):
        """Initialize the link.

        Args:
            address: Host (and optional port) of the fixture
            listener: Receiver of lifecycle and status events
            name: Display name used in log messages
            reconnect_interval: Seconds between connection attempts
            status_interval: Seconds between status polls while online
            activity_timeout: Seconds of silence before the link is dropped
            connector: Coroutine function opening a websocket for a URL
                (defaults to websockets.connect)
            scheduler: Object providing call_later (defaults to the running loop)
        """
        self.address = address
        self.name = name or address
        self.listener = listener
        self.state = ConnectionState.DISCONNECTED
        self.connect_attempts = 0

        self._connector = connector or websockets.connect
        self._scheduler = scheduler
        self._websocket = None
        self._connection_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._reconnect_timer = ScheduledTimer(
            "reconnect", reconnect_interval, self._on_reconnect_timer
        )
        self._status_timer = ScheduledTimer(
            "status", status_interval, self._on_status_timer, repeat=True
        )
        self._activity_timer = ScheduledTimer(
            "activity", activity_timeout, self._on_activity_timeout
        )

    @property
    def url(self) -> str:
        return f"ws://{self.address}/ws"

    @property
    def is_online(self) -> bool:
        return self.state is ConnectionState.ONLINE

    @property
    def timers(self) -> tuple:
        return (self._reconnect_timer, self._status_timer, self._activity_timer)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Begin connecting. Must be called from within the event loop."""
        if self.state is not ConnectionState.DISCONNECTED or self._reconnect_timer.active:
            logger.debug(f"[{self.name}] start() ignored in state {self.state.value}")
            return

        scheduler = self._scheduler or asyncio.get_running_loop()
        for timer in self.timers:
            timer.scheduler = scheduler
        self._connect()

    def send(self, frame: str) -> bool:
        """Send a frame if the link is online.

        Best effort: the write is scheduled on the event loop and never queued
        for later delivery.

        Returns:
            True if the frame was handed to the transport, False otherwise
        """
        if self.state is not ConnectionState.ONLINE:
            logger.warning(f"[{self.name}] Not connected, cannot send {frame}")
            return False
        self._write(frame)
        return True

    def stop(self) -> None:
        """Drain the link: close the transport and cancel all timers.

        Terminal and idempotent; safe to call before start().
        """
        if self.state is ConnectionState.DRAINING:
            return
        self._transition(ConnectionState.DRAINING, "stopped")

    async def wait_closed(self) -> None:
        """Wait for the connection task and pending writes to finish."""
        pending = list(self._tasks)
        if self._connection_task is not None:
            pending.append(self._connection_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _transition(self, new_state: ConnectionState, reason: str = "") -> None:
        old_state = self.state
        if old_state is ConnectionState.DRAINING:
            return

        self.state = new_state
        logger.debug(
            f"[{self.name}] {old_state.value} -> {new_state.value}"
            + (f" ({reason})" if reason else "")
        )

        if new_state is ConnectionState.ONLINE:
            self._enter_online()
        elif new_state is ConnectionState.DISCONNECTED:
            self._enter_disconnected(old_state, reason)
        elif new_state is ConnectionState.DRAINING:
            self._enter_draining()

    def _enter_online(self) -> None:
        self._reconnect_timer.cancel()
        self._status_timer.start()
        self._activity_timer.start()
        logger.info(f"[{self.name}] WebSocket connected to {self.url}")
        self._notify("link_online")

    def _enter_disconnected(self, old_state: ConnectionState, reason: str) -> None:
        self._status_timer.cancel()
        self._activity_timer.cancel()
        self._drop_transport()

        if old_state is ConnectionState.ONLINE:
            logger.warning(f"[{self.name}] WebSocket connection lost: {reason}")
            self._notify("link_offline")
        else:
            logger.warning(f"[{self.name}] Could not connect to {self.url}: {reason}")

        logger.info(
            f"[{self.name}] Reconnecting in {self._reconnect_timer.interval:g} seconds..."
        )
        self._reconnect_timer.start()

    def _enter_draining(self) -> None:
        for timer in self.timers:
            timer.cancel()
        task = self._connection_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._drop_transport()
        logger.info(f"[{self.name}] Link stopped")

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    def _connect(self) -> None:
        self._transition(ConnectionState.CONNECTING)
        self.connect_attempts += 1
        logger.info(f"[{self.name}] Connecting to {self.url} (attempt {self.connect_attempts})")
        self._connection_task = asyncio.ensure_future(self._run_connection())

    async def _run_connection(self) -> None:
        """Open the websocket and read from it until it closes."""
        try:
            websocket = await self._connector(self.url)
        except Exception as e:
            self._handle_closed(None, f"{type(e).__name__}: {e}")
            return

        if self.state is not ConnectionState.CONNECTING:
            # Drained while the handshake was in flight
            await self._close_transport(websocket)
            return

        self._websocket = websocket
        self._transition(ConnectionState.ONLINE)

        try:
            async for message in websocket:
                self._handle_message(websocket, message)
            reason = "closed by device"
        except ConnectionClosed as e:
            reason = f"connection closed ({e})"
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
        self._handle_closed(websocket, reason)

    def _handle_message(self, websocket: Any, message: Any) -> None:
        if websocket is not self._websocket or self.state is not ConnectionState.ONLINE:
            return

        # Any traffic counts as liveness
        self._activity_timer.start()

        status = parse_status(message)
        if status is None:
            logger.debug(f"[{self.name}] Ignoring frame: {message!r}")
            return
        logger.debug(f"[{self.name}] Status received: {status}")
        self._notify("status_received", status)

    def _handle_closed(self, websocket: Any, reason: str) -> None:
        if self.state not in (ConnectionState.CONNECTING, ConnectionState.ONLINE):
            return
        if websocket is not self._websocket:
            # Event from a connection that has already been replaced
            return
        self._transition(ConnectionState.DISCONNECTED, reason)

    def _drop_transport(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            self._spawn(self._close_transport(websocket))

    async def _close_transport(self, websocket: Any) -> None:
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"[{self.name}] Error closing websocket: {e}")

    def _write(self, frame: str) -> None:
        self._spawn(self._transmit(self._websocket, frame))

    async def _transmit(self, websocket: Any, frame: str) -> None:
        try:
            await websocket.send(frame)
            logger.debug(f"[{self.name}] Sent {frame}")
        except Exception as e:
            # The reader notices the broken connection and reconnects
            logger.warning(f"[{self.name}] Send failed for {frame}: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Timer callbacks
    # ------------------------------------------------------------------
    def _on_reconnect_timer(self) -> None:
        if self.state is not ConnectionState.DISCONNECTED:
            return
        logger.info(f"[{self.name}] Attempting to reconnect WebSocket...")
        self._connect()

    def _on_status_timer(self) -> None:
        if self.state is ConnectionState.ONLINE:
            self._write(STATUS_REQUEST)

    def _on_activity_timeout(self) -> None:
        if self.state is not ConnectionState.ONLINE:
            return
        self._handle_closed(
            self._websocket,
            f"no traffic for {self._activity_timer.interval:g} seconds",
        )

    def _notify(self, method: str, *args: Any) -> None:
        if self.listener is None:
            return
        try:
            getattr(self.listener, method)(*args)
        except Exception as e:
            logger.error(f"[{self.name}] Error in listener {method}: {e}")
