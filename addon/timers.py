#!/usr/bin/env python3
"""Owned, re-armable timers on top of the event loop's call_later."""

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ScheduledTimer:
    """A single named timer slot.

    At most one callback is pending per instance. ``start()`` always cancels
    the pending callback before arming a new one, and ``cancel()`` is safe to
    call any number of times. With ``repeat=True`` the timer re-arms itself
    after each firing until cancelled.

    The scheduler is anything with an asyncio-compatible
    ``call_later(delay, callback)`` returning a handle with ``cancel()``;
    normally the running event loop.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Any],
        scheduler: Any = None,
        repeat: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.repeat = repeat
        self.scheduler = scheduler
        self._callback = callback
        self._handle = None
        self.fire_count = 0

    @property
    def active(self) -> bool:
        """True while a callback is pending."""
        return self._handle is not None

    def start(self, interval: Optional[float] = None) -> None:
        """Arm the timer, replacing any pending callback."""
        self.cancel()
        if interval is not None:
            self.interval = interval
        if self.scheduler is None:
            raise RuntimeError(f"Timer '{self.name}' has no scheduler")
        self._handle = self.scheduler.call_later(self.interval, self._fire)

    def cancel(self) -> None:
        """Cancel the pending callback, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.fire_count += 1
        if self.repeat:
            # Re-arm first so the callback may cancel us
            self._handle = self.scheduler.call_later(self.interval, self._fire)
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Error in timer '{self.name}' callback: {e}")
