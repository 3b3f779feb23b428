#!/usr/bin/env python3
"""Color model for CCT downlighters.

Converts the hub-facing light state (power, brightness percentage and color
temperature in mireds) into the two-channel intensity pair the fixture
understands, and encodes that pair as the ``#CCWW00`` frame sent over the
websocket.

Channel scaling policy
----------------------
The color temperature is mapped linearly onto a "cool saturation" between
0 and 100, with the Kelvin input clamped to the fixture range first. Each
channel is then scaled by brightness and floored on its own. The two channels
are never renormalized against each other, so cool + warm can be below the
brightness value because of flooring but never above 100.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

# Fixture Kelvin range covered by the cool/warm LED pair
MIN_KELVIN = 2200
MAX_KELVIN = 7000

# Characteristic bounds exposed to the hub
MIN_MIREDS = 140  # ~7143K, coolest the hub may request
MAX_MIREDS = 500  # 2000K, warmest the hub may request
MIN_BRIGHTNESS = 0
MAX_BRIGHTNESS = 100

# Highest value a single channel can carry on the wire (0x64)
MAX_CHANNEL = 100

DEFAULT_BRIGHTNESS = 100
DEFAULT_COLOR_TEMPERATURE = 300

OFF_FRAME = "#000000"


@dataclass
class DesiredState:
    """Hub-visible intended output of one fixture."""
    on: bool = False
    brightness: int = DEFAULT_BRIGHTNESS
    color_temperature: int = DEFAULT_COLOR_TEMPERATURE  # mireds


def kelvin_from_mireds(mireds: int) -> int:
    """Convert a mired value to Kelvin, rounded to the nearest integer."""
    if mireds <= 0:
        raise ValueError(f"Color temperature must be a positive mired value, got {mireds}")
    return round(1_000_000 / mireds)


def cool_saturation(kelvin: int) -> float:
    """Map Kelvin onto 0-100 cool saturation with clamped input.

    Values outside [MIN_KELVIN, MAX_KELVIN] are pinned to the range before
    interpolating, so the result never leaves 0-100.
    """
    clamped = max(MIN_KELVIN, min(MAX_KELVIN, kelvin))
    return (clamped - MIN_KELVIN) / (MAX_KELVIN - MIN_KELVIN) * 100


def compute_channels(state: DesiredState) -> Tuple[int, int]:
    """Compute (cool, warm) channel intensities for a light state.

    Args:
        state: The desired light state

    Returns:
        Tuple of cool and warm intensities, each 0-100
    """
    if not state.on:
        return 0, 0

    saturation = cool_saturation(kelvin_from_mireds(state.color_temperature))
    cool = math.floor(saturation * state.brightness / 100)
    warm = math.floor((100 - saturation) * state.brightness / 100)
    return cool, warm


def encode_channels(cool: int, warm: int) -> str:
    """Encode a channel pair as the literal ``#CCWW00`` wire frame."""
    for name, value in (("cool", cool), ("warm", warm)):
        if not 0 <= value <= MAX_CHANNEL:
            raise ValueError(f"{name} channel out of range 0-{MAX_CHANNEL}: {value}")
    return f"#{cool:02X}{warm:02X}00"


def build_frame(state: DesiredState) -> str:
    """Return the wire frame for a light state."""
    return encode_channels(*compute_channels(state))
