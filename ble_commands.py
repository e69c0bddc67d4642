# Author: Omi Shrestha

"""
Single-byte command model of the rover firmware.

Movement bytes are ``direction offset + speed // 5``; the four offsets are
64 apart and speed // 5 tops out at 51, so each direction owns its own range.
A radar sweep is the fixed byte 52.
"""

import logging
from enum import Enum

from rover_config import (
    CONTROL_CHAR_UUID,
    CONTROL_SERVICE_UUID,
    OFFSET_BACKWARD,
    OFFSET_FORWARD,
    OFFSET_LEFT,
    OFFSET_RIGHT,
    RADAR_SWEEP_VALUE,
    SPEED_DEFAULT,
    SPEED_DIVISOR,
    SPEED_MAX,
    SPEED_MIN,
)
from rover_errors import DriverFailure, PreconditionFailure
from rover_prompts import CONNECT_FIRST, Prompt, log_prompt, show_prompt

logger = logging.getLogger(__name__)


class Direction(Enum):
    LEFT = OFFSET_LEFT
    RIGHT = OFFSET_RIGHT
    BACKWARD = OFFSET_BACKWARD
    FORWARD = OFFSET_FORWARD


class RadarSweep(Enum):
    RADAR_SWEEP = RADAR_SWEEP_VALUE


RADAR_SWEEP = RadarSweep.RADAR_SWEEP


def parse_intent(name):
    """Map 'left', 'forward', 'radar'... to an intent. Raises ValueError for unknown names."""
    key = name.strip().upper()
    if key in ("RADAR", "RADAR_SWEEP"):
        return RADAR_SWEEP
    try:
        return Direction[key]
    except KeyError:
        raise ValueError(f"Unknown intent: {name}") from None


def command_value(intent, speed):
    """Byte sent for ``intent`` at ``speed`` (0-255)."""
    if intent is RADAR_SWEEP:
        return RADAR_SWEEP_VALUE
    return intent.value + speed // SPEED_DIVISOR


class CommandDispatcher:
    """Writes command bytes to the control characteristic of the connected rover."""

    def __init__(self, session, driver, prompt_handler=log_prompt, speed=SPEED_DEFAULT):
        self.session = session
        self.driver = driver
        self.prompt_handler = prompt_handler
        self._speed = SPEED_DEFAULT
        self.set_speed(speed)

    @property
    def speed(self):
        return self._speed

    def set_speed(self, value):
        value = int(value)
        if not SPEED_MIN <= value <= SPEED_MAX:
            raise ValueError(f"speed must be between {SPEED_MIN} and {SPEED_MAX}, got {value}")
        self._speed = value
        return value

    async def _prepare(self):
        """Resolve the connected peripheral and make sure the control channel notifies."""
        identity = await self.session.require_connection()
        await self.driver.discover_services(identity)
        await self.driver.enable_notifications(identity, CONTROL_SERVICE_UUID, CONTROL_CHAR_UUID)
        return identity

    async def _prompt_scan(self):
        logger.debug("[SEND] Please connect a BLE device first")
        await show_prompt(self.prompt_handler, Prompt(CONNECT_FIRST, "Scan", self.session.start_scan))

    async def dispatch(self, intent):
        """
        Send ``intent`` to the connected rover.

        Returns True only when a radar sweep was written, which is the caller's
        cue to switch to the radar view. Movement commands always return False.
        """
        try:
            identity = await self._prepare()
        except PreconditionFailure:
            await self._prompt_scan()
            return False
        except DriverFailure as e:
            logger.error("[SEND] Error preparing peripheral: %s", e)
            return False

        value = command_value(intent, self._speed)
        try:
            await self.driver.write_without_response(
                identity, CONTROL_SERVICE_UUID, CONTROL_CHAR_UUID, [value])
        except DriverFailure as e:
            logger.error("[SEND] Error sending data to peripheral: %s", e)
            return False

        logger.info("[SEND] %s -> %d", intent.name, value)
        return intent is RADAR_SWEEP

    async def request_read(self):
        """Explicitly read the control characteristic. Returns the bytes or None."""
        try:
            identity = await self._prepare()
            data = await self.driver.read(identity, CONTROL_SERVICE_UUID, CONTROL_CHAR_UUID)
        except PreconditionFailure:
            await self._prompt_scan()
            return None
        except DriverFailure as e:
            logger.error("[READ] Error occurred: %s", e)
            return None
        logger.debug("[READ] %s", bytes(data).hex())
        return bytes(data)
