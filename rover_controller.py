# Author: Omi Shrestha

"""
Top-level wiring: one driver, one registry, one session, one dispatcher and
one radar mapper. Driver listeners are registered in ``start()`` and always
released in ``close()``; use ``async with RoverController(...)``.
"""

import logging
from contextlib import ExitStack

from ble_commands import RADAR_SWEEP, CommandDispatcher
from ble_driver import (
    EVENT_DISCONNECTED,
    EVENT_DISCOVER,
    EVENT_SCAN_STOPPED,
    EVENT_VALUE_UPDATED,
    full_uuid,
)
from ble_permissions import PermissionGate
from ble_registry import DiscoveryRegistry
from ble_session import SessionController
from radar_mapper import RadarSampleMapper
from rover_config import CONNECT_SETTLE_SECONDS, CONTROL_CHAR_UUID, SCAN_SECONDS
from rover_prompts import log_prompt

logger = logging.getLogger(__name__)


class RoverController:
    def __init__(self, driver, permission_gate=None, prompt_handler=log_prompt,
                 scan_seconds=SCAN_SECONDS, settle_seconds=CONNECT_SETTLE_SECONDS):
        self.driver = driver
        self.registry = DiscoveryRegistry()
        self.permission_gate = permission_gate or PermissionGate()
        self.session = SessionController(
            driver, self.registry,
            permission_gate=self.permission_gate,
            prompt_handler=prompt_handler,
            scan_seconds=scan_seconds,
            settle_seconds=settle_seconds,
        )
        self.dispatcher = CommandDispatcher(self.session, driver, prompt_handler=prompt_handler)
        self.radar = RadarSampleMapper()
        self.radar_mode = False
        self._listeners = None

    @property
    def started(self):
        return self._listeners is not None

    async def start(self):
        if self.started:
            return
        with ExitStack() as stack:
            events = self.driver.events
            for event, handler in (
                (EVENT_DISCOVER, self.session.on_discovered),
                (EVENT_SCAN_STOPPED, self.session.on_scan_stopped),
                (EVENT_VALUE_UPDATED, self._on_value_updated),
                (EVENT_DISCONNECTED, self._on_disconnected),
            ):
                stack.callback(events.add_listener(event, handler).remove)
            await self.permission_gate.resolve()
            # Keep the registrations past the with-block; close() unwinds them
            self._listeners = stack.pop_all()
        logger.info("[BLE] controller started")

    async def close(self):
        listeners, self._listeners = self._listeners, None
        try:
            await self.driver.close()
        finally:
            if listeners is not None:
                logger.debug("[BLE] removing listeners")
                listeners.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _on_value_updated(self, update):
        if full_uuid(update.characteristic) != full_uuid(CONTROL_CHAR_UUID):
            return
        self.radar.on_value_updated(update)

    def _on_disconnected(self, identity):
        self.session.on_peripheral_disconnected(identity)

    # ----------------------------------------------------------- actions

    async def start_scan(self):
        return await self.session.start_scan()

    async def connect(self, identity):
        return await self.session.connect(identity)

    async def disconnect(self):
        self.radar_mode = False
        return await self.session.disconnect()

    async def send(self, intent):
        sent = await self.dispatcher.dispatch(intent)
        if intent is RADAR_SWEEP:
            if sent:
                self.radar_mode = True
            else:
                logger.debug("[RADAR] Radar failed to scan")
        return sent

    async def scan_radar(self):
        logger.debug("[RADAR] start Radar scanning...")
        return await self.send(RADAR_SWEEP)

    def leave_radar(self):
        self.radar_mode = False

    def state(self):
        return {
            "session": self.session.session.to_dict(),
            "speed": self.dispatcher.speed,
            "radar_mode": self.radar_mode,
            "registry_version": self.registry.version,
            "peripherals": [r.to_dict() for r in self.registry.values()],
        }
