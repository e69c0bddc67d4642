# Author: Omi Shrestha

"""
Scan and connection lifecycle for a single peripheral.

The connect handshake is an ordered list of HandshakeStep values, each with
a FailurePolicy. An ABORT step that fails stops the handshake and rolls the
peripheral back to DISCOVERED; a CONTINUE step only logs.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Optional

from ble_driver import EventEmitter, ScanConfig
from ble_peripheral import ConnectionState
from rover_config import (
    CONNECT_SETTLE_SECONDS,
    SCAN_ALLOW_DUPLICATES,
    SCAN_SECONDS,
    SCAN_SERVICE_UUIDS,
)
from rover_errors import DriverFailure, PreconditionFailure
from rover_prompts import ALREADY_CONNECTED, Prompt, log_prompt, show_prompt

logger = logging.getLogger(__name__)

EVENT_CHANGED = "changed"


class HandshakeStep(Enum):
    MARK_CONNECTING = 1
    CONNECT = 2
    MARK_CONNECTED = 3
    SETTLE = 4
    DISCOVER_SERVICES = 5
    READ_SIGNAL_STRENGTH = 6
    READ_DESCRIPTORS = 7
    MERGE_SIGNAL_STRENGTH = 8


class FailurePolicy(Enum):
    ABORT = "abort"
    CONTINUE = "continue"


HANDSHAKE_POLICY = {
    HandshakeStep.MARK_CONNECTING: FailurePolicy.ABORT,
    HandshakeStep.CONNECT: FailurePolicy.ABORT,
    HandshakeStep.MARK_CONNECTED: FailurePolicy.ABORT,
    HandshakeStep.SETTLE: FailurePolicy.ABORT,
    HandshakeStep.DISCOVER_SERVICES: FailurePolicy.ABORT,
    HandshakeStep.READ_SIGNAL_STRENGTH: FailurePolicy.ABORT,
    HandshakeStep.READ_DESCRIPTORS: FailurePolicy.CONTINUE,
    HandshakeStep.MERGE_SIGNAL_STRENGTH: FailurePolicy.ABORT,
}


@dataclass
class Session:
    active_connection_id: Optional[str] = None
    is_scanning: bool = False
    is_connected: bool = False

    def to_dict(self):
        return asdict(self)


@dataclass
class HandshakeResult:
    identity: str
    completed: List[HandshakeStep] = field(default_factory=list)
    failed_step: Optional[HandshakeStep] = None
    error: Optional[Exception] = None
    rejected: bool = False

    @property
    def ok(self):
        return not self.rejected and self.failed_step is None


@dataclass
class _Handshake:
    identity: str
    characteristics: list = field(default_factory=list)
    rssi: Optional[int] = None
    linked: bool = False


class SessionController:
    """Owns the Session and drives the radio for scanning and connecting."""

    def __init__(self, driver, registry, permission_gate=None, prompt_handler=log_prompt,
                 scan_seconds=SCAN_SECONDS, settle_seconds=CONNECT_SETTLE_SECONDS,
                 scan_config=None):
        self.driver = driver
        self.registry = registry
        self.permission_gate = permission_gate
        self.prompt_handler = prompt_handler
        self.scan_seconds = scan_seconds
        self.settle_seconds = settle_seconds
        self.scan_config = scan_config or ScanConfig()
        self.session = Session()
        self._pending: Optional[str] = None
        self._events = EventEmitter()
        self._steps = {
            HandshakeStep.MARK_CONNECTING: self._mark_connecting,
            HandshakeStep.CONNECT: self._connect_link,
            HandshakeStep.MARK_CONNECTED: self._mark_connected,
            HandshakeStep.SETTLE: self._settle,
            HandshakeStep.DISCOVER_SERVICES: self._discover_services,
            HandshakeStep.READ_SIGNAL_STRENGTH: self._read_signal_strength,
            HandshakeStep.READ_DESCRIPTORS: self._read_descriptors,
            HandshakeStep.MERGE_SIGNAL_STRENGTH: self._merge_signal_strength,
        }

    # ------------------------------------------------------------- flags

    @property
    def is_scanning(self):
        return self.session.is_scanning

    @property
    def is_connected(self):
        return self.session.is_connected

    def subscribe(self, callback):
        """callback(session_dict) runs whenever a session flag changes."""
        return self._events.add_listener(EVENT_CHANGED, callback)

    def _set(self, **flags):
        changed = False
        for key, value in flags.items():
            if getattr(self.session, key) != value:
                setattr(self.session, key, value)
                changed = True
        if changed:
            self._events.emit(EVENT_CHANGED, self.session.to_dict())

    # -------------------------------------------------------------- scan

    async def start_scan(self):
        """Begin a fixed-length scan. Returns False when one is already running."""
        if self.session.is_scanning:
            logger.debug("[SCAN] already scanning, ignoring request")
            return False

        # Claim the flag before awaiting anything so a second call is refused
        self._set(is_scanning=True)

        # A rescan forgets the connected peripheral, so drop its link too
        if self.session.active_connection_id is not None:
            await self.disconnect()

        # Reset found peripherals before scanning
        self.registry.reset()
        self._set(is_connected=False, active_connection_id=None)

        if self.permission_gate is not None:
            await self.permission_gate.resolve()

        logger.debug("[SCAN] starting scan...")
        try:
            await self.driver.scan(SCAN_SERVICE_UUIDS, self.scan_seconds,
                                   SCAN_ALLOW_DUPLICATES, self.scan_config)
        except DriverFailure as e:
            # is_scanning is cleared by the driver's scan-stopped event
            logger.error("[SCAN] ble scan returned in error: %s", e)
            return True
        logger.debug("[SCAN] scan started")
        return True

    def on_discovered(self, record):
        if not record.name:
            return
        logger.debug("[SCAN] discovered %s (%s) rssi=%s", record.name, record.identity, record.rssi)
        self.registry.upsert(record.identity, name=record.name, rssi=record.rssi)

    def on_scan_stopped(self):
        self._set(is_scanning=False)
        logger.debug("[SCAN] scan is stopped.")

    # -------------------------------------------------------- connection

    def _connection_busy(self):
        if self._pending is not None or self.session.is_connected:
            return True
        return any(r.state is not ConnectionState.DISCOVERED for r in self.registry.values())

    async def connect(self, identity):
        """Run the connect handshake for ``identity``."""
        if self._connection_busy():
            logger.warning("[CONNECT][%s] rejected: a connection is already active", identity)
            if self.session.is_connected:
                await show_prompt(self.prompt_handler, Prompt(ALREADY_CONNECTED, "Return"))
            return HandshakeResult(identity, rejected=True)

        self._pending = identity
        handshake = _Handshake(identity)
        result = HandshakeResult(identity)
        try:
            for step in HandshakeStep:
                try:
                    await self._steps[step](handshake)
                except DriverFailure as e:
                    if HANDSHAKE_POLICY[step] is FailurePolicy.CONTINUE:
                        logger.error("[CONNECT][%s] %s failed, continuing: %s", identity, step.name, e)
                        continue
                    logger.error("[CONNECT][%s] connect error at %s: %s", identity, step.name, e)
                    result.failed_step = step
                    result.error = e
                    await self._rollback(handshake)
                    return result
                result.completed.append(step)
        finally:
            self._pending = None

        logger.info("[CONNECT][%s] handshake complete", identity)
        return result

    async def _mark_connecting(self, handshake):
        self.registry.upsert(handshake.identity, state=ConnectionState.CONNECTING)

    async def _connect_link(self, handshake):
        await self.driver.connect(handshake.identity)
        handshake.linked = True
        logger.debug("[CONNECT][%s] connected.", handshake.identity)

    async def _mark_connected(self, handshake):
        if handshake.identity in self.registry:
            self.registry.upsert(handshake.identity, state=ConnectionState.CONNECTED)
        self._set(is_connected=True, active_connection_id=handshake.identity)

    async def _settle(self, handshake):
        await asyncio.sleep(self.settle_seconds)

    async def _discover_services(self, handshake):
        handshake.characteristics = await self.driver.discover_services(handshake.identity)
        logger.debug("[CONNECT][%s] retrieved %d characteristics",
                     handshake.identity, len(handshake.characteristics))

    async def _read_signal_strength(self, handshake):
        handshake.rssi = await self.driver.read_signal_strength(handshake.identity)
        logger.debug("[CONNECT][%s] retrieved current RSSI value: %s", handshake.identity, handshake.rssi)

    async def _read_descriptors(self, handshake):
        for char in handshake.characteristics:
            for descriptor in char.descriptors:
                try:
                    data = await self.driver.read_descriptor(
                        handshake.identity, char.service, char.specifier, descriptor)
                except DriverFailure as e:
                    logger.error("[CONNECT][%s] failed to retrieve descriptor %s for characteristic %s: %s",
                                 handshake.identity, descriptor, char.characteristic, e)
                    continue
                logger.debug("[CONNECT][%s] descriptor %s read as: %s",
                             handshake.identity, descriptor, bytes(data).hex())

    async def _merge_signal_strength(self, handshake):
        # A new scan may have emptied the registry while we were connecting
        if handshake.identity in self.registry and handshake.rssi is not None:
            self.registry.upsert(handshake.identity, rssi=handshake.rssi)

    async def _rollback(self, handshake):
        if handshake.linked:
            try:
                await self.driver.disconnect(handshake.identity)
            except DriverFailure as e:
                logger.error("[CONNECT][%s] disconnect after failed handshake: %s", handshake.identity, e)
        self._release(handshake.identity)

    def _release(self, identity):
        record = self.registry.get(identity)
        if record is not None and record.state is not ConnectionState.DISCOVERED:
            self.registry.upsert(identity, state=ConnectionState.DISCOVERED)
        if self.session.active_connection_id == identity:
            self._set(is_connected=False, active_connection_id=None)

    async def disconnect(self):
        """Drop the active connection. Returns False when nothing was connected."""
        identity = self.session.active_connection_id
        if identity is None:
            return False
        try:
            await self.driver.disconnect(identity)
        except DriverFailure as e:
            logger.error("[BLE] Disconnect error: %s", e)
        self._release(identity)
        logger.info("[BLE] Disconnected from %s.", identity)
        return True

    def on_peripheral_disconnected(self, identity):
        self._release(identity)

    async def active_connection(self):
        """Identity of the connected peripheral, or None."""
        identity = self.session.active_connection_id
        if not self.session.is_connected or identity is None:
            return None
        try:
            connected = await self.driver.list_connected()
        except DriverFailure as e:
            logger.error("[BLE] could not list connected peripherals: %s", e)
            return None
        return identity if identity in connected else None

    async def require_connection(self):
        identity = await self.active_connection()
        if identity is None:
            raise PreconditionFailure("no connected peripheral")
        return identity
