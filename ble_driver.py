# Author: Omi Shrestha

"""
Radio driver layer.

RadioDriver is the capability set the controller needs from the BLE stack.
BleakRadioDriver implements it on top of bleak; tests provide their own
subclass. Discovery, scan-stopped, notification and disconnect events are
delivered through ``driver.events``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError
from bleak.uuids import normalize_uuid_str

from ble_peripheral import PeripheralRecord
from rover_errors import DriverFailure

logger = logging.getLogger(__name__)

# Event names
EVENT_DISCOVER = "discover"               # handler(record: PeripheralRecord)
EVENT_SCAN_STOPPED = "scan_stopped"       # handler()
EVENT_VALUE_UPDATED = "value_updated"     # handler(update: ValueUpdate)
EVENT_DISCONNECTED = "disconnected"       # handler(identity: str)

DRIVER_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


class Subscription:
    """Handle returned by EventEmitter.add_listener; ``remove()`` is idempotent."""

    def __init__(self, emitter, event, handler):
        self._emitter = emitter
        self.event = event
        self.handler = handler
        self.active = True

    def remove(self):
        if self.active:
            self._emitter._remove(self.event, self.handler)
            self.active = False


class EventEmitter:
    """Minimal named-event emitter used by drivers and observable state."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}

    def add_listener(self, event, handler) -> Subscription:
        self._listeners.setdefault(event, []).append(handler)
        return Subscription(self, event, handler)

    def _remove(self, event, handler):
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event=None):
        if event is None:
            return sum(len(h) for h in self._listeners.values())
        return len(self._listeners.get(event, []))

    def emit(self, event, *args):
        for handler in list(self._listeners.get(event, [])):
            try:
                handler(*args)
            except Exception:
                logger.exception("[EVENT] %s handler failed", event)


@dataclass(frozen=True)
class ScanConfig:
    """Scan tuning. Match mode and callback type only apply to Android stacks."""

    scan_mode: str = "low_latency"
    match_mode: str = "sticky"
    callback_type: str = "all_matches"

    @property
    def scanning_mode(self):
        return "passive" if self.scan_mode == "low_power" else "active"


@dataclass(frozen=True)
class CharacteristicInfo:
    service: str
    characteristic: str
    properties: tuple = ()
    descriptors: tuple = ()       # descriptor UUIDs
    handle: Optional[int] = None  # ATT handle; unique even when UUIDs repeat

    @property
    def specifier(self):
        """Handle when known, otherwise the UUID."""
        return self.handle if self.handle is not None else self.characteristic


@dataclass(frozen=True)
class ValueUpdate:
    identity: str
    service: Optional[str]
    characteristic: str
    value: List[int] = field(default_factory=list)


def full_uuid(uuid):
    """Expand a 16-bit short UUID such as 'ffe1' to its 128-bit form."""
    return normalize_uuid_str(uuid)


class RadioDriver:
    """Capability set consumed by the session controller and command dispatcher."""

    def __init__(self):
        self.events = EventEmitter()

    async def scan(self, service_uuids, duration, allow_duplicates, config: ScanConfig):
        raise NotImplementedError

    async def connect(self, identity):
        raise NotImplementedError

    async def disconnect(self, identity):
        raise NotImplementedError

    async def discover_services(self, identity) -> List[CharacteristicInfo]:
        raise NotImplementedError

    async def read_signal_strength(self, identity) -> Optional[int]:
        raise NotImplementedError

    async def read_descriptor(self, identity, service_id, characteristic_id, descriptor_id) -> bytes:
        raise NotImplementedError

    async def enable_notifications(self, identity, service_id, characteristic_id):
        raise NotImplementedError

    async def write_without_response(self, identity, service_id, characteristic_id, data):
        raise NotImplementedError

    async def read(self, identity, service_id, characteristic_id) -> bytes:
        raise NotImplementedError

    async def list_connected(self) -> List[str]:
        raise NotImplementedError

    async def close(self):
        """Release scanner and links. Default: nothing to release."""


class BleakRadioDriver(RadioDriver):
    """RadioDriver backed by bleak (BlueZ, CoreBluetooth, WinRT)."""

    def __init__(self, connect_timeout=15.0):
        super().__init__()
        self.connect_timeout = connect_timeout
        self._scanner: Optional[BleakScanner] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._seen = set()
        self._allow_duplicates = True
        self._devices: Dict[str, BLEDevice] = {}
        self._rssi: Dict[str, int] = {}
        self._clients: Dict[str, BleakClient] = {}
        self._notifying = set()

    # ------------------------------------------------------------------ scan

    async def scan(self, service_uuids, duration, allow_duplicates, config: ScanConfig):
        if self._scanner is not None:
            raise DriverFailure("scan", message="scan already running")

        self._seen = set()
        self._allow_duplicates = allow_duplicates
        logger.debug("[SCAN] mode=%s match=%s callback=%s duplicates=%s",
                     config.scan_mode, config.match_mode, config.callback_type, allow_duplicates)

        try:
            scanner = BleakScanner(
                detection_callback=self._on_detection,
                service_uuids=[full_uuid(u) for u in service_uuids] or None,
                scanning_mode=config.scanning_mode,
                bluez={"filters": {"DuplicateData": allow_duplicates}},
            )
            await scanner.start()
        except DRIVER_ERRORS as e:
            # Nothing else will ever report this scan as stopped
            self.events.emit(EVENT_SCAN_STOPPED)
            raise DriverFailure("scan", message=str(e)) from e

        self._scanner = scanner
        self._stop_task = asyncio.create_task(self._stop_after(duration))

    async def _stop_after(self, duration):
        try:
            await asyncio.sleep(duration)
        finally:
            await self._stop_scanner()

    async def _stop_scanner(self):
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except DRIVER_ERRORS as e:
            logger.error("[SCAN] stop failed: %s", e)
        self.events.emit(EVENT_SCAN_STOPPED)

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData):
        if not self._allow_duplicates and device.address in self._seen:
            return
        self._seen.add(device.address)
        self._devices[device.address] = device
        if adv.rssi is not None:
            self._rssi[device.address] = adv.rssi

        record = PeripheralRecord(
            identity=device.address,
            name=device.name or adv.local_name,
            rssi=adv.rssi,
        )
        self.events.emit(EVENT_DISCOVER, record)

    # ------------------------------------------------------------ connection

    def _client(self, identity) -> BleakClient:
        client = self._clients.get(identity)
        if client is None or not client.is_connected:
            raise DriverFailure("lookup", identity, "not connected")
        return client

    async def connect(self, identity):
        existing = self._clients.get(identity)
        if existing is not None:
            if existing.is_connected:
                logger.debug("[BLE] %s already connected, reusing link", identity)
                return
            self._clients.pop(identity, None)

        target = self._devices.get(identity, identity)
        try:
            client = BleakClient(
                target,
                disconnected_callback=lambda c: self._on_disconnected(identity, c),
                timeout=self.connect_timeout,
            )
            await client.connect()
        except DRIVER_ERRORS as e:
            raise DriverFailure("connect", identity, str(e)) from e
        self._clients[identity] = client
        logger.info("[BLE] Connected to %s", identity)

    def _on_disconnected(self, identity, client=None):
        # A stale client's callback must not drop a newer link
        current = self._clients.get(identity)
        if client is not None and current is not None and current is not client:
            return
        self._clients.pop(identity, None)
        self._notifying = {key for key in self._notifying if key[0] != identity}
        logger.info("[BLE] %s disconnected", identity)
        self.events.emit(EVENT_DISCONNECTED, identity)

    async def disconnect(self, identity):
        client = self._clients.pop(identity, None)
        if client is None:
            return
        try:
            if client.is_connected:
                await client.disconnect()
        except EOFError:
            # D-Bus connection already closed
            pass
        except DRIVER_ERRORS as e:
            raise DriverFailure("disconnect", identity, str(e)) from e

    async def list_connected(self):
        return [identity for identity, client in self._clients.items() if client.is_connected]

    # ------------------------------------------------------------------ GATT

    async def discover_services(self, identity):
        client = self._client(identity)
        # bleak resolves the service table while connecting
        characteristics = []
        for service in client.services:
            for char in service.characteristics:
                characteristics.append(CharacteristicInfo(
                    service=service.uuid,
                    characteristic=char.uuid,
                    properties=tuple(char.properties),
                    descriptors=tuple(d.uuid for d in char.descriptors),
                    handle=char.handle,
                ))
        logger.debug("[BLE] %s exposes %d characteristics", identity, len(characteristics))
        return characteristics

    async def read_signal_strength(self, identity):
        # No portable RSSI read for a live link; report the last advertisement
        return self._rssi.get(identity)

    def _characteristic(self, client, service_id, characteristic_id):
        """Resolve a characteristic by ATT handle (int) or by service/characteristic UUID.

        bleak raises BleakError when a UUID matches more than one service or
        characteristic; that surfaces as DriverFailure like every other radio error.
        """
        try:
            if isinstance(characteristic_id, int):
                char = client.services.get_characteristic(characteristic_id)
            else:
                service = client.services.get_service(full_uuid(service_id))
                if service is None:
                    raise DriverFailure("lookup", message=f"service {service_id} not found")
                char = service.get_characteristic(full_uuid(characteristic_id))
        except DRIVER_ERRORS as e:
            raise DriverFailure("lookup", message=str(e)) from e
        if char is None:
            raise DriverFailure("lookup", message=f"characteristic {characteristic_id} not found")
        return char

    async def read_descriptor(self, identity, service_id, characteristic_id, descriptor_id):
        client = self._client(identity)
        char = self._characteristic(client, service_id, characteristic_id)
        try:
            descriptor = char.get_descriptor(
                descriptor_id if isinstance(descriptor_id, int) else full_uuid(descriptor_id))
        except DRIVER_ERRORS as e:
            raise DriverFailure("read_descriptor", identity, str(e)) from e
        if descriptor is None:
            raise DriverFailure("read_descriptor", identity, f"descriptor {descriptor_id} not found")
        try:
            return bytes(await client.read_gatt_descriptor(descriptor.handle))
        except DRIVER_ERRORS as e:
            raise DriverFailure("read_descriptor", identity, str(e)) from e

    async def enable_notifications(self, identity, service_id, characteristic_id):
        key = (identity, full_uuid(characteristic_id))
        if key in self._notifying:
            return
        client = self._client(identity)
        char = self._characteristic(client, service_id, characteristic_id)

        def notify_handler(sender, data: bytearray):
            self.events.emit(EVENT_VALUE_UPDATED, ValueUpdate(
                identity=identity,
                service=service_id,
                characteristic=characteristic_id,
                value=list(data),
            ))

        try:
            await client.start_notify(char, notify_handler)
        except DRIVER_ERRORS as e:
            raise DriverFailure("enable_notifications", identity, str(e)) from e
        self._notifying.add(key)
        logger.info("[BLE] Subscribed to notifications for %s", identity)

    async def write_without_response(self, identity, service_id, characteristic_id, data):
        client = self._client(identity)
        char = self._characteristic(client, service_id, characteristic_id)
        try:
            await client.write_gatt_char(char, bytes(data), response=False)
        except DRIVER_ERRORS as e:
            raise DriverFailure("write", identity, str(e)) from e

    async def read(self, identity, service_id, characteristic_id):
        client = self._client(identity)
        char = self._characteristic(client, service_id, characteristic_id)
        try:
            return bytes(await client.read_gatt_char(char))
        except DRIVER_ERRORS as e:
            raise DriverFailure("read", identity, str(e)) from e

    async def close(self):
        if self._stop_task is not None and not self._stop_task.done():
            self._stop_task.cancel()
            try:
                await self._stop_task
            except asyncio.CancelledError:
                pass
        await self._stop_scanner()
        for identity in list(self._clients):
            try:
                await self.disconnect(identity)
            except DriverFailure as e:
                logger.error("[BLE] Disconnect error: %s", e)
