import asyncio

import pytest

from ble_driver import (
    EVENT_DISCONNECTED,
    EVENT_DISCOVER,
    EVENT_SCAN_STOPPED,
    EVENT_VALUE_UPDATED,
    CharacteristicInfo,
    RadioDriver,
    ValueUpdate,
)
from ble_peripheral import PeripheralRecord
from rover_controller import RoverController
from rover_errors import DriverFailure

ROVER_ID = "C4:25:01:20:02:8E"
OTHER_ID = "C4:25:01:20:02:8F"


class FakeRadioDriver(RadioDriver):
    """In-memory driver: records every call, fails or suspends on demand."""

    def __init__(self, characteristics=None, rssi=-58):
        super().__init__()
        self.calls = []
        self.failures = {}            # call name -> DriverFailure
        self.gates = {}               # call name -> asyncio.Event to wait on
        self.bad_descriptors = set()
        self.connected = set()
        self.rssi = rssi
        self.read_value = b"\x34"
        self.closed = False
        if characteristics is None:
            characteristics = [
                CharacteristicInfo("ffe0", "ffe1", ("read", "write-without-response", "notify"),
                                   ("2901", "2902")),
                CharacteristicInfo("180a", "2a29", ("read",)),
            ]
        self.characteristics = characteristics

    async def _call(self, name, *args):
        self.calls.append((name, args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def names(self):
        return [name for name, _ in self.calls]

    def args_of(self, name):
        return [args for n, args in self.calls if n == name]

    async def scan(self, service_uuids, duration, allow_duplicates, config):
        await self._call("scan", service_uuids, duration, allow_duplicates, config)

    async def connect(self, identity):
        await self._call("connect", identity)
        self.connected.add(identity)

    async def disconnect(self, identity):
        await self._call("disconnect", identity)
        self.connected.discard(identity)

    async def discover_services(self, identity):
        await self._call("discover_services", identity)
        return list(self.characteristics)

    async def read_signal_strength(self, identity):
        await self._call("read_signal_strength", identity)
        return self.rssi

    async def read_descriptor(self, identity, service_id, characteristic_id, descriptor_id):
        await self._call("read_descriptor", identity, service_id, characteristic_id, descriptor_id)
        if descriptor_id in self.bad_descriptors:
            raise DriverFailure("read_descriptor", identity, "GATT error 0x0e")
        return b"\x01\x00"

    async def enable_notifications(self, identity, service_id, characteristic_id):
        await self._call("enable_notifications", identity, service_id, characteristic_id)

    async def write_without_response(self, identity, service_id, characteristic_id, data):
        await self._call("write_without_response", identity, service_id, characteristic_id, list(data))

    async def read(self, identity, service_id, characteristic_id):
        await self._call("read", identity, service_id, characteristic_id)
        return self.read_value

    async def list_connected(self):
        await self._call("list_connected")
        return sorted(self.connected)

    async def close(self):
        self.closed = True

    # Event helpers
    def discover(self, identity, name="HMSoft", rssi=-60):
        self.events.emit(EVENT_DISCOVER, PeripheralRecord(identity=identity, name=name, rssi=rssi))

    def stop_scan(self):
        self.events.emit(EVENT_SCAN_STOPPED)

    def notify(self, identity, value, characteristic="ffe1"):
        self.events.emit(EVENT_VALUE_UPDATED, ValueUpdate(identity, "ffe0", characteristic, list(value)))

    def drop(self, identity):
        self.connected.discard(identity)
        self.events.emit(EVENT_DISCONNECTED, identity)


class PromptRecorder:
    def __init__(self, answer=False):
        self.answer = answer
        self.prompts = []

    async def __call__(self, prompt):
        self.prompts.append(prompt)
        return self.answer


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def driver():
    return FakeRadioDriver()


@pytest.fixture
def prompts():
    return PromptRecorder()


@pytest.fixture
def controller(driver, prompts):
    return RoverController(driver, prompt_handler=prompts, settle_seconds=0)


async def connected_controller(controller, identity=ROVER_ID):
    """Start ``controller``, discover ``identity`` and run the handshake."""
    await controller.start()
    await controller.start_scan()
    controller.driver.discover(identity)
    controller.driver.stop_scan()
    result = await controller.connect(identity)
    assert result.ok
    return controller
