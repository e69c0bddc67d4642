# Author: Omi Shrestha

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class ConnectionState(Enum):
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class PeripheralRecord:
    """Represents a discovered BLE peripheral and where it is in the connect lifecycle."""

    identity: str                               # Opaque device id (MAC address or OS UUID)
    name: Optional[str] = None                  # Advertised local name
    rssi: Optional[int] = None                  # Last known signal strength (dBm)
    state: ConnectionState = ConnectionState.DISCOVERED

    def merged(self, **fields):
        """Return a copy with ``fields`` applied on top; unknown keys raise TypeError."""
        return replace(self, **fields)

    @property
    def connecting(self):
        return self.state is ConnectionState.CONNECTING

    @property
    def connected(self):
        return self.state is ConnectionState.CONNECTED

    def to_dict(self):
        return {
            "id": self.identity,
            "name": self.name,
            "rssi": self.rssi,
            "state": self.state.value,
            "connecting": self.connecting,
            "connected": self.connected,
        }
