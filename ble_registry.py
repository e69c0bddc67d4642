# Author: Omi Shrestha

"""
Discovered-peripheral bookkeeping for one scan session.

Every mutation publishes a new read-only snapshot and bumps ``version`` so
that observers can tell any two states apart.
"""

from types import MappingProxyType

from ble_driver import EventEmitter
from ble_peripheral import PeripheralRecord

EVENT_CHANGED = "changed"


class DiscoveryRegistry:
    """Holds PeripheralRecords keyed by identity, in insertion order."""

    def __init__(self):
        self._snapshot = MappingProxyType({})
        self.version = 0
        self._events = EventEmitter()

    def subscribe(self, callback):
        """callback(snapshot, version) runs after every change. Returns a Subscription."""
        return self._events.add_listener(EVENT_CHANGED, callback)

    def _publish(self, records):
        self._snapshot = MappingProxyType(records)
        self.version += 1
        self._events.emit(EVENT_CHANGED, self._snapshot, self.version)

    def reset(self):
        self._publish({})

    def upsert(self, identity, **fields):
        """Insert ``identity`` or merge ``fields`` into the existing record (last write wins)."""
        fields.pop("identity", None)
        records = dict(self._snapshot)
        current = records.get(identity)
        if current is None:
            records[identity] = PeripheralRecord(identity=identity, **fields)
        else:
            records[identity] = current.merged(**fields)
        self._publish(records)
        return records[identity]

    def values(self):
        return list(self._snapshot.values())

    def get(self, identity):
        return self._snapshot.get(identity)

    @property
    def snapshot(self):
        return self._snapshot

    def __contains__(self, identity):
        return identity in self._snapshot

    def __len__(self):
        return len(self._snapshot)
