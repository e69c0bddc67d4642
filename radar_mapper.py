# Author: Omi Shrestha

"""
Radar notifications from the rover.

A notification carries interleaved (angle, distance) pairs, e.g.
[30, 8, 60, 15, 90, 25, 120, 5, 150, 45]. Only the latest sample is kept
and each of the five display angles is bucketed from it independently.
"""

import logging
from enum import Enum

from ble_driver import EventEmitter
from rover_config import RADAR_ANGLES, RADAR_FAR_MAX, RADAR_MID_MAX, RADAR_NEAR_MAX

logger = logging.getLogger(__name__)

EVENT_CHANGED = "changed"


class Bucket(Enum):
    NEAR = "near"
    MID = "mid"
    FAR = "far"
    OUT_OF_RANGE = "out_of_range"


# Display ring per bucket, innermost first; out of range draws nothing
RINGS = {Bucket.NEAR: 1, Bucket.MID: 2, Bucket.FAR: 3, Bucket.OUT_OF_RANGE: None}


def bucket_for(distance):
    if distance <= RADAR_NEAR_MAX:
        return Bucket.NEAR
    if distance <= RADAR_MID_MAX:
        return Bucket.MID
    if distance <= RADAR_FAR_MAX:
        return Bucket.FAR
    return Bucket.OUT_OF_RANGE


def ring_for(bucket):
    return RINGS[bucket]


class RadarSampleMapper:
    def __init__(self, angles=RADAR_ANGLES):
        self.angles = tuple(angles)
        self.latest_sample = ()
        self._classifications = {angle: Bucket.OUT_OF_RANGE for angle in self.angles}
        self._events = EventEmitter()

    def subscribe(self, callback):
        """callback(classifications) runs after every notification."""
        return self._events.add_listener(EVENT_CHANGED, callback)

    @staticmethod
    def classify(sample, angle_id):
        try:
            i = list(sample).index(angle_id)
        except ValueError:
            return Bucket.OUT_OF_RANGE
        if i + 1 >= len(sample):
            return Bucket.OUT_OF_RANGE
        return bucket_for(sample[i + 1])

    def on_notification(self, raw):
        """Replace the current sample with ``raw`` and recompute every angle."""
        self.latest_sample = tuple(raw)
        self._classifications = {
            angle: self.classify(self.latest_sample, angle) for angle in self.angles
        }
        logger.debug("[RADAR] sample=%s -> %s", list(self.latest_sample),
                     {a: b.value for a, b in self._classifications.items()})
        self._events.emit(EVENT_CHANGED, self.classifications())

    def on_value_updated(self, update):
        logger.debug("[RADAR] received data from '%s' with characteristic='%s' and value='%s'",
                     update.identity, update.characteristic, update.value)
        self.on_notification(update.value)

    def classifications(self):
        return dict(self._classifications)

    def clear(self):
        self.on_notification(())

    def to_dict(self):
        return {
            "sample": list(self.latest_sample),
            "angles": [
                {"angle": angle, "bucket": bucket.value, "ring": ring_for(bucket)}
                for angle, bucket in self._classifications.items()
            ],
        }
