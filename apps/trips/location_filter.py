"""
Location Filter
Turns the raw GPS stream into the stream used for zone membership and
trip bookkeeping.
"""

import logging
from collections import deque
from dataclasses import replace
from typing import Deque, Optional

from apps.geofencing.geofence_utils import haversine_distance
from apps.geofencing.types import Coordinate, LocationSample

logger = logging.getLogger(__name__)


class LocationFilter:
    """
    Per-vehicle sample filter. Rules, per incoming sample, in order:

    1. Reject samples whose reported accuracy is worse than the ceiling.
    2. Clear the history on a GPS jump (distance from the newest history
       sample above the jump threshold) instead of smoothing across it.
    3. Append to the bounded history.
    4. Emit the raw sample while inside a zone, otherwise the mean of the
       history (keeping the incoming sample's timestamp and accuracy).
    """

    def __init__(
        self,
        accuracy_ceiling_meters: float = 50.0,
        jump_threshold_meters: float = 100.0,
        window_size: int = 5,
    ):
        """
        Args:
            accuracy_ceiling_meters: Samples reporting a worse accuracy are dropped.
            jump_threshold_meters: A larger move between consecutive samples resets the track.
            window_size: Number of most recent samples averaged outside zones.
        """
        if window_size < 1:
            raise ValueError("Smoothing window must hold at least one sample.")
        self.accuracy_ceiling_meters = accuracy_ceiling_meters
        self.jump_threshold_meters = jump_threshold_meters
        self.window_size = window_size

        self.history: Deque[LocationSample] = deque(maxlen=window_size)
        self.last_accepted: Optional[LocationSample] = None

    def process(self, sample: LocationSample, in_zone: bool) -> Optional[LocationSample]:
        """
        Filter one sample.

        Args:
            sample: Raw sample from the positioning service
            in_zone: True while a trip is open, selects raw output

        Returns:
            The sample to use for zone membership, or None if rejected.
        """
        if (sample.accuracy_meters is not None
                and sample.accuracy_meters > self.accuracy_ceiling_meters):
            logger.debug(f"Rejected sample with accuracy {sample.accuracy_meters:.1f}m "
                         f"(ceiling {self.accuracy_ceiling_meters:.1f}m)")
            return None

        if self.history:
            jump = haversine_distance(self.history[-1].coordinate, sample.coordinate)
            if jump > self.jump_threshold_meters:
                logger.info(f"GPS jump of {jump:.0f}m detected, restarting track")
                self.history.clear()

        self.history.append(sample)
        self.last_accepted = sample

        if in_zone:
            return sample

        return self._smoothed(sample)

    def _smoothed(self, latest: LocationSample) -> LocationSample:
        count = len(self.history)
        avg_lat = sum(s.lat for s in self.history) / count
        avg_lng = sum(s.lng for s in self.history) / count
        return replace(latest, coordinate=Coordinate(lat=avg_lat, lng=avg_lng))

    def reset(self):
        self.history.clear()
        self.last_accepted = None
