"""
Zone Index
Working set of toll zones near the vehicle, refreshed only after the
vehicle has moved far enough from the last fetch point.
"""

import logging
from typing import List, Optional

from .geofence_utils import haversine_distance, point_in_polygon
from .types import Coordinate, TollZonePolygon

logger = logging.getLogger(__name__)


class ZoneIndex:
    """
    Answers "which zone contains this point" for one vehicle.

    Overlapping zones: the pinned zone (the one with an open trip) is tested
    first, then the rest in ascending id order. The first match wins, so a
    vehicle is only ever inside one charged zone.
    """

    def __init__(
        self,
        zone_service,
        search_radius_meters: float = 5000.0,
        refetch_distance_meters: float = 1000.0,
    ):
        """
        Args:
            zone_service: Provides zones_near(center, radius) (TollZoneFirebaseService)
            search_radius_meters: Zones whose center lies within this radius are kept
            refetch_distance_meters: Minimum movement since the last fetch before querying again
        """
        self.zone_service = zone_service
        self.search_radius_meters = search_radius_meters
        self.refetch_distance_meters = refetch_distance_meters

        self._zones: List[TollZonePolygon] = []
        self._last_fetch_point: Optional[Coordinate] = None
        self._pinned: Optional[TollZonePolygon] = None

    @property
    def zones(self) -> List[TollZonePolygon]:
        return list(self._zones)

    @property
    def last_fetch_point(self) -> Optional[Coordinate]:
        return self._last_fetch_point

    def needs_refresh(self, center: Coordinate) -> bool:
        if self._last_fetch_point is None:
            return True
        return haversine_distance(self._last_fetch_point, center) > self.refetch_distance_meters

    def refresh(
        self,
        center: Coordinate,
        radius_meters: Optional[float] = None,
        force: bool = False,
    ) -> List[TollZonePolygon]:
        """
        Re-query the working set around center when the vehicle moved past
        the refetch threshold (or when forced). Keeps the previous set if the
        query fails.
        """
        if not force and not self.needs_refresh(center):
            return self.zones

        radius = radius_meters if radius_meters is not None else self.search_radius_meters

        try:
            candidates = self.zone_service.zones_near(center, radius)
        except Exception as e:
            logger.error(f"Zone refresh around ({center.lat}, {center.lng}) failed, keeping "
                         f"{len(self._zones)} cached zones: {e}", exc_info=True)
            return self.zones

        nearby = [
            zone for zone in candidates
            if haversine_distance(center, zone.center) <= radius
        ]

        if self._pinned and all(zone.id != self._pinned.id for zone in nearby):
            nearby.append(self._pinned)

        self._zones = sorted(nearby, key=lambda zone: zone.id)
        self._last_fetch_point = center
        logger.info(f"Zone index refreshed: {len(self._zones)} zones within {radius:.0f}m "
                    f"of ({center.lat:.6f}, {center.lng:.6f})")
        return self.zones

    def invalidate(self):
        """Force the next refresh() to query, e.g. after the zone collection changed."""
        self._last_fetch_point = None

    def pin(self, zone: TollZonePolygon):
        self._pinned = zone
        if all(existing.id != zone.id for existing in self._zones):
            self._zones = sorted(self._zones + [zone], key=lambda z: z.id)

    def unpin(self):
        self._pinned = None

    def containing_zone(
        self,
        point: Coordinate,
        preferred_zone_id: Optional[str] = None,
    ) -> Optional[TollZonePolygon]:
        """Return the first zone containing the point, else None."""
        if preferred_zone_id:
            for zone in self._zones:
                if zone.id == preferred_zone_id and point_in_polygon(point, zone.ring):
                    return zone

        for zone in self._zones:
            if zone.id == preferred_zone_id:
                continue
            if point_in_polygon(point, zone.ring):
                return zone

        return None
