"""
Geofencing value types shared by the vehicle session and the reconciler.
All of them are immutable; a zone is fixed for the duration of a trip.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class Coordinate:
    """WGS84 position in degrees."""
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {'lat': self.lat, 'lng': self.lng}


@dataclass(frozen=True)
class LocationSample:
    """
    A single fix from the positioning service.
    accuracy_meters is None when the source does not report it.
    """
    coordinate: Coordinate
    timestamp: datetime
    accuracy_meters: Optional[float] = None

    @property
    def lat(self) -> float:
        return self.coordinate.lat

    @property
    def lng(self) -> float:
        return self.coordinate.lng


@dataclass(frozen=True)
class TollZonePolygon:
    """
    Toll zone loaded from the tollZones collection.

    Firebase Structure:
    tollZones/{zone_id}/
        - name: string
        - coordinates | tollZones: [{lat, lng}, ...]
        - toll_amount: number (optional)
        - center: {lat, lng} (optional, centroid used otherwise)
        - geohash: string (optional, proximity index)
        - operators: {cameraId: {location: {lat, lng} | GeoPoint}} (optional)
    """
    id: str
    name: str
    ring: Tuple[Coordinate, ...]
    center: Coordinate
    toll_amount: Optional[float] = None
    geohash: Optional[str] = None
    operators: Dict[str, Coordinate] = field(default_factory=dict, compare=False, hash=False)

    def camera_location(self, camera_id: str) -> Optional[Coordinate]:
        return self.operators.get(camera_id)
