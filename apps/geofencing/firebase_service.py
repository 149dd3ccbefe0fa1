"""
Firebase Service for Toll Zones
Handles Firestore reads of the tollZones collection: parsing, proximity
queries, camera locations and the geohash backfill.
"""

from firebase_admin import firestore
from typing import Callable, Dict, List, Optional
import logging

from .geofence_utils import (
    coordinate_from_value,
    encode_geohash,
    geohash_query_bounds,
    normalize_polygon_points,
    polygon_centroid,
)
from .types import Coordinate, TollZonePolygon

logger = logging.getLogger(__name__)

ZONES_COLLECTION = 'tollZones'
GEOHASH_PRECISION = 9


def zone_from_document(zone_id: str, data: Optional[Dict]) -> Optional[TollZonePolygon]:
    """
    Build a TollZonePolygon from a tollZones document.

    The point list is read from 'tollZones' or 'coordinates'. Documents
    without a name or without a usable point list are skipped (None).
    """
    if not data:
        logger.warning(f"Skipping empty toll zone document {zone_id}")
        return None

    name = data.get('name')
    points = data.get('tollZones') or data.get('coordinates')

    if not name or not points or not isinstance(points, list):
        logger.warning(f"Skipping malformed toll zone document with ID: {zone_id}")
        return None

    ring = normalize_polygon_points(points)
    if len(ring) < 3:
        logger.warning(f"Skipping toll zone {zone_id}: only {len(ring)} usable points")
        return None

    center = coordinate_from_value(data.get('center')) or polygon_centroid(ring)

    operators = {}
    for camera_id, operator in (data.get('operators') or {}).items():
        location = coordinate_from_value((operator or {}).get('location')) if isinstance(operator, dict) else None
        if location is None:
            logger.warning(f"Camera {camera_id} in zone {zone_id} has no usable location")
            continue
        operators[camera_id] = location

    toll_amount = data.get('toll_amount')
    try:
        toll_amount = float(toll_amount) if toll_amount is not None else None
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric toll_amount {toll_amount!r} on zone {zone_id}")
        toll_amount = None

    return TollZonePolygon(
        id=zone_id,
        name=name,
        ring=tuple(ring),
        center=center,
        toll_amount=toll_amount,
        geohash=data.get('geohash'),
        operators=operators,
    )


class TollZoneFirebaseService:
    """Service class for Firebase toll zone operations"""

    def __init__(self, db=None):
        self.db = db or firestore.client()
        self.collection = self.db.collection(ZONES_COLLECTION)

    def get_zone(self, zone_id: str) -> Optional[TollZonePolygon]:
        """
        Get a single toll zone from Firebase

        Args:
            zone_id: Firebase document ID

        Returns:
            TollZonePolygon or None if not found or malformed
        """
        try:
            doc = self.collection.document(zone_id).get()
            if doc.exists:
                return zone_from_document(doc.id, doc.to_dict())
            logger.warning(f"Toll zone {zone_id} not found")
            return None
        except Exception as e:
            logger.error(f"Error fetching toll zone {zone_id}: {e}", exc_info=True)
            return None

    def list_zones(self) -> List[TollZonePolygon]:
        """List every well-formed toll zone. Malformed documents are skipped."""
        try:
            zones = []
            for doc in self.collection.stream():
                zone = zone_from_document(doc.id, doc.to_dict())
                if zone:
                    zones.append(zone)
            return zones
        except Exception as e:
            logger.error(f"Error listing toll zones: {e}", exc_info=True)
            return []

    def zones_near(self, center: Coordinate, radius_meters: float) -> List[TollZonePolygon]:
        """
        Candidate zones whose geohash falls in the cells around center.
        This is only the pre-filter; callers apply the exact distance check.

        Raises on Firestore errors so the caller can keep its previous set.
        """
        zones: Dict[str, TollZonePolygon] = {}
        bounds = geohash_query_bounds(center, radius_meters)

        for start, end in bounds:
            query = self.collection.where('geohash', '>=', start).where('geohash', '<=', end)
            for doc in query.stream():
                if doc.id in zones:
                    continue
                zone = zone_from_document(doc.id, doc.to_dict())
                if zone:
                    zones[doc.id] = zone

        logger.debug(f"Geohash pre-filter returned {len(zones)} zones from {len(bounds)} ranges")
        return list(zones.values())

    def get_camera_location(self, zone_id: str, camera_id: str) -> Optional[Coordinate]:
        """
        Location of an ANPR camera registered in a zone's operators map.

        Returns:
            Coordinate or None when the zone or the camera location is missing
        """
        try:
            doc = self.collection.document(zone_id).get()
            if not doc.exists:
                logger.error(f"Toll zone document {zone_id} not found.")
                return None

            operators = (doc.to_dict() or {}).get('operators') or {}
            operator = operators.get(camera_id) or {}
            location = coordinate_from_value(operator.get('location')) if isinstance(operator, dict) else None
            if location is None:
                logger.error(f"Location for camera {camera_id} not found in zone {zone_id}.")
            return location
        except Exception as e:
            logger.error(f"Error fetching camera {camera_id} in zone {zone_id}: {e}", exc_info=True)
            return None

    def index_zone(self, zone_id: str) -> bool:
        """
        Write 'center' and 'geohash' onto a zone document so that the
        proximity query can find it.

        Returns:
            True if successful, False otherwise
        """
        try:
            doc_ref = self.collection.document(zone_id)
            doc = doc_ref.get()
            if not doc.exists:
                logger.error(f"Zone {zone_id} not found")
                return False

            zone = zone_from_document(doc.id, doc.to_dict())
            if zone is None:
                return False

            doc_ref.update({
                'center': zone.center.to_dict(),
                'geohash': encode_geohash(zone.center.lat, zone.center.lng, GEOHASH_PRECISION),
                'updated_at': firestore.SERVER_TIMESTAMP,
            })
            logger.info(f"Indexed zone {zone_id}")
            return True
        except Exception as e:
            logger.error(f"Error indexing zone {zone_id}: {e}", exc_info=True)
            return False

    def index_all_zones(self) -> dict:
        """
        Backfill center/geohash on every zone document

        Returns:
            Dictionary with indexing statistics
        """
        stats = {
            'total': 0,
            'indexed': 0,
            'failed': 0
        }

        try:
            doc_ids = [doc.id for doc in self.collection.stream()]
        except Exception as e:
            logger.error(f"Error listing zones for indexing: {e}", exc_info=True)
            return stats

        stats['total'] = len(doc_ids)
        for zone_id in doc_ids:
            if self.index_zone(zone_id):
                stats['indexed'] += 1
            else:
                stats['failed'] += 1

        logger.info(f"Zone indexing completed: {stats}")
        return stats

    def watch_zones(self, callback: Callable[[List[str]], None]):
        """
        Subscribe to tollZones changes.

        Args:
            callback: Called with the list of changed zone ids

        Returns:
            The Firestore watch (call unsubscribe() to stop)
        """
        def on_snapshot(col_snapshot, changes, read_time):
            changed = [change.document.id for change in changes]
            if not changed:
                return
            try:
                callback(changed)
            except Exception as e:
                logger.error(f"Error handling toll zone change {changed}: {e}", exc_info=True)

        return self.collection.on_snapshot(on_snapshot)
