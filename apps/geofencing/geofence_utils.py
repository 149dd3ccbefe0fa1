"""
Geofence utility functions: distance, point-in-polygon, geohash bounds and
parsing of the point formats stored in Firebase.
"""
import logging
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence, Tuple

from .types import Coordinate

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371000.0
METERS_PER_DEGREE_LAT = 111320.0

_GEOHASH_BASE32 = '0123456789bcdefghjkmnpqrstuvwxyz'
MAX_GEOHASH_PRECISION = 10


def haversine_distance(a: Coordinate, b: Coordinate) -> float:
    """
    Great-circle distance between two coordinates in meters.

    Symmetric, and zero for identical coordinates.
    """
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)

    h = (math.sin(d_lat / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_METERS * c


def point_in_polygon(point: Coordinate, ring: Sequence[Coordinate]) -> bool:
    """
    Check if a point is inside a polygon using the ray casting algorithm.

    Args:
        point: Coordinate to test
        ring: Ordered polygon vertices (closing vertex optional)

    Returns:
        True if point is inside the polygon, False otherwise

    Algorithm:
        Even-odd rule. For every edge whose longitudes straddle the point,
        the ray is cast along latitude and crossings are counted.
        Odd number of crossings = inside. Points exactly on an edge may be
        classified either way.
    """
    if not ring or len(ring) < 3:
        return False

    inside = False
    n = len(ring)
    j = n - 1

    for i in range(n):
        lat_i, lng_i = ring[i].lat, ring[i].lng
        lat_j, lng_j = ring[j].lat, ring[j].lng

        if (lng_i > point.lng) != (lng_j > point.lng):
            crossing_lat = (lat_j - lat_i) * (point.lng - lng_i) / (lng_j - lng_i) + lat_i
            if point.lat < crossing_lat:
                inside = not inside
        j = i

    return inside


def polygon_centroid(ring: Sequence[Coordinate]) -> Optional[Coordinate]:
    """Vertex average, good enough as a declared center for proximity filtering."""
    if not ring:
        return None
    lat = sum(p.lat for p in ring) / len(ring)
    lng = sum(p.lng for p in ring) / len(ring)
    return Coordinate(lat=lat, lng=lng)


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def compute_toll(distance_meters: float, rate_per_meter: float) -> int:
    """Toll in whole currency units: round(max(0, distance * rate))."""
    return round_half_up(max(0.0, distance_meters * rate_per_meter))


def describe_distance(distance_meters: float) -> str:
    """Human readable distance as stored on transaction records."""
    return f"{distance_meters:.0f} meters"


# --- Geohash ---------------------------------------------------------------

def encode_geohash(lat: float, lng: float, precision: int = 9) -> str:
    """Standard base32 geohash of a coordinate."""
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    bits = 0
    bit_count = 0
    even = True

    while len(chars) < precision:
        if even:
            mid = (lng_range[0] + lng_range[1]) / 2
            if lng >= mid:
                bits = (bits << 1) | 1
                lng_range[0] = mid
            else:
                bits = bits << 1
                lng_range[1] = mid
        else:
            mid = (lat_range[0] + lat_range[1]) / 2
            if lat >= mid:
                bits = (bits << 1) | 1
                lat_range[0] = mid
            else:
                bits = bits << 1
                lat_range[1] = mid
        even = not even
        bit_count += 1

        if bit_count == 5:
            chars.append(_GEOHASH_BASE32[bits])
            bits = 0
            bit_count = 0

    return ''.join(chars)


def geohash_cell_size(precision: int) -> Tuple[float, float]:
    """(height, width) of a geohash cell in degrees."""
    total_bits = 5 * precision
    lng_bits = (total_bits + 1) // 2
    lat_bits = total_bits // 2
    return 180.0 / (2 ** lat_bits), 360.0 / (2 ** lng_bits)


def geohash_precision_for_radius(radius_meters: float, latitude: float) -> int:
    """
    Finest precision whose cell is at least radius_meters tall and wide,
    so that the center cell plus its 8 neighbours cover the search circle.
    """
    cos_lat = max(math.cos(math.radians(latitude)), 0.01)
    precision = 1
    for candidate in range(1, MAX_GEOHASH_PRECISION + 1):
        height_deg, width_deg = geohash_cell_size(candidate)
        height_m = height_deg * METERS_PER_DEGREE_LAT
        width_m = width_deg * METERS_PER_DEGREE_LAT * cos_lat
        if height_m >= radius_meters and width_m >= radius_meters:
            precision = candidate
        else:
            break
    return precision


def geohash_query_bounds(center: Coordinate, radius_meters: float) -> List[Tuple[str, str]]:
    """
    Geohash string ranges to query for documents within radius_meters of center.
    Each range is (start, end) inclusive, meant for
    where('geohash', '>=', start).where('geohash', '<=', end).
    """
    precision = geohash_precision_for_radius(radius_meters, center.lat)
    height_deg, width_deg = geohash_cell_size(precision)

    prefixes = []
    for d_lat in (-height_deg, 0.0, height_deg):
        for d_lng in (-width_deg, 0.0, width_deg):
            lat = min(max(center.lat + d_lat, -89.999999), 89.999999)
            lng = center.lng + d_lng
            if lng > 180.0:
                lng -= 360.0
            elif lng < -180.0:
                lng += 360.0
            prefix = encode_geohash(lat, lng, precision)
            if prefix not in prefixes:
                prefixes.append(prefix)

    return [(prefix, prefix + '~') for prefix in sorted(prefixes)]


# --- Firebase value parsing -------------------------------------------------

def coordinate_from_value(value) -> Optional[Coordinate]:
    """
    Parse a coordinate in any of the formats found in Firebase documents:
        - {"lat": x, "lng": y}
        - {"latitude": x, "longitude": y}
        - {"location": GeoPoint}
        - GeoPoint object (public or private latitude/longitude attributes)
        - [lat, lng] list or tuple
    Returns None when the value cannot be parsed.
    """
    if value is None:
        return None

    try:
        if isinstance(value, dict):
            if 'lat' in value and 'lng' in value:
                return Coordinate(lat=float(value['lat']), lng=float(value['lng']))
            if 'latitude' in value and 'longitude' in value:
                return Coordinate(lat=float(value['latitude']), lng=float(value['longitude']))
            if 'location' in value:
                return coordinate_from_value(value['location'])
            return None

        # Firebase GeoPoint (has _latitude and _longitude attributes)
        if hasattr(value, '_latitude') and hasattr(value, '_longitude'):
            return Coordinate(lat=float(value._latitude), lng=float(value._longitude))

        if hasattr(value, 'latitude') and hasattr(value, 'longitude'):
            return Coordinate(lat=float(value.latitude), lng=float(value.longitude))

        if isinstance(value, (list, tuple)) and len(value) >= 2:
            return Coordinate(lat=float(value[0]), lng=float(value[1]))
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not parse coordinate {value!r}: {e}")

    return None


def normalize_polygon_points(polygon_points: Optional[Iterable]) -> List[Coordinate]:
    """
    Normalize polygon points to a list of Coordinates.
    Points that cannot be parsed are dropped with a warning.
    """
    if not polygon_points:
        return []

    normalized = []
    for index, point in enumerate(polygon_points):
        coordinate = coordinate_from_value(point)
        if coordinate is None:
            logger.warning(f"Skipping unparseable polygon point at index {index}: {point!r}")
            continue
        normalized.append(coordinate)

    return normalized
