"""
Test script to verify coordinate parsing for toll zone and camera documents

This feeds the location formats found in Firebase (GeoPoint, dicts, lists)
through the parser used by the zone service and the reconciler
"""

from google.cloud.firestore_v1 import GeoPoint

from apps.geofencing.geofence_utils import coordinate_from_value, normalize_polygon_points
from apps.geofencing.types import Coordinate

EXPECTED = Coordinate(14.40128517, 120.8920887)


class LegacyGeoPoint:
    """GeoPoint as older SDKs expose it: private attributes only"""
    def __init__(self, latitude, longitude):
        self._latitude = latitude
        self._longitude = longitude

    def __repr__(self):
        return f"<GeoPoint: ({self._latitude}, {self._longitude})>"


def test_location_parsing():
    """Test various location formats"""

    print("Test 1: Firebase GeoPoint")
    assert coordinate_from_value(GeoPoint(14.40128517, 120.8920887)) == EXPECTED
    print("✓ Parsed real GeoPoint")

    print("\nTest 2: GeoPoint with _latitude and _longitude only")
    assert coordinate_from_value(LegacyGeoPoint(14.40128517, 120.8920887)) == EXPECTED
    print("✓ Parsed legacy GeoPoint")

    print("\nTest 3: List format [lat, lng]")
    assert coordinate_from_value([14.40128517, 120.8920887]) == EXPECTED
    print("✓ Parsed list")

    print("\nTest 4: Dict formats")
    assert coordinate_from_value({"latitude": 14.40128517, "longitude": 120.8920887}) == EXPECTED
    assert coordinate_from_value({"lat": "14.40128517", "lng": "120.8920887"}) == EXPECTED
    print("✓ Parsed dicts")

    print("\nTest 5: Camera operator entry")
    assert coordinate_from_value({"location": GeoPoint(14.40128517, 120.8920887)}) == EXPECTED
    print("✓ Parsed operator location")

    print("\n" + "="*60)
    print("All tests passed! ✓")
    print("="*60)


def test_polygon_points_skip_bad_entries():
    points = normalize_polygon_points([
        {"lat": 0, "lng": 0},
        GeoPoint(0, 1),
        "not a point",
        [1, 1],
    ])
    assert points == [Coordinate(0, 0), Coordinate(0, 1), Coordinate(1, 1)]
    assert normalize_polygon_points(None) == []


if __name__ == "__main__":
    test_location_parsing()
    test_polygon_points_skip_bad_entries()
