"""
Test script for the vehicle simulator helpers

Checks that simulated fixes move the expected distance and are published in
the format the tracker parses
"""

from datetime import datetime, timezone

from apps.geofencing.geofence_utils import haversine_distance
from apps.geofencing.types import Coordinate
from apps.trips.position_service import parse_sample
from vehicle_simulator import build_gps_payload, step_position


def test_step_position_moves_requested_distance():
    for bearing in (0, 90, 215):
        lat, lng = step_position(19.076, 72.8777, bearing, 250)
        moved = haversine_distance(Coordinate(19.076, 72.8777), Coordinate(lat, lng))
        print(f"✓ Bearing {bearing}: moved {moved:.2f}m")
        assert abs(moved - 250) < 0.01


def test_step_north_keeps_longitude():
    lat, lng = step_position(19.076, 72.8777, 0, 1000)
    assert lat > 19.076
    assert abs(lng - 72.8777) < 1e-9


def test_payload_is_parsed_by_tracker():
    stamp = datetime(2025, 11, 2, 9, 0, tzinfo=timezone.utc)
    payload = build_gps_payload(19.07612345678, 72.8777, 6.44, stamp)

    assert payload["latitude"] == 19.0761235
    assert payload["accuracy"] == 6.4

    sample = parse_sample(payload)
    assert sample.coordinate == Coordinate(19.0761235, 72.8777)
    assert sample.timestamp == stamp
    assert sample.accuracy_meters == 6.4


if __name__ == "__main__":
    test_step_position_moves_requested_distance()
    test_step_north_keeps_longitude()
    test_payload_is_parsed_by_tracker()
    print("All tests passed! ✓")
