"""
Tests for geofence math, toll zone parsing and the zone index
"""

from unittest.mock import MagicMock

from django.test import SimpleTestCase
from google.api_core.exceptions import ServiceUnavailable
from google.cloud.firestore_v1 import GeoPoint

from apps.testing import FakeFirestore
from .firebase_service import TollZoneFirebaseService, zone_from_document
from .geofence_utils import (
    compute_toll,
    coordinate_from_value,
    describe_distance,
    encode_geohash,
    geohash_precision_for_radius,
    geohash_query_bounds,
    haversine_distance,
    point_in_polygon,
    round_half_up,
)
from .types import Coordinate, TollZonePolygon
from .zone_index import ZoneIndex

METERS_PER_DEGREE = 111194.92664455873


def square(center_lat, center_lng, half_side_deg):
    return (
        Coordinate(center_lat - half_side_deg, center_lng - half_side_deg),
        Coordinate(center_lat - half_side_deg, center_lng + half_side_deg),
        Coordinate(center_lat + half_side_deg, center_lng + half_side_deg),
        Coordinate(center_lat + half_side_deg, center_lng - half_side_deg),
    )


def make_zone(zone_id, center_lat=19.0, center_lng=72.8, half_side_deg=0.01):
    return TollZonePolygon(
        id=zone_id,
        name=f"Zone {zone_id}",
        ring=square(center_lat, center_lng, half_side_deg),
        center=Coordinate(center_lat, center_lng),
    )


class HaversineTest(SimpleTestCase):

    def test_identical_points_are_zero(self):
        point = Coordinate(19.076, 72.8777)
        self.assertEqual(haversine_distance(point, point), 0)

    def test_symmetric(self):
        a = Coordinate(19.076, 72.8777)
        b = Coordinate(18.5204, 73.8567)
        self.assertAlmostEqual(haversine_distance(a, b), haversine_distance(b, a), places=6)

    def test_one_degree_of_latitude(self):
        distance = haversine_distance(Coordinate(0, 0), Coordinate(1, 0))
        self.assertAlmostEqual(distance, METERS_PER_DEGREE, places=3)


class PointInPolygonTest(SimpleTestCase):

    def setUp(self):
        self.ring = square(19.0, 72.8, 0.01)

    def test_inside(self):
        self.assertTrue(point_in_polygon(Coordinate(19.0, 72.8), self.ring))

    def test_outside(self):
        self.assertFalse(point_in_polygon(Coordinate(19.02, 72.8), self.ring))
        self.assertFalse(point_in_polygon(Coordinate(19.0, 72.82), self.ring))

    def test_fewer_than_three_vertices_is_never_inside(self):
        self.assertFalse(point_in_polygon(Coordinate(19.0, 72.8), self.ring[:2]))
        self.assertFalse(point_in_polygon(Coordinate(19.0, 72.8), ()))

    def test_concave_polygon(self):
        # U shape opening north: the notch is outside
        ring = (
            Coordinate(0, 0), Coordinate(0, 3), Coordinate(3, 3), Coordinate(3, 2),
            Coordinate(1, 2), Coordinate(1, 1), Coordinate(3, 1), Coordinate(3, 0),
        )
        self.assertTrue(point_in_polygon(Coordinate(0.5, 1.5), ring))
        self.assertFalse(point_in_polygon(Coordinate(2, 1.5), ring))
        self.assertTrue(point_in_polygon(Coordinate(2, 0.5), ring))


class TollArithmeticTest(SimpleTestCase):

    def test_rounds_half_up(self):
        self.assertEqual(round_half_up(2.5), 3)
        self.assertEqual(round_half_up(3.5), 4)
        self.assertEqual(round_half_up(2.49), 2)

    def test_three_hundred_meters_costs_750(self):
        self.assertEqual(compute_toll(300, 2.5), 750)

    def test_never_negative(self):
        self.assertEqual(compute_toll(-10, 2.5), 0)
        self.assertEqual(compute_toll(0, 2.5), 0)

    def test_distance_description(self):
        self.assertEqual(describe_distance(299.6), "300 meters")


class GeohashTest(SimpleTestCase):

    def test_known_values(self):
        self.assertEqual(encode_geohash(42.605, -5.603, 5), 'ezs42')
        self.assertEqual(encode_geohash(57.64911, 10.40744, 9), 'u4pruydqq')

    def test_precision_for_five_kilometers(self):
        self.assertEqual(geohash_precision_for_radius(5000, 19.0), 4)

    def test_bounds_cover_neighbouring_cells(self):
        center = Coordinate(19.076, 72.8777)
        bounds = geohash_query_bounds(center, 5000)

        self.assertTrue(1 <= len(bounds) <= 9)
        own = encode_geohash(center.lat, center.lng, 4)
        self.assertIn((own, own + '~'), bounds)

        # A zone 4 km away is in one of the ranges
        nearby = encode_geohash(center.lat + 4000 / METERS_PER_DEGREE, center.lng, 9)
        self.assertTrue(any(start <= nearby <= end for start, end in bounds))


class CoordinateParsingTest(SimpleTestCase):

    def test_supported_formats(self):
        expected = Coordinate(14.40128517, 120.8920887)
        values = [
            {'lat': 14.40128517, 'lng': 120.8920887},
            {'latitude': 14.40128517, 'longitude': 120.8920887},
            {'location': GeoPoint(14.40128517, 120.8920887)},
            GeoPoint(14.40128517, 120.8920887),
            [14.40128517, 120.8920887],
        ]
        for value in values:
            with self.subTest(value=value):
                self.assertEqual(coordinate_from_value(value), expected)

    def test_unparseable_values(self):
        for value in (None, {}, {'lat': 'north', 'lng': 1}, 'somewhere', [1]):
            with self.subTest(value=value):
                self.assertIsNone(coordinate_from_value(value))


class ZoneDocumentTest(SimpleTestCase):

    def test_parses_points_center_and_operators(self):
        zone = zone_from_document('z1', {
            'name': 'Sea Link',
            'coordinates': [{'lat': 0, 'lng': 0}, {'lat': 0, 'lng': 1}, {'lat': 1, 'lng': 1}, {'lat': 1, 'lng': 0}],
            'toll_amount': '85',
            'operators': {
                'cam-1': {'location': GeoPoint(0.5, 0.1)},
                'cam-2': {'name': 'no location'},
            },
        })

        self.assertEqual(zone.name, 'Sea Link')
        self.assertEqual(len(zone.ring), 4)
        self.assertEqual(zone.center, Coordinate(0.5, 0.5))
        self.assertEqual(zone.toll_amount, 85.0)
        self.assertEqual(zone.camera_location('cam-1'), Coordinate(0.5, 0.1))
        self.assertIsNone(zone.camera_location('cam-2'))

    def test_reads_legacy_point_field_and_declared_center(self):
        zone = zone_from_document('z2', {
            'name': 'Old Zone',
            'tollZones': [[0, 0], [0, 1], [1, 1]],
            'center': {'lat': 0.3, 'lng': 0.6},
        })
        self.assertEqual(zone.center, Coordinate(0.3, 0.6))

    def test_skips_malformed_documents(self):
        self.assertIsNone(zone_from_document('a', None))
        self.assertIsNone(zone_from_document('b', {'coordinates': [[0, 0], [0, 1], [1, 1]]}))
        self.assertIsNone(zone_from_document('c', {'name': 'No points'}))
        self.assertIsNone(zone_from_document('d', {'name': 'Line', 'coordinates': [[0, 0], [1, 1], 'x']}))


class TollZoneFirebaseServiceTest(SimpleTestCase):

    def setUp(self):
        self.db = FakeFirestore()
        self.service = TollZoneFirebaseService(self.db)
        self.db.seed('tollZones', 'near', {
            'name': 'Near',
            'coordinates': [{'lat': 19.07, 'lng': 72.87}, {'lat': 19.07, 'lng': 72.88}, {'lat': 19.08, 'lng': 72.88}],
            'operators': {'cam-a': {'location': {'lat': 19.071, 'lng': 72.871}}},
        })
        self.db.seed('tollZones', 'far', {
            'name': 'Far',
            'coordinates': [{'lat': 28.6, 'lng': 77.2}, {'lat': 28.6, 'lng': 77.21}, {'lat': 28.61, 'lng': 77.21}],
        })
        self.db.seed('tollZones', 'broken', {'name': 'Broken'})

    def test_list_zones_skips_malformed(self):
        ids = sorted(zone.id for zone in self.service.list_zones())
        self.assertEqual(ids, ['far', 'near'])

    def test_index_then_query_nearby(self):
        stats = self.service.index_all_zones()
        self.assertEqual(stats, {'total': 3, 'indexed': 2, 'failed': 1})
        self.assertEqual(len(self.db.data('tollZones', 'near')['geohash']), 9)

        zones = self.service.zones_near(Coordinate(19.076, 72.8777), 5000)
        self.assertEqual([zone.id for zone in zones], ['near'])

    def test_zones_near_raises_on_failure(self):
        self.db.failures['stream'] = ServiceUnavailable('offline')
        with self.assertRaises(ServiceUnavailable):
            self.service.zones_near(Coordinate(19.076, 72.8777), 5000)

    def test_camera_location(self):
        self.assertEqual(self.service.get_camera_location('near', 'cam-a'), Coordinate(19.071, 72.871))
        self.assertIsNone(self.service.get_camera_location('near', 'cam-missing'))
        self.assertIsNone(self.service.get_camera_location('nowhere', 'cam-a'))

    def test_watch_zones_reports_changed_ids(self):
        callback = MagicMock()
        watch = self.service.watch_zones(callback)

        self.db.collection('tollZones').emit(['near'])
        callback.assert_called_once_with(['near'])

        watch.unsubscribe()
        self.db.collection('tollZones').emit(['far'])
        callback.assert_called_once()


class ZoneIndexTest(SimpleTestCase):

    def setUp(self):
        self.zone_service = MagicMock()
        self.here = Coordinate(19.0, 72.8)
        self.zone_service.zones_near.return_value = [
            make_zone('b'),
            make_zone('a', center_lat=19.001),
            make_zone('distant', center_lat=19.2),
        ]
        self.index = ZoneIndex(self.zone_service, search_radius_meters=5000, refetch_distance_meters=1000)

    def test_exact_distance_filter_and_ordering(self):
        zones = self.index.refresh(self.here)
        self.assertEqual([zone.id for zone in zones], ['a', 'b'])

    def test_refetch_only_after_moving_far_enough(self):
        self.index.refresh(self.here)
        self.index.refresh(Coordinate(19.0 + 500 / METERS_PER_DEGREE, 72.8))
        self.assertEqual(self.zone_service.zones_near.call_count, 1)

        self.index.refresh(Coordinate(19.0 + 1500 / METERS_PER_DEGREE, 72.8))
        self.assertEqual(self.zone_service.zones_near.call_count, 2)

    def test_invalidate_forces_next_refresh(self):
        self.index.refresh(self.here)
        self.index.invalidate()
        self.index.refresh(self.here)
        self.assertEqual(self.zone_service.zones_near.call_count, 2)

    def test_failure_keeps_previous_working_set(self):
        self.index.refresh(self.here)
        self.zone_service.zones_near.side_effect = ServiceUnavailable('offline')

        zones = self.index.refresh(self.here, force=True)
        self.assertEqual([zone.id for zone in zones], ['a', 'b'])

    def test_pinned_zone_survives_refresh(self):
        self.index.refresh(self.here)
        pinned = make_zone('b')
        self.index.pin(pinned)

        self.zone_service.zones_near.return_value = []
        zones = self.index.refresh(self.here, force=True)
        self.assertEqual([zone.id for zone in zones], ['b'])

        self.index.unpin()
        self.assertEqual(self.index.refresh(self.here, force=True), [])

    def test_overlap_prefers_open_zone_then_lowest_id(self):
        self.index.refresh(self.here)

        self.assertEqual(self.index.containing_zone(self.here).id, 'a')
        self.assertEqual(self.index.containing_zone(self.here, preferred_zone_id='b').id, 'b')
        self.assertIsNone(self.index.containing_zone(Coordinate(20.0, 72.8)))
