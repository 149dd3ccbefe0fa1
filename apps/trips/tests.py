"""
Tests for the location filter, the trip state machine, the position service
and the vehicle session
"""

import json
from datetime import datetime, timedelta, timezone as dt_timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from django.test import SimpleTestCase, TestCase
from google.api_core.exceptions import ServiceUnavailable

from apps.geofencing.types import Coordinate, LocationSample, TollZonePolygon
from apps.geofencing.zone_index import ZoneIndex
from apps.testing import FakeClock, FakeFirestore, InlineExecutor, unwrap
from apps.wallet.firebase_service import WalletFirebaseService, _debit_in_transaction
from apps.wallet.ledger import TollLedger
from apps.wallet.models import OfflineTransaction, PendingDeduction
from config.tolling import TollingConfig
from .connectivity import ConnectivityMonitor
from .firebase_service import TripFirebaseService, _compare_and_hand_off
from .location_filter import LocationFilter
from .position_service import (
    MqttPositionService,
    PositionService,
    PositionSubscription,
    SampleThrottle,
    parse_flag,
    parse_sample,
)
from .session import VehicleSession
from .state_machine import TripStateMachine
from .types import CalculationMethod, TripPhase

T0 = datetime(2025, 11, 2, 9, 0, tzinfo=dt_timezone.utc)
METERS_PER_DEGREE = 111194.92664455873


def north_of(meters, lat=19.0, lng=72.8):
    return Coordinate(lat + meters / METERS_PER_DEGREE, lng)


def sample(coordinate, at=T0, accuracy=5.0):
    return LocationSample(coordinate=coordinate, timestamp=at, accuracy_meters=accuracy)


def corridor(zone_id='z1', length_m=290):
    """North-running zone starting 50 m south of (19.0, 72.8) and ending length_m north of it."""
    south = 19.0 - 50 / METERS_PER_DEGREE
    north = 19.0 + length_m / METERS_PER_DEGREE
    return TollZonePolygon(
        id=zone_id,
        name=f"Corridor {zone_id}",
        ring=(
            Coordinate(south, 72.79),
            Coordinate(south, 72.81),
            Coordinate(north, 72.81),
            Coordinate(north, 72.79),
        ),
        center=Coordinate((south + north) / 2, 72.8),
        toll_amount=85.0,
    )


def patch_transactions(test_case):
    targets = (
        ('apps.trips.firebase_service._compare_and_hand_off', _compare_and_hand_off),
        ('apps.wallet.firebase_service._debit_in_transaction', _debit_in_transaction),
    )
    for target, transactional in targets:
        patcher = patch(target, unwrap(transactional))
        patcher.start()
        test_case.addCleanup(patcher.stop)


class LocationFilterTest(SimpleTestCase):

    def setUp(self):
        self.filter = LocationFilter(accuracy_ceiling_meters=50, jump_threshold_meters=100, window_size=5)

    def test_rejects_low_accuracy_without_touching_history(self):
        self.filter.process(sample(north_of(0)), in_zone=False)

        self.assertIsNone(self.filter.process(sample(north_of(10), accuracy=80), in_zone=False))
        self.assertEqual(len(self.filter.history), 1)

    def test_accepts_samples_without_accuracy(self):
        self.assertIsNotNone(self.filter.process(sample(north_of(0), accuracy=None), in_zone=False))

    def test_jump_clears_history(self):
        self.filter.process(sample(north_of(0)), in_zone=False)
        self.filter.process(sample(north_of(20)), in_zone=False)

        result = self.filter.process(sample(north_of(520)), in_zone=False)

        self.assertEqual(len(self.filter.history), 1)
        self.assertEqual(result.coordinate, north_of(520))

    def test_window_keeps_most_recent_samples(self):
        for step in range(7):
            self.filter.process(sample(north_of(step * 10)), in_zone=False)

        self.assertEqual(len(self.filter.history), 5)
        self.assertEqual(self.filter.history[0].coordinate, north_of(20))

    def test_outside_zone_emits_mean_with_latest_timestamp(self):
        self.filter.process(sample(north_of(0), at=T0), in_zone=False)
        latest = sample(north_of(20), at=T0 + timedelta(seconds=1), accuracy=3.0)

        result = self.filter.process(latest, in_zone=False)

        self.assertAlmostEqual(result.lat, north_of(10).lat, places=9)
        self.assertEqual(result.timestamp, latest.timestamp)
        self.assertEqual(result.accuracy_meters, 3.0)

    def test_inside_zone_emits_raw_sample(self):
        self.filter.process(sample(north_of(0)), in_zone=True)
        latest = sample(north_of(20))

        self.assertIs(self.filter.process(latest, in_zone=True), latest)

    def test_window_must_hold_a_sample(self):
        with self.assertRaises(ValueError):
            LocationFilter(window_size=0)

    def test_reset(self):
        self.filter.process(sample(north_of(0)), in_zone=False)
        self.filter.reset()
        self.assertEqual(len(self.filter.history), 0)
        self.assertIsNone(self.filter.last_accepted)


class TripStateMachineTest(SimpleTestCase):

    def setUp(self):
        patch_transactions(self)
        self.db = FakeFirestore()
        self.store = TripFirebaseService(self.db)
        self.notifier = MagicMock()
        self.machine = TripStateMachine(
            'user-1',
            self.store,
            notifier=self.notifier,
            grace_period_seconds=20,
            rate_per_meter=2.5,
            vehicle_number='MH01AB1234',
        )
        self.zone = corridor()

    def at(self, seconds):
        return T0 + timedelta(seconds=seconds)

    def observe(self, meters, seconds, zone):
        return self.machine.observe(sample(north_of(meters), self.at(seconds)), zone, self.at(seconds))

    def trip_doc(self, trip_id):
        return self.db.data('vehicle_trips', trip_id)

    def test_entry_creates_trip_document(self):
        self.assertIsNone(self.observe(0, 0, self.zone))

        self.assertEqual(self.machine.phase, TripPhase.IN_ZONE)
        doc = self.trip_doc(self.machine.trip.id)
        self.assertEqual(doc['status'], 'active')
        self.assertEqual(doc['calculationMethod'], 'DEVICE')
        self.assertEqual(doc['authorityEpoch'], 0)
        self.assertEqual(doc['tollZoneId'], 'z1')
        self.assertEqual(doc['vehicleNumber'], 'MH01AB1234')

    def test_straight_trip_charges_after_grace_period(self):
        self.observe(0, 0, self.zone)
        trip_id = self.machine.trip.id
        self.observe(150, 10, self.zone)
        self.assertIsNone(self.observe(300, 20, None))

        self.assertEqual(self.machine.phase, TripPhase.GRACE_EXIT)
        self.assertEqual(self.machine.deadline, self.at(40))
        self.assertIsNone(self.machine.tick(self.at(39)))

        charge = self.machine.tick(self.at(40))

        self.assertEqual(charge.amount, 750)
        self.assertAlmostEqual(charge.distance_meters, 300, places=3)
        self.assertEqual(charge.trip_id, trip_id)
        self.assertEqual(charge.zone_id, 'z1')
        self.assertEqual(charge.entry, north_of(0))
        self.assertEqual(charge.exit, north_of(300))
        self.assertEqual(charge.toll_amount, 85.0)
        self.assertEqual(charge.authority_epoch, 0)
        self.assertTrue(self.machine.confirm_authority(charge))
        self.assertEqual(self.machine.phase, TripPhase.NO_TRIP)
        self.assertIsNone(self.machine.tick(self.at(100)))

    def test_reentry_within_grace_cancels_exit(self):
        self.observe(0, 0, self.zone)
        self.observe(300, 5, None)
        self.observe(280, 15, self.zone)

        self.assertEqual(self.machine.phase, TripPhase.IN_ZONE)
        self.assertIsNone(self.machine.deadline)
        self.assertIsNone(self.machine.tick(self.at(60)))

    def test_boundary_jitter_never_charges(self):
        self.observe(0, 0, self.zone)
        for step in range(1, 21):
            zone = None if step % 2 else self.zone
            self.assertIsNone(self.observe(290, step * 5, zone))
            self.assertIsNone(self.machine.tick(self.at(step * 5 + 4)))

        self.assertEqual(self.machine.phase, TripPhase.IN_ZONE)

    def test_overdue_deadline_finalizes_on_next_sample(self):
        self.observe(0, 0, self.zone)
        self.observe(300, 5, None)

        charge = self.observe(400, 30, None)

        self.assertEqual(charge.amount, 750)
        self.assertEqual(self.machine.phase, TripPhase.NO_TRIP)

    def test_moving_into_another_zone_finalizes_immediately(self):
        second = corridor('z2', length_m=900)
        self.observe(0, 0, self.zone)
        first_trip = self.machine.trip.id

        charge = self.observe(300, 10, second)

        self.assertEqual(charge.trip_id, first_trip)
        self.assertEqual(charge.amount, 750)
        self.assertEqual(self.machine.phase, TripPhase.IN_ZONE)
        self.assertEqual(self.machine.active_zone.id, 'z2')
        self.assertEqual(self.machine.trip.entry_point.coordinate, north_of(300))

    def test_gps_loss_hands_off_and_suppresses_device_charge(self):
        self.observe(0, 0, self.zone)
        self.observe(120, 10, self.zone)
        trip_id = self.machine.trip.id

        self.assertTrue(self.machine.on_gps_lost(self.at(15)))

        doc = self.trip_doc(trip_id)
        self.assertEqual(doc['calculationMethod'], 'HYBRID')
        self.assertEqual(doc['authorityEpoch'], 1)
        self.assertEqual(doc['lastKnownGpsLocation'], north_of(120).to_dict())
        self.notifier.notify.assert_called_once()
        self.assertFalse(self.machine.on_gps_lost(self.at(16)))

        self.observe(300, 20, None)
        self.assertIsNone(self.machine.tick(self.at(60)))
        self.assertEqual(self.machine.phase, TripPhase.NO_TRIP)

    def test_handoff_only_while_in_zone(self):
        self.assertFalse(self.machine.on_gps_lost(self.at(0)))

        self.observe(0, 0, self.zone)
        self.observe(300, 5, None)
        self.assertFalse(self.machine.on_gps_lost(self.at(6)))
        self.assertEqual(self.machine.trip.calculation_method, CalculationMethod.DEVICE)

    def test_backend_owned_trip_is_not_charged_by_device(self):
        self.observe(0, 0, self.zone)
        self.db.collection('vehicle_trips').document(self.machine.trip.id).update({
            'calculationMethod': 'BACKEND',
            'authorityEpoch': 1,
        })

        self.observe(300, 5, None)
        charge = self.machine.tick(self.at(30))

        self.assertFalse(self.machine.confirm_authority(charge))

    def test_stale_epoch_is_not_charged(self):
        self.observe(0, 0, self.zone)
        self.db.collection('vehicle_trips').document(self.machine.trip.id).update({'authorityEpoch': 3})

        self.observe(300, 5, None)
        charge = self.machine.tick(self.at(30))

        self.assertFalse(self.machine.confirm_authority(charge))

    def test_unreadable_authority_falls_back_to_local_view(self):
        self.observe(0, 0, self.zone)
        self.observe(300, 5, None)
        charge = self.machine.tick(self.at(30))
        self.db.failures['get'] = ServiceUnavailable('offline')

        self.assertEqual(charge.amount, 750)
        self.assertTrue(self.machine.confirm_authority(charge))

    def test_failed_handoff_is_retried(self):
        self.observe(0, 0, self.zone)
        trip_id = self.machine.trip.id
        self.db.failures['get'] = ServiceUnavailable('offline')

        self.assertTrue(self.machine.on_gps_lost(self.at(5)))
        self.assertFalse(self.machine.trip.handoff_persisted)
        self.assertEqual(self.trip_doc(trip_id)['calculationMethod'], 'DEVICE')

        self.db.failures.clear()
        self.assertTrue(self.machine.retry_pending_writes(self.at(10)))
        self.assertEqual(self.trip_doc(trip_id)['calculationMethod'], 'HYBRID')

    def test_unsent_handoff_leaves_the_charge_with_the_device(self):
        self.observe(0, 0, self.zone)
        trip_id = self.machine.trip.id
        self.db.failures['get'] = ServiceUnavailable('offline')
        self.assertTrue(self.machine.on_gps_lost(self.at(5)))
        self.db.failures.clear()

        self.observe(300, 10, None)
        charge = self.machine.tick(self.at(40))

        self.assertEqual(charge.trip_id, trip_id)
        self.assertEqual(charge.amount, 750)
        self.assertEqual(charge.calculation_method, CalculationMethod.DEVICE)
        self.assertTrue(self.machine.confirm_authority(charge))
        self.assertTrue(self.machine.retry_pending_writes(self.at(41)))
        self.assertEqual(self.trip_doc(trip_id)['calculationMethod'], 'DEVICE')

    def test_handoff_landed_with_lost_response_is_not_charged(self):
        self.observe(0, 0, self.zone)
        trip_id = self.machine.trip.id
        self.db.failures['get'] = ServiceUnavailable('offline')
        self.machine.on_gps_lost(self.at(5))
        self.db.failures.clear()
        self.db.collection('vehicle_trips').document(trip_id).update({
            'calculationMethod': 'HYBRID',
            'authorityEpoch': 1,
        })

        self.observe(300, 10, None)
        charge = self.machine.tick(self.at(40))

        self.assertFalse(self.machine.confirm_authority(charge))

    def test_trip_created_offline_is_written_on_retry(self):
        self.db.failures['set'] = ServiceUnavailable('offline')
        self.observe(0, 0, self.zone)
        trip_id = self.machine.trip.id
        self.assertIsNone(self.trip_doc(trip_id))

        self.db.failures.clear()
        self.assertTrue(self.machine.retry_pending_writes(self.at(10)))
        self.assertEqual(self.trip_doc(trip_id)['status'], 'active')


class TripFirebaseServiceTest(SimpleTestCase):

    def setUp(self):
        patch_transactions(self)
        self.db = FakeFirestore()
        self.service = TripFirebaseService(self.db)

    def test_handoff_refused_once_authority_moved(self):
        self.db.seed('vehicle_trips', 't1', {'calculationMethod': 'BACKEND', 'authorityEpoch': 2})

        self.assertFalse(self.service.hand_off('t1', north_of(0), 2, T0))
        self.assertEqual(self.db.data('vehicle_trips', 't1')['calculationMethod'], 'BACKEND')

    def test_handoff_refused_on_epoch_mismatch(self):
        self.db.seed('vehicle_trips', 't1', {'calculationMethod': 'DEVICE', 'authorityEpoch': 1})
        self.assertFalse(self.service.hand_off('t1', north_of(0), 0, T0))

    def test_read_authority(self):
        self.db.seed('vehicle_trips', 't1', {'calculationMethod': 'HYBRID', 'authorityEpoch': 1})
        self.db.seed('vehicle_trips', 't2', {'calculationMethod': 'ANPR'})

        self.assertEqual(self.service.read_authority('t1'), (CalculationMethod.HYBRID, 1))
        self.assertEqual(self.service.read_authority('t2'), (CalculationMethod.BACKEND, 0))
        self.assertIsNone(self.service.read_authority('missing'))


class ConnectivityMonitorTest(SimpleTestCase):

    def setUp(self):
        self.monitor = ConnectivityMonitor()
        self.listener = MagicMock()
        self.monitor.add_listener(self.listener)

    def test_starts_online(self):
        self.assertFalse(self.monitor.is_offline)

    def test_offline_unless_connected_and_reachable(self):
        self.monitor.update(True, False)
        self.assertTrue(self.monitor.is_offline)
        self.monitor.update(False, True)
        self.assertTrue(self.monitor.is_offline)

    def test_listeners_run_on_reconnect_only(self):
        self.monitor.update(True, True)
        self.listener.assert_not_called()

        self.monitor.update(False, False)
        self.listener.assert_not_called()

        self.monitor.update(True, True)
        self.listener.assert_called_once()

    def test_failing_listener_does_not_stop_others(self):
        second = MagicMock()
        self.listener.side_effect = RuntimeError('boom')
        self.monitor.add_listener(second)

        self.monitor.update(False)
        self.monitor.update(True)

        second.assert_called_once()


class PositionPayloadTest(SimpleTestCase):

    def test_parse_sample(self):
        parsed = parse_sample(json.dumps({
            'latitude': 19.076,
            'longitude': 72.8777,
            'accuracy': 4.5,
            'timestamp': '2025-11-02T09:00:00Z',
        }))

        self.assertEqual(parsed.coordinate, Coordinate(19.076, 72.8777))
        self.assertEqual(parsed.accuracy_meters, 4.5)
        self.assertEqual(parsed.timestamp, T0)

    def test_parse_sample_short_keys_and_epoch_millis(self):
        parsed = parse_sample(b'{"lat": 19.0, "lng": 72.8, "timestamp": 1762074000000}')

        self.assertEqual(parsed.coordinate, Coordinate(19.0, 72.8))
        self.assertIsNone(parsed.accuracy_meters)
        self.assertEqual(parsed.timestamp, T0)

    def test_parse_sample_rejects_garbage(self):
        self.assertIsNone(parse_sample(b'not json'))
        self.assertIsNone(parse_sample('{"latitude": 19.0}'))
        self.assertIsNone(parse_sample('{"latitude": "x", "longitude": 1}'))

    def test_parse_flag(self):
        self.assertTrue(parse_flag(b'{"enabled": true}', 'enabled'))
        self.assertFalse(parse_flag('off', 'enabled'))
        self.assertTrue(parse_flag('1', 'enabled'))
        self.assertIsNone(parse_flag('maybe', 'enabled'))

    def test_throttle_needs_time_and_distance(self):
        throttle = SampleThrottle(time_interval_ms=1000, distance_interval_m=5)

        self.assertTrue(throttle.allow(sample(north_of(0), T0)))
        self.assertFalse(throttle.allow(sample(north_of(20), T0 + timedelta(milliseconds=500))))
        self.assertFalse(throttle.allow(sample(north_of(2), T0 + timedelta(seconds=2))))
        self.assertTrue(throttle.allow(sample(north_of(20), T0 + timedelta(seconds=2))))


class MqttPositionServiceTest(SimpleTestCase):

    def setUp(self):
        self.client = MagicMock()
        self.service = MqttPositionService('MH01AB1234', client=self.client)

    def message(self, topic, payload):
        return SimpleNamespace(topic=topic, payload=json.dumps(payload).encode())

    def gps(self, meters, seconds):
        return self.message('vehicles/MH01AB1234/gps', {
            'latitude': north_of(meters).lat,
            'longitude': north_of(meters).lng,
            'accuracy': 5,
            'timestamp': (T0 + timedelta(seconds=seconds)).isoformat(),
        })

    def test_subscribes_on_connect(self):
        self.service.on_connect(self.client, None, {}, MagicMock(is_failure=False))

        topics = [call.args[0] for call in self.client.subscribe.call_args_list]
        self.assertEqual(topics, [
            'vehicles/MH01AB1234/gps',
            'vehicles/MH01AB1234/gps/status',
            'vehicles/MH01AB1234/network',
        ])

    def test_watch_publishes_config_and_delivers_throttled_samples(self):
        received = []
        subscription = self.service.watch(received.append, 'high', 1000, 5)

        topic, payload = self.client.publish.call_args.args[:2]
        self.assertEqual(topic, 'vehicles/MH01AB1234/gps/config')
        self.assertEqual(json.loads(payload)['accuracy'], 'high')

        self.service.on_message(self.client, None, self.gps(0, 0))
        self.service.on_message(self.client, None, self.gps(1, 2))
        self.service.on_message(self.client, None, self.gps(30, 3))
        self.assertEqual(len(received), 2)

        subscription.remove()
        self.service.on_message(self.client, None, self.gps(60, 5))
        self.assertEqual(len(received), 2)

    def test_unknown_accuracy_tier(self):
        with self.assertRaises(ValueError):
            self.service.watch(print, 'perfect')

    def test_hardware_and_network_status(self):
        hardware = MagicMock()
        network = MagicMock()
        self.service.hardware_listener = hardware
        self.service.network_listener = network

        self.service.on_message(self.client, None, self.message('vehicles/MH01AB1234/gps/status', {'enabled': False}))
        self.assertFalse(self.service.is_hardware_enabled())
        hardware.assert_called_once_with(False)

        self.service.on_message(self.client, None, self.message(
            'vehicles/MH01AB1234/network', {'connected': True, 'internet_reachable': False}
        ))
        network.assert_called_once_with(True, False)


class FakePositionService(PositionService):

    def __init__(self):
        self.permission = True
        self.hardware = True
        self.callback = None
        self.watch_args = None

    def request_permission(self):
        return self.permission

    def watch(self, callback, accuracy='best_for_navigation', time_interval_ms=1000, distance_interval_m=5.0):
        self.callback = callback
        self.watch_args = (accuracy, time_interval_ms, distance_interval_m)
        return PositionSubscription(lambda: setattr(self, 'callback', None))

    def is_hardware_enabled(self):
        return self.hardware


class QueuedExecutor:
    """Holds submitted work until run_all()"""

    def __init__(self):
        self.queue = []

    def submit(self, fn, *args, **kwargs):
        self.queue.append((fn, args, kwargs))

    def run_all(self):
        while self.queue:
            fn, args, kwargs = self.queue.pop(0)
            fn(*args, **kwargs)

    def shutdown(self, wait=True):
        self.run_all()


class VehicleSessionTest(TestCase):

    def setUp(self):
        patch_transactions(self)
        self.db = FakeFirestore()
        self.db.seed('users', 'user-1', {'name': 'Asha', 'walletBalance': 2000, 'vehicleNumber': 'MH01AB1234'})

        zone_service = MagicMock()
        zone_service.zones_near.return_value = [corridor()]

        self.clock = FakeClock(T0)
        self.position = FakePositionService()
        self.connectivity = ConnectivityMonitor()
        self.notifier = MagicMock()
        wallet = WalletFirebaseService(self.db)
        self.trip_store = TripFirebaseService(self.db)
        self.ledger = TollLedger(
            'user-1', wallet, self.connectivity, notifier=self.notifier, floor=500, trip_store=self.trip_store
        )

        self.session = VehicleSession(
            user_id='user-1',
            location_filter=LocationFilter(window_size=1),
            zone_index=ZoneIndex(zone_service),
            state_machine=TripStateMachine('user-1', self.trip_store, notifier=self.notifier),
            ledger=self.ledger,
            wallet_service=wallet,
            connectivity=self.connectivity,
            position_service=self.position,
            config=TollingConfig(smoothing_window=1),
            notifier=self.notifier,
            clock=self.clock,
            executor=InlineExecutor(),
        )

    def user(self):
        return self.db.data('users', 'user-1')

    def drive(self, *meters, step_seconds=2):
        for distance in meters:
            self.clock.advance(step_seconds)
            self.position.callback(sample(north_of(distance), self.clock.now))

    def trips(self):
        return self.db.collection('vehicle_trips').docs

    def test_start_watches_positions(self):
        self.assertTrue(self.session.start())

        self.assertEqual(self.position.watch_args, ('best_for_navigation', 1000, 5.0))
        self.assertEqual(self.user()['gpsStatusInZone'], 'NotRequired')

    def test_permission_denied(self):
        self.position.permission = False

        self.assertFalse(self.session.start())
        self.assertIsNone(self.position.callback)
        self.assertEqual(self.notifier.notify.call_args.args[0], 'Permission Denied')

    def test_zone_traversal_is_charged_once(self):
        self.session.start()

        self.drive(0, 80, 160, 240)
        self.assertEqual(self.user()['gpsStatusInZone'], 'Connected')

        self.drive(300)
        self.clock.advance(20)
        self.session.tick()
        self.session.tick()

        self.assertEqual(self.user()['walletBalance'], 1250)
        self.assertEqual(self.user()['gpsStatusInZone'], 'NotRequired')

        [trip] = self.trips().values()
        self.assertEqual(trip['status'], 'closed')
        self.assertEqual(trip['totalToll'], 750)

        [record] = self.db.collection('transactions').docs.values()
        self.assertEqual(record['amount'], 750)
        self.assertEqual(record['type'], 'debit')
        self.assertEqual(record['distance'], '300 meters')
        self.assertEqual(record['zoneName'], 'Corridor z1')

    def test_offline_exit_is_replayed_on_reconnect(self):
        self.session.start()
        self.drive(0, 80, 160, 240)
        self.connectivity.update(False, False)

        self.drive(300)
        self.clock.advance(20)
        self.session.tick()

        self.assertEqual(self.user()['walletBalance'], 2000)
        self.assertEqual(OfflineTransaction.objects.count(), 1)
        [trip] = self.trips().values()
        self.assertEqual(trip['status'], 'active')

        self.connectivity.update(True, True)

        self.assertEqual(self.user()['walletBalance'], 1250)
        self.assertEqual(OfflineTransaction.objects.count(), 0)
        [trip] = self.trips().values()
        self.assertEqual(trip['status'], 'closed')
        self.assertEqual(trip['totalToll'], 750)

    def test_low_balance_defers_until_top_up(self):
        self.db.seed('users', 'user-1', {'walletBalance': 1000})
        self.session.start()

        self.drive(0, 80, 160, 240, 300)
        self.clock.advance(20)
        self.session.tick()

        self.assertEqual(self.user()['walletBalance'], 1000)
        self.assertEqual(PendingDeduction.objects.get().amount, 750)
        [trip] = self.trips().values()
        self.assertEqual(trip['status'], 'pendingPayment')

        self.ledger.top_up(1000)

        self.assertEqual(self.user()['walletBalance'], 1250)
        self.assertFalse(PendingDeduction.objects.exists())
        [trip] = self.trips().values()
        self.assertEqual(trip['status'], 'closed')

    def test_gps_loss_mid_trip_hands_off_to_backend(self):
        self.session.start()
        self.drive(0, 80, 160)

        self.position.hardware = False
        self.clock.advance(5)
        self.session.tick()

        [trip] = self.trips().values()
        self.assertEqual(trip['calculationMethod'], 'HYBRID')
        self.assertEqual(trip['lastKnownGpsLocation'], north_of(160).to_dict())
        self.assertEqual(self.user()['gpsStatusInZone'], 'Disconnected')

        self.position.hardware = True
        self.clock.advance(5)
        self.session.tick()
        self.drive(240, 300)
        self.clock.advance(30)
        self.session.tick()

        self.assertEqual(self.user()['walletBalance'], 2000)
        self.assertEqual(self.db.collection('transactions').docs, {})

    def test_authority_is_read_on_the_ledger_worker(self):
        executor = QueuedExecutor()
        self.session.executor = executor
        self.session.start()
        self.drive(0, 80, 160, 240, 300)
        self.clock.advance(20)

        with patch.object(self.trip_store, 'read_authority', wraps=self.trip_store.read_authority) as read_authority:
            self.session.tick()
            read_authority.assert_not_called()

            [trip_id] = self.trips()
            self.db.collection('vehicle_trips').document(trip_id).update({
                'calculationMethod': 'BACKEND',
                'authorityEpoch': 1,
            })
            executor.run_all()

            read_authority.assert_called_once_with(trip_id)

        self.assertEqual(self.user()['walletBalance'], 2000)
        self.assertEqual(self.trips()[trip_id]['status'], 'active')

    def test_bad_sample_does_not_stop_session(self):
        self.session.start()
        self.session.on_sample(None)

        self.drive(0)
        self.assertEqual(len(self.trips()), 1)

    def test_stop_removes_subscription(self):
        self.session.start()
        self.session.stop()
        self.assertIsNone(self.position.callback)
