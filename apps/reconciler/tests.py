"""
Tests for the camera-based segment reconciler
"""

from unittest.mock import MagicMock, patch

from django.test import SimpleTestCase
from google.api_core.exceptions import ServiceUnavailable

from apps.testing import FakeFirestore, unwrap
from apps.trips.types import CalculationMethod
from apps.wallet.firebase_service import _debit_in_transaction
from config.tolling import TollingConfig
from .reconciler import (
    OUTCOME_ACCRUED,
    OUTCOME_CHARGED,
    OUTCOME_DEFERRED,
    OUTCOME_OPENED,
    OUTCOME_PENDING,
    BackendReconciler,
    _apply_checkpoint,
)

METERS_PER_DEGREE = 111194.92664455873


def north_of(meters):
    return {'lat': 19.0 + meters / METERS_PER_DEGREE, 'lng': 72.8}


class BackendReconcilerTest(SimpleTestCase):

    def setUp(self):
        for target, transactional in (
            ('apps.reconciler.reconciler._apply_checkpoint', _apply_checkpoint),
            ('apps.wallet.firebase_service._debit_in_transaction', _debit_in_transaction),
        ):
            patcher = patch(target, unwrap(transactional))
            patcher.start()
            self.addCleanup(patcher.stop)

        self.db = FakeFirestore()
        self.db.seed('tollZones', 'z1', {
            'name': 'Sea Link',
            'coordinates': [[18.99, 72.79], [18.99, 72.81], [19.02, 72.81], [19.02, 72.79]],
            'operators': {
                'cam-1': {'location': north_of(0)},
                'cam-2': {'location': north_of(1000)},
                'cam-dark': {'name': 'no location'},
            },
        })
        self.db.seed('users', 'user-1', {'walletBalance': 5000})
        self.reconciler = BackendReconciler(db=self.db, config=TollingConfig())

    def seed_trip(self, trip_id='trip-1', **fields):
        data = {
            'userId': 'user-1',
            'tollZoneId': 'z1',
            'zoneName': 'Sea Link',
            'status': 'active',
            'calculationMethod': 'BACKEND',
            'authorityEpoch': 1,
            'totalToll': 0,
        }
        data.update(fields)
        self.db.seed('vehicle_trips', trip_id, data)
        return self.db.data('vehicle_trips', trip_id)

    def trip(self, trip_id='trip-1'):
        return self.db.data('vehicle_trips', trip_id)

    def balance(self):
        return self.db.data('users', 'user-1')['walletBalance']

    def test_device_trip_is_left_to_the_unit(self):
        data = self.seed_trip(calculationMethod='DEVICE', authorityEpoch=0, lastCheckpoint='cam-1')

        result = self.reconciler.process_trip_update('trip-1', data)

        self.assertEqual(result.outcome, OUTCOME_DEFERRED)
        self.assertEqual(self.trip()['processedCheckpoint'], 'cam-1')
        self.assertEqual(self.trip()['calculationMethod'], 'DEVICE')
        self.assertEqual(self.balance(), 5000)

    def test_hybrid_charges_from_anchor_and_takes_over(self):
        data = self.seed_trip(
            calculationMethod='HYBRID',
            lastKnownGpsLocation=north_of(600),
            lastCheckpoint='cam-2',
        )

        result = self.reconciler.process_trip_update('trip-1', data)

        self.assertEqual(result.outcome, OUTCOME_CHARGED)
        self.assertEqual(result.method, CalculationMethod.HYBRID)
        self.assertAlmostEqual(result.distance_meters, 400, places=3)
        self.assertEqual(result.amount, 1000)
        self.assertEqual(self.balance(), 4000)

        trip = self.trip()
        self.assertEqual(trip['calculationMethod'], 'BACKEND')
        self.assertEqual(trip['authorityEpoch'], 2)
        self.assertEqual(trip['totalToll'], 1000)
        self.assertEqual(trip['processedCheckpoint'], 'cam-2')
        self.assertEqual(self.db.data('transactions', 'trip-1-cam-2')['calculationMethod'], 'BACKEND')

    def test_backend_charges_camera_to_camera(self):
        data = self.seed_trip(processedCheckpoint='cam-1', lastCheckpoint='cam-2', totalToll=300)

        result = self.reconciler.process_trip_update('trip-1', data)

        self.assertEqual(result.amount, 2500)
        self.assertEqual(self.balance(), 2500)
        self.assertEqual(self.trip()['totalToll'], 2800)
        self.assertEqual(self.trip()['lastSegmentDistance'], '1000 meters')

    def test_first_camera_opens_segment(self):
        data = self.seed_trip(lastCheckpoint='cam-1')

        result = self.reconciler.process_trip_update('trip-1', data)

        self.assertEqual(result.outcome, OUTCOME_OPENED)
        self.assertEqual(self.trip()['processedCheckpoint'], 'cam-1')
        self.assertEqual(self.balance(), 5000)

    def test_already_processed_checkpoint_is_ignored(self):
        data = self.seed_trip(processedCheckpoint='cam-2', lastCheckpoint='cam-2')
        self.assertIsNone(self.reconciler.process_trip_update('trip-1', data))

    def test_stale_update_is_charged_once(self):
        data = self.seed_trip(processedCheckpoint='cam-1', lastCheckpoint='cam-2')

        self.reconciler.process_trip_update('trip-1', data)
        self.assertIsNone(self.reconciler.process_trip_update('trip-1', data))

        self.assertEqual(self.balance(), 2500)
        self.assertEqual(self.trip()['totalToll'], 2500)

    def test_insufficient_balance_marks_pending_payment(self):
        self.db.seed('users', 'user-1', {'walletBalance': 1000})
        data = self.seed_trip(processedCheckpoint='cam-1', lastCheckpoint='cam-2')

        result = self.reconciler.process_trip_update('trip-1', data)

        self.assertEqual(result.outcome, OUTCOME_PENDING)
        self.assertEqual(self.balance(), 1000)
        trip = self.trip()
        self.assertEqual(trip['status'], 'pendingPayment')
        self.assertEqual(trip['pendingToll'], 2500)
        self.assertEqual(trip['totalToll'], 2500)

    def test_unregistered_vehicle_accrues_on_trip(self):
        data = self.seed_trip(userId=None, processedCheckpoint='cam-1', lastCheckpoint='cam-2')

        result = self.reconciler.process_trip_update('trip-1', data)

        self.assertEqual(result.outcome, OUTCOME_ACCRUED)
        self.assertEqual(self.trip()['totalToll'], 2500)
        self.assertEqual(self.db.collection('transactions').docs, {})

    def test_missing_camera_location_aborts(self):
        data = self.seed_trip(processedCheckpoint='cam-1', lastCheckpoint='cam-dark')

        self.assertIsNone(self.reconciler.process_trip_update('trip-1', data))
        self.assertEqual(self.trip()['processedCheckpoint'], 'cam-1')
        self.assertEqual(self.balance(), 5000)

    def test_unknown_user_aborts(self):
        data = self.seed_trip(userId='ghost', processedCheckpoint='cam-1', lastCheckpoint='cam-2')

        self.assertIsNone(self.reconciler.process_trip_update('trip-1', data))
        self.assertEqual(self.trip()['processedCheckpoint'], 'cam-1')

    def test_network_error_leaves_checkpoint_for_retry(self):
        data = self.seed_trip(processedCheckpoint='cam-1', lastCheckpoint='cam-2')
        wallet = MagicMock()
        wallet.debit.side_effect = ServiceUnavailable('offline')
        self.reconciler.wallet_service = wallet

        self.assertIsNone(self.reconciler.process_trip_update('trip-1', data))
        self.assertEqual(self.trip()['processedCheckpoint'], 'cam-1')

    def test_unknown_method_is_treated_as_backend(self):
        data = self.seed_trip(calculationMethod='ANPR', processedCheckpoint='cam-1', lastCheckpoint='cam-2')

        result = self.reconciler.process_trip_update('trip-1', data)

        self.assertEqual(result.method, CalculationMethod.BACKEND)
        self.assertEqual(result.outcome, OUTCOME_CHARGED)

    def test_listener_processes_changes(self):
        self.seed_trip(processedCheckpoint='cam-1', lastCheckpoint='cam-2')
        callback = MagicMock()

        watch = self.reconciler.listen_and_process(callback)
        self.db.collection('vehicle_trips').emit(['trip-1'])
        watch.unsubscribe()

        callback.assert_called_once()
        self.assertEqual(callback.call_args.args[0].amount, 2500)

    def test_listener_ignores_removed_documents(self):
        self.seed_trip(processedCheckpoint='cam-1', lastCheckpoint='cam-2')
        callback = MagicMock()

        self.reconciler.listen_and_process(callback)
        self.db.collection('vehicle_trips').emit(['trip-1'], change_type='REMOVED')

        callback.assert_not_called()
        self.assertEqual(self.balance(), 5000)

    def test_process_existing_trips(self):
        self.seed_trip('trip-1', processedCheckpoint='cam-1', lastCheckpoint='cam-2')
        self.seed_trip('trip-2', status='pendingPayment', lastCheckpoint='cam-1')
        self.seed_trip('trip-3', status='closed', processedCheckpoint='cam-1', lastCheckpoint='cam-2')
        self.seed_trip('trip-4')

        self.assertEqual(self.reconciler.process_existing_trips(limit=10), (3, 2))
        self.assertEqual(self.trip('trip-3')['processedCheckpoint'], 'cam-1')
        self.assertEqual(self.balance(), 2500)
