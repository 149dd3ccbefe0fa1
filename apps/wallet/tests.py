"""
Tests for wallet debits, the toll ledger, the wallet views and user notices
"""

import json
from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest.mock import MagicMock, patch

from django.core import mail
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from google.api_core.exceptions import ServiceUnavailable

from apps.geofencing.types import Coordinate
from apps.testing import FakeFirestore, unwrap
from apps.trips.connectivity import ConnectivityMonitor
from apps.trips.firebase_service import TripFirebaseService
from apps.trips.types import ChargeRequest
from .firebase_service import (
    DebitResult,
    WalletFirebaseService,
    _debit_in_transaction,
    group_transactions_by_date,
)
from .ledger import ChargeOutcome, TollLedger
from .models import OfflineTransaction, PendingDeduction
from .notifications import UserNotifier

T0 = datetime(2025, 11, 2, 9, 0, tzinfo=dt_timezone.utc)


def make_charge(amount=750, trip_id='trip-1', charge_id=None, zone_name='Sea Link', distance=300.0):
    extra = {'charge_id': charge_id} if charge_id else {}
    return ChargeRequest(
        trip_id=trip_id,
        user_id='user-1',
        zone_id='z1',
        zone_name=zone_name,
        amount=amount,
        distance_meters=distance,
        entry=Coordinate(19.0, 72.8),
        exit=Coordinate(19.0027, 72.8),
        occurred_at=T0,
        toll_amount=85.0,
        **extra,
    )


class WalletTestMixin:

    def setUp(self):
        patcher = patch('apps.wallet.firebase_service._debit_in_transaction', unwrap(_debit_in_transaction))
        patcher.start()
        self.addCleanup(patcher.stop)

        self.db = FakeFirestore()
        self.db.seed('users', 'user-1', {'name': 'Asha', 'walletBalance': 2000})
        self.service = WalletFirebaseService(self.db)

    def balance(self):
        return self.db.data('users', 'user-1')['walletBalance']


class WalletDebitTest(WalletTestMixin, SimpleTestCase):

    def test_applied_writes_balance_and_record(self):
        result = self.service.debit('user-1', 750, 'c-1', {'zoneName': 'Sea Link'}, 500)

        self.assertEqual(result, DebitResult.APPLIED)
        self.assertEqual(self.balance(), 1250)
        record = self.db.data('transactions', 'c-1')
        self.assertEqual(record['amount'], 750)
        self.assertEqual(record['type'], 'debit')
        self.assertEqual(record['userId'], 'user-1')
        self.assertEqual(record['zoneName'], 'Sea Link')
        self.assertIn('timestamp', record)

    def test_same_charge_id_is_applied_once(self):
        self.service.debit('user-1', 750, 'c-1', {}, 500)
        result = self.service.debit('user-1', 750, 'c-1', {}, 500)

        self.assertEqual(result, DebitResult.DUPLICATE)
        self.assertEqual(self.balance(), 1250)

    def test_floor_is_inclusive(self):
        self.assertEqual(self.service.debit('user-1', 1500, 'c-1', {}, 500), DebitResult.APPLIED)
        self.assertEqual(self.balance(), 500)

    def test_refused_below_floor(self):
        result = self.service.debit('user-1', 1501, 'c-1', {}, 500)

        self.assertEqual(result, DebitResult.INSUFFICIENT)
        self.assertEqual(self.balance(), 2000)
        self.assertIsNone(self.db.data('transactions', 'c-1'))

    def test_missing_user(self):
        self.assertEqual(self.service.debit('ghost', 10, 'c-1', {}, 500), DebitResult.USER_MISSING)

    def test_network_error_propagates(self):
        self.db.failures['get'] = ServiceUnavailable('offline')
        with self.assertRaises(ServiceUnavailable):
            self.service.debit('user-1', 750, 'c-1', {}, 500)

    def test_credit(self):
        tx_id = self.service.credit('user-1', 300)

        self.assertEqual(self.balance(), 2300)
        self.assertEqual(self.db.data('transactions', tx_id)['type'], 'credit')

    def test_gps_status(self):
        self.assertTrue(self.service.update_gps_status('user-1', 'Connected'))
        self.assertEqual(self.db.data('users', 'user-1')['gpsStatusInZone'], 'Connected')
        self.assertFalse(self.service.update_gps_status('ghost', 'Connected'))

    def test_list_transactions_newest_first(self):
        for index, stamp in enumerate((T0, T0 + timedelta(hours=2), T0 + timedelta(hours=1))):
            self.db.seed('transactions', f't{index}', {
                'userId': 'user-1', 'type': 'debit', 'amount': 10, 'timestamp': stamp,
            })
        self.db.seed('transactions', 'other', {'userId': 'user-2', 'type': 'debit', 'timestamp': T0})

        ids = [tx['firebase_id'] for tx in self.service.list_transactions('user-1', limit=2)]
        self.assertEqual(ids, ['t1', 't2'])


class HistoryGroupingTest(SimpleTestCase):

    @override_settings(TIME_ZONE='UTC')
    def test_sections(self):
        today = date(2025, 11, 2)
        transactions = [
            {'id': 'a', 'timestamp': T0},
            {'id': 'b', 'timestamp': T0 - timedelta(hours=1)},
            {'id': 'c', 'timestamp': T0 - timedelta(days=1)},
            {'id': 'd', 'timestamp': None},
            {'id': 'e', 'timestamp': datetime(2025, 10, 28, 18, 0, tzinfo=dt_timezone.utc)},
        ]

        sections = group_transactions_by_date(transactions, today)

        self.assertEqual([section['title'] for section in sections], ['Today', 'Yesterday', 'October 28, 2025'])
        self.assertEqual([tx['id'] for tx in sections[0]['data']], ['a', 'b'])


class TollLedgerTest(WalletTestMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.connectivity = ConnectivityMonitor()
        self.notifier = MagicMock()
        self.ledger = TollLedger('user-1', self.service, self.connectivity, notifier=self.notifier, floor=500)

    def titles(self):
        return [call.args[0] for call in self.notifier.notify.call_args_list]

    def test_charge_applied(self):
        charge = make_charge()

        self.assertEqual(self.ledger.charge(charge), ChargeOutcome.APPLIED)
        self.assertEqual(self.balance(), 1250)
        record = self.db.data('transactions', charge.charge_id)
        self.assertEqual(record['distance'], '300 meters')
        self.assertEqual(record['tollAmount'], 85.0)
        self.assertEqual(self.titles(), ['Toll Charged'])

    def test_charge_twice_is_duplicate(self):
        charge = make_charge()
        self.ledger.charge(charge)

        self.assertEqual(self.ledger.charge(charge), ChargeOutcome.DUPLICATE)
        self.assertEqual(self.balance(), 1250)

    def test_offline_charge_is_queued(self):
        self.connectivity.update(False)

        self.assertEqual(self.ledger.charge(make_charge()), ChargeOutcome.DEFERRED_OFFLINE)
        self.assertEqual(self.balance(), 2000)

        row = OfflineTransaction.objects.get()
        self.assertEqual(row.amount, Decimal('750'))
        self.assertEqual(row.distance_description, '300 meters')
        self.assertEqual(self.titles(), ['Offline'])

    def test_network_error_queues_charge(self):
        self.db.failures['get'] = ServiceUnavailable('offline')

        self.assertEqual(self.ledger.charge(make_charge()), ChargeOutcome.DEFERRED_OFFLINE)
        self.assertEqual(OfflineTransaction.objects.count(), 1)

    def test_low_balance_merges_into_one_pending_deduction(self):
        self.db.seed('users', 'user-1', {'walletBalance': 600})

        first_charge = make_charge(600, trip_id='trip-1')
        second_charge = make_charge(200, trip_id='trip-2', zone_name='Bandra')

        first = self.ledger.charge(first_charge)
        second = self.ledger.charge(second_charge)

        self.assertEqual(first, ChargeOutcome.DEFERRED_LOW_BALANCE)
        self.assertEqual(second, ChargeOutcome.DEFERRED_LOW_BALANCE)
        pending = PendingDeduction.objects.get()
        self.assertEqual(pending.amount, Decimal('800'))
        self.assertEqual([segment['trip_id'] for segment in pending.segments], ['trip-1', 'trip-2'])
        self.assertEqual(pending.zone_name, 'Bandra')
        self.assertEqual(
            [segment['charge_id'] for segment in pending.segments],
            [first_charge.charge_id, second_charge.charge_id],
        )
        self.assertEqual(self.balance(), 600)
        self.assertIn('Low Balance on Exit', self.titles())

    def test_pending_applied_when_balance_increases(self):
        self.db.seed('users', 'user-1', {'walletBalance': 1000})
        self.ledger.charge(make_charge(750))

        self.assertEqual(self.ledger.on_balance_increased(), ChargeOutcome.DEFERRED_LOW_BALANCE)
        self.assertTrue(PendingDeduction.objects.exists())

        self.assertEqual(self.ledger.top_up(1000), ChargeOutcome.APPLIED)
        self.assertEqual(self.balance(), 1250)
        self.assertFalse(PendingDeduction.objects.exists())

    def test_pending_segments_are_paid_oldest_first(self):
        self.db.seed('users', 'user-1', {'walletBalance': 600})
        first = make_charge(300, trip_id='trip-1')
        second = make_charge(400, trip_id='trip-2')
        self.ledger.charge(first)
        self.ledger.charge(second)
        self.db.seed('users', 'user-1', {'walletBalance': 1000})

        self.assertEqual(self.ledger.on_balance_increased(), ChargeOutcome.DEFERRED_LOW_BALANCE)

        self.assertEqual(self.balance(), 700)
        self.assertIsNotNone(self.db.data('transactions', first.charge_id))
        pending = PendingDeduction.objects.get()
        self.assertEqual(pending.amount, Decimal('400'))
        self.assertEqual([segment['charge_id'] for segment in pending.segments], [second.charge_id])

    def test_pending_debit_with_lost_response_is_not_charged_again(self):
        self.db.seed('users', 'user-1', {'walletBalance': 600})
        self.ledger.charge(make_charge(300, trip_id='trip-1'))
        self.db.seed('users', 'user-1', {'walletBalance': 1000})

        real_debit = self.service.debit

        def lost_response(*args):
            real_debit(*args)
            raise ServiceUnavailable('response lost')

        with patch.object(self.service, 'debit', side_effect=lost_response):
            self.assertIsNone(self.ledger.on_balance_increased())
        self.assertEqual(self.balance(), 700)

        self.assertEqual(self.ledger.charge(make_charge(250, trip_id='trip-2')), ChargeOutcome.DEFERRED_LOW_BALANCE)
        self.assertEqual(PendingDeduction.objects.get().amount, Decimal('550'))

        self.assertEqual(self.ledger.top_up(1000), ChargeOutcome.APPLIED)

        self.assertEqual(self.balance(), 1450)
        self.assertFalse(PendingDeduction.objects.exists())

    def test_pending_untouched_while_offline(self):
        self.db.seed('users', 'user-1', {'walletBalance': 1000})
        self.ledger.charge(make_charge(750))
        self.db.seed('users', 'user-1', {'walletBalance': 5000})
        self.connectivity.update(False)

        self.assertIsNone(self.ledger.on_balance_increased())
        self.assertTrue(PendingDeduction.objects.exists())

    def test_top_up_rejects_non_positive_amounts(self):
        for amount in (0, -5):
            with self.subTest(amount=amount):
                with self.assertRaises(ValueError):
                    self.ledger.top_up(amount)
        self.assertEqual(self.balance(), 2000)

    def test_replay_is_oldest_first(self):
        self.connectivity.update(False)
        charges = [make_charge(100, trip_id=f'trip-{n}') for n in range(3)]
        for charge in charges:
            self.ledger.charge(charge)
        self.connectivity.update(True)

        debited = []
        real_debit = self.service.debit

        def recording_debit(user_id, amount, charge_id, record, floor):
            debited.append(charge_id)
            return real_debit(user_id, amount, charge_id, record, floor)

        with patch.object(self.service, 'debit', side_effect=recording_debit):
            self.assertEqual(self.ledger.on_reconnect(), 3)

        self.assertEqual(debited, [charge.charge_id for charge in charges])
        self.assertEqual(self.balance(), 1700)
        self.assertFalse(OfflineTransaction.objects.exists())

    def test_replay_stops_at_network_error_and_resumes(self):
        self.connectivity.update(False)
        charges = [make_charge(100, trip_id=f'trip-{n}') for n in range(3)]
        for charge in charges:
            self.ledger.charge(charge)
        self.connectivity.update(True)

        real_debit = self.service.debit
        calls = []

        def flaky_debit(*args):
            calls.append(args[2])
            if len(calls) == 2:
                raise ServiceUnavailable('dropped')
            return real_debit(*args)

        with patch.object(self.service, 'debit', side_effect=flaky_debit):
            self.assertEqual(self.ledger.on_reconnect(), 1)

        remaining = list(OfflineTransaction.objects.values_list('charge_id', flat=True))
        self.assertEqual(remaining, [charges[1].charge_id, charges[2].charge_id])
        self.assertEqual(self.balance(), 1900)

        self.assertEqual(self.ledger.on_reconnect(), 2)
        self.assertEqual(self.balance(), 1700)

    def test_replay_after_partial_apply_does_not_double_charge(self):
        self.connectivity.update(False)
        charge = make_charge(100)
        self.ledger.charge(charge)
        self.connectivity.update(True)

        # The debit landed but the unit never heard back
        self.service.debit('user-1', 100, charge.charge_id, {}, 500)

        self.assertEqual(self.ledger.on_reconnect(), 1)
        self.assertEqual(self.balance(), 1900)
        self.assertFalse(OfflineTransaction.objects.exists())

    def test_settled_charges_close_their_trips(self):
        self.ledger.trip_store = TripFirebaseService(self.db)
        for trip_id in ('trip-1', 'trip-2'):
            self.db.seed('vehicle_trips', trip_id, {'status': 'active', 'totalToll': 0})
        self.db.seed('users', 'user-1', {'walletBalance': 1200})
        self.connectivity.update(False)
        self.ledger.charge(make_charge(600, trip_id='trip-1'))
        self.ledger.charge(make_charge(300, trip_id='trip-2'))
        self.connectivity.update(True)

        self.assertEqual(self.ledger.on_reconnect(), 2)

        self.assertEqual(self.db.data('vehicle_trips', 'trip-1')['status'], 'closed')
        self.assertEqual(self.db.data('vehicle_trips', 'trip-1')['totalToll'], 600)
        self.assertEqual(self.db.data('vehicle_trips', 'trip-2')['status'], 'pendingPayment')

        self.ledger.top_up(500)

        self.assertEqual(self.balance(), 800)
        self.assertEqual(self.db.data('vehicle_trips', 'trip-2')['status'], 'closed')

    def test_unaffordable_replay_moves_to_pending(self):
        self.db.seed('users', 'user-1', {'walletBalance': 600})
        self.connectivity.update(False)
        self.ledger.charge(make_charge(300))
        self.connectivity.update(True)

        self.assertEqual(self.ledger.on_reconnect(), 1)

        self.assertFalse(OfflineTransaction.objects.exists())
        self.assertEqual(PendingDeduction.objects.get().amount, Decimal('300'))
        self.assertEqual(self.balance(), 600)


@override_settings(VEHICLE_USER_ID='user-1')
class WalletViewsTest(WalletTestMixin, TestCase):

    def setUp(self):
        super().setUp()
        patcher = patch('apps.wallet.views.WalletFirebaseService', lambda: WalletFirebaseService(self.db))
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_summary(self):
        PendingDeduction.objects.create(user_id='user-1', amount=Decimal('120'))

        response = self.client.get(reverse('wallet:wallet_summary'))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['balance'], 2000)
        self.assertEqual(body['pending_deduction'], 120.0)
        self.assertEqual(body['offline_queue'], 0)

    def test_summary_unknown_user(self):
        response = self.client.get(reverse('wallet:wallet_summary'), {'user_id': 'ghost'})
        self.assertEqual(response.status_code, 404)

    def test_top_up(self):
        response = self.client.post(
            reverse('wallet:top_up'),
            data=json.dumps({'amount': 500}),
            content_type='application/json',
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.balance(), 2500)

    def test_top_up_rejects_bad_amounts(self):
        for payload in ({'amount': 0}, {'amount': 'lots'}, {}):
            with self.subTest(payload=payload):
                response = self.client.post(
                    reverse('wallet:top_up'),
                    data=json.dumps(payload),
                    content_type='application/json',
                )
                self.assertEqual(response.status_code, 400)
        self.assertEqual(self.balance(), 2000)

    def test_top_up_when_wallet_unreachable(self):
        self.db.failures['update'] = ServiceUnavailable('offline')

        response = self.client.post(
            reverse('wallet:top_up'),
            data=json.dumps({'amount': 500}),
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 503)

    def test_history_only_lists_debits(self):
        self.service.debit('user-1', 750, 'c-1', {'zoneName': 'Sea Link'}, 500)
        self.service.credit('user-1', 100)

        response = self.client.get(reverse('wallet:history'))

        body = response.json()
        self.assertEqual(body['balance'], 1350)
        self.assertEqual(len(body['sections']), 1)
        self.assertEqual(body['sections'][0]['title'], 'Today')
        self.assertEqual(body['sections'][0]['data'][0]['zoneName'], 'Sea Link')


@override_settings(EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend')
class UserNotifierTest(SimpleTestCase):

    def test_logs_only_by_default(self):
        self.assertFalse(UserNotifier(email='asha@example.com').notify('Toll Charged', 'Paid 750'))
        self.assertEqual(len(mail.outbox), 0)

    def test_emails_when_enabled(self):
        notifier = UserNotifier(email='asha@example.com', email_alerts=True)

        self.assertTrue(notifier.notify('Toll Charged', 'Paid 750'))
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, '[TollPay] Toll Charged')
        self.assertEqual(mail.outbox[0].to, ['asha@example.com'])

    def test_no_address(self):
        self.assertFalse(UserNotifier(email_alerts=True).notify('Toll Charged', 'Paid 750'))


class ReplayOfflineCommandTest(WalletTestMixin, TestCase):

    def setUp(self):
        super().setUp()
        patcher = patch(
            'apps.wallet.management.commands.replay_offline.WalletFirebaseService',
            lambda: WalletFirebaseService(self.db),
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def queue(self, charge_id, amount):
        OfflineTransaction.objects.create(
            charge_id=charge_id,
            user_id='user-1',
            trip_id='trip-1',
            zone_name='Sea Link',
            amount=Decimal(amount),
            distance_description='300 meters',
            occurred_at=T0,
        )

    def test_replays_every_queued_user(self):
        self.db.seed('vehicle_trips', 'trip-1', {'status': 'active', 'totalToll': 0})
        self.queue('c-1', 100)
        self.queue('c-2', 200)
        out = StringIO()

        call_command('replay_offline', stdout=out)

        self.assertEqual(self.balance(), 1700)
        self.assertFalse(OfflineTransaction.objects.exists())
        self.assertIn('2 charges settled', out.getvalue())
        self.assertEqual(self.db.data('vehicle_trips', 'trip-1')['status'], 'closed')

    def test_nothing_queued(self):
        out = StringIO()
        with override_settings(VEHICLE_USER_ID=''):
            call_command('replay_offline', stdout=out)
        self.assertIn('Nothing queued', out.getvalue())
