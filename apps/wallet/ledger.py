"""
Toll Ledger
Applies charge requests to the wallet exactly once, deferring them locally
when the unit is offline or the balance is too low.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from django.db import transaction
from google.api_core.exceptions import GoogleAPIError

from apps.geofencing.geofence_utils import describe_distance
from apps.trips.types import ChargeRequest, TripStatus
from .firebase_service import DebitResult
from .models import OfflineTransaction, PendingDeduction

logger = logging.getLogger(__name__)


class ChargeOutcome(str, Enum):
    APPLIED = 'applied'
    DUPLICATE = 'duplicate'
    DEFERRED_OFFLINE = 'deferred_offline'
    DEFERRED_LOW_BALANCE = 'deferred_low_balance'
    FAILED = 'failed'


def _segment_from_request(request: ChargeRequest) -> Dict:
    return {
        'charge_id': request.charge_id,
        'trip_id': request.trip_id,
        'zone_id': request.zone_id,
        'zone_name': request.zone_name,
        'amount': request.amount,
        'distance_meters': request.distance_meters,
        'entry': request.entry.to_dict(),
        'exit': request.exit.to_dict(),
        'occurred_at': request.occurred_at.isoformat(),
    }


def _segment_from_offline(row: OfflineTransaction) -> Dict:
    return {
        'charge_id': row.charge_id,
        'trip_id': row.trip_id,
        'zone_id': row.zone_id,
        'zone_name': row.zone_name,
        'amount': int(row.amount),
        'distance_meters': row.distance_meters,
        'entry': {'lat': row.entry_lat, 'lng': row.entry_lng},
        'exit': {'lat': row.exit_lat, 'lng': row.exit_lng},
        'occurred_at': row.occurred_at.isoformat(),
    }


class TollLedger:
    """
    Wallet side of the vehicle session.

    Rules:
        - offline: the charge is queued as an OfflineTransaction
        - online: one Firestore transaction checks the charge id, the floor
          and debits; a network error while doing so queues the charge
        - refused by the floor: merged into the user's single PendingDeduction

    Every segment keeps the charge id it was finalized with until it is paid,
    whichever path it takes.
    """

    def __init__(self, user_id: str, wallet_service, connectivity, notifier=None, floor: int = 500, trip_store=None):
        """
        Args:
            user_id: Firebase UID of the wallet owner
            wallet_service: WalletFirebaseService
            connectivity: ConnectivityMonitor
            notifier: UserNotifier
            floor: Minimum balance left after any debit
            trip_store: TripFirebaseService, closes trips once their charge settles
        """
        self.user_id = user_id
        self.wallet_service = wallet_service
        self.connectivity = connectivity
        self.notifier = notifier
        self.floor = floor
        self.trip_store = trip_store

    def _notify(self, title: str, message: str):
        if self.notifier:
            self.notifier.notify(title, message)

    def _close_trip(self, trip_id: str, status: TripStatus, amount: int):
        if self.trip_store and trip_id:
            self.trip_store.close_trip(trip_id, status, amount)

    def charge(self, request: ChargeRequest) -> ChargeOutcome:
        """
        Settle one finalized exit.

        Args:
            request: ChargeRequest emitted by the trip state machine

        Returns:
            ChargeOutcome
        """
        if self.connectivity.is_offline:
            self._queue_offline(request)
            return ChargeOutcome.DEFERRED_OFFLINE

        record = {
            'zoneId': request.zone_id,
            'zoneName': request.zone_name,
            'tripId': request.trip_id,
            'distance': describe_distance(request.distance_meters),
            'calculationMethod': request.calculation_method.value,
        }
        if request.toll_amount is not None:
            record['tollAmount'] = request.toll_amount

        try:
            result = self.wallet_service.debit(
                request.user_id, request.amount, request.charge_id, record, self.floor
            )
        except GoogleAPIError as e:
            logger.warning(f"Debit of charge {request.charge_id} failed, queueing offline: {e}")
            self._queue_offline(request)
            return ChargeOutcome.DEFERRED_OFFLINE

        if result == DebitResult.APPLIED:
            self._close_trip(request.trip_id, TripStatus.CLOSED, request.amount)
            self._notify(
                "Toll Charged",
                f"You traveled {request.distance_meters:.0f}m in {request.zone_name}. "
                f"A toll of ₹{request.amount:.2f} has been deducted.",
            )
            return ChargeOutcome.APPLIED

        if result == DebitResult.DUPLICATE:
            self._close_trip(request.trip_id, TripStatus.CLOSED, request.amount)
            return ChargeOutcome.DUPLICATE

        self._close_trip(request.trip_id, TripStatus.PENDING_PAYMENT, request.amount)

        if result == DebitResult.INSUFFICIENT:
            self._defer(request.user_id, _segment_from_request(request))
            self._notify(
                "Low Balance on Exit",
                f"Toll of ₹{request.amount:.2f} could not be charged. Please add funds.",
            )
            return ChargeOutcome.DEFERRED_LOW_BALANCE

        logger.error(f"Charge {request.charge_id} failed: {result.value}")
        return ChargeOutcome.FAILED

    def _queue_offline(self, request: ChargeRequest) -> OfflineTransaction:
        row, created = OfflineTransaction.objects.get_or_create(
            charge_id=request.charge_id,
            defaults={
                'user_id': request.user_id,
                'trip_id': request.trip_id,
                'zone_id': request.zone_id,
                'zone_name': request.zone_name,
                'amount': Decimal(request.amount),
                'distance_meters': request.distance_meters,
                'distance_description': describe_distance(request.distance_meters),
                'calculation_method': request.calculation_method.value,
                'toll_amount': request.toll_amount,
                'entry_lat': request.entry.lat,
                'entry_lng': request.entry.lng,
                'exit_lat': request.exit.lat,
                'exit_lng': request.exit.lng,
                'occurred_at': request.occurred_at,
            },
        )
        if created:
            logger.info(f"Queued offline charge {request.charge_id} ({request.amount} in {request.zone_name})")
            self._notify(
                "Offline",
                f"Toll of ₹{request.amount:.2f} for {request.zone_name} will be charged when you are back online.",
            )
        return row

    @staticmethod
    def _store_segments(pending: PendingDeduction, segments: List[Dict]):
        """Recompute the merged totals from the outstanding segments."""
        pending.segments = segments
        pending.amount = sum((Decimal(segment['amount']) for segment in segments), Decimal(0))
        pending.distance_meters = sum(segment['distance_meters'] for segment in segments)

        latest = segments[-1]
        pending.zone_id = latest['zone_id']
        pending.zone_name = latest['zone_name']
        pending.entry_lat = latest['entry']['lat']
        pending.entry_lng = latest['entry']['lng']
        pending.exit_lat = latest['exit']['lat']
        pending.exit_lng = latest['exit']['lng']

    def _defer(self, user_id: str, segment: Dict) -> PendingDeduction:
        """Create or merge into the user's single pending deduction."""
        with transaction.atomic():
            pending = PendingDeduction.objects.select_for_update().filter(user_id=user_id).first()
            if pending is None:
                pending = PendingDeduction(user_id=user_id, segments=[])

            segments = list(pending.segments or [])
            if any(existing['charge_id'] == segment['charge_id'] for existing in segments):
                return pending

            self._store_segments(pending, segments + [segment])
            pending.save()

        logger.info(f"Pending deduction for {user_id} is now {pending.amount} "
                    f"({len(pending.segments)} segments)")
        return pending

    def pending_deduction(self) -> Optional[PendingDeduction]:
        return PendingDeduction.objects.filter(user_id=self.user_id).first()

    def on_balance_increased(self) -> Optional[ChargeOutcome]:
        """
        Re-evaluate the outstanding pending deduction after the balance went up.

        Segments are debited oldest first, each under its own charge id, so a
        segment whose debit landed before a lost response is never charged twice.

        Returns:
            ChargeOutcome, or None when nothing was pending or it could not be tried
        """
        pending = self.pending_deduction()
        if pending is None:
            return None
        if self.connectivity.is_offline:
            return None

        remaining = list(pending.segments or [])
        paid = 0
        applied = False
        outcome = None

        while remaining:
            segment = remaining[0]
            amount = int(segment['amount'])
            record = {
                'zoneId': segment['zone_id'],
                'zoneName': segment['zone_name'],
                'tripId': segment['trip_id'],
                'distance': describe_distance(segment['distance_meters']),
                'calculationMethod': 'DEVICE',
            }

            try:
                result = self.wallet_service.debit(self.user_id, amount, segment['charge_id'], record, self.floor)
            except GoogleAPIError as e:
                logger.warning(f"Could not apply pending deduction for {self.user_id}: {e}")
                break

            if result == DebitResult.INSUFFICIENT:
                logger.info(f"Pending toll of {amount} for {self.user_id} still unaffordable")
                outcome = ChargeOutcome.DEFERRED_LOW_BALANCE
                break
            if result not in (DebitResult.APPLIED, DebitResult.DUPLICATE):
                outcome = ChargeOutcome.FAILED
                break

            applied = applied or result == DebitResult.APPLIED
            paid += amount
            remaining.pop(0)
            self._close_trip(segment['trip_id'], TripStatus.CLOSED, amount)

        if paid:
            self._notify("Pending Toll Paid", f"Pending toll of ₹{paid:.2f} has been deducted.")

        if not remaining:
            pending.delete()
            return ChargeOutcome.APPLIED if applied else ChargeOutcome.DUPLICATE

        if paid:
            self._store_segments(pending, remaining)
            pending.save()
        return outcome

    def on_reconnect(self) -> int:
        """
        Replay the offline queue oldest first.

        A row is removed only once its debit landed (or was already there).
        A network error stops the replay and keeps the remaining rows in order.

        Returns:
            Number of queued charges settled
        """
        if self.connectivity.is_offline:
            return 0

        settled = 0
        queued = list(OfflineTransaction.objects.filter(user_id=self.user_id).order_by('created_at', 'id'))

        for row in queued:
            record = {
                'zoneId': row.zone_id,
                'zoneName': row.zone_name,
                'tripId': row.trip_id,
                'distance': row.distance_description,
                'calculationMethod': row.calculation_method,
            }
            if row.toll_amount is not None:
                record['tollAmount'] = row.toll_amount

            try:
                result = self.wallet_service.debit(
                    row.user_id, int(row.amount), row.charge_id, record, self.floor
                )
            except GoogleAPIError as e:
                logger.warning(f"Replay stopped at {row.charge_id}, {len(queued) - settled} left: {e}")
                return settled

            if result in (DebitResult.APPLIED, DebitResult.DUPLICATE):
                row.delete()
                self._close_trip(row.trip_id, TripStatus.CLOSED, int(row.amount))
            elif result == DebitResult.INSUFFICIENT:
                with transaction.atomic():
                    self._defer(row.user_id, _segment_from_offline(row))
                    row.delete()
                self._close_trip(row.trip_id, TripStatus.PENDING_PAYMENT, int(row.amount))
                self._notify(
                    "Low Balance",
                    f"Toll of ₹{int(row.amount):.2f} for {row.zone_name} could not be charged. Please add funds.",
                )
            else:
                logger.error(f"Replay stopped: user {row.user_id} not found")
                return settled

            settled += 1

        if settled:
            logger.info(f"Replayed {settled} offline charges for {self.user_id}")

        self.on_balance_increased()
        return settled

    def top_up(self, amount: int) -> Optional[ChargeOutcome]:
        """
        Add funds, then retry the pending deduction.

        Raises:
            ValueError: amount is not positive
            google.api_core.exceptions.GoogleAPIError: when Firestore is unreachable
        """
        if amount <= 0:
            raise ValueError("Top-up amount must be positive.")

        self.wallet_service.credit(self.user_id, amount)
        self._notify("Success", f"₹{amount} has been added to your wallet.")
        return self.on_balance_increased()
