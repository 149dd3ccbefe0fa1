"""
Backend Sighting Reconciler

Monitors the vehicle_trips collection for ANPR camera sightings
(lastCheckpoint changes) and charges the camera-based trip segments:
1. DEVICE trips are left to the vehicle unit
2. HYBRID trips are charged from the GPS handoff anchor to the camera,
   after which the backend owns the trip
3. BACKEND trips are charged camera to camera
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from firebase_admin import firestore
from google.api_core.exceptions import GoogleAPIError

from apps.geofencing.firebase_service import TollZoneFirebaseService
from apps.geofencing.geofence_utils import (
    compute_toll,
    coordinate_from_value,
    describe_distance,
    haversine_distance,
)
from apps.trips.firebase_service import TRIPS_COLLECTION
from apps.trips.types import CalculationMethod, TripStatus
from apps.wallet.firebase_service import DebitResult, WalletFirebaseService
from config.tolling import TollingConfig

logger = logging.getLogger(__name__)

OUTCOME_DEFERRED = 'deferred_to_device'
OUTCOME_OPENED = 'opened'
OUTCOME_CHARGED = 'charged'
OUTCOME_PENDING = 'pending_payment'
OUTCOME_ACCRUED = 'accrued'


@dataclass(frozen=True)
class SegmentResult:
    trip_id: str
    checkpoint: str
    method: CalculationMethod
    outcome: str
    distance_meters: float = 0.0
    amount: int = 0


@firestore.transactional
def _apply_checkpoint(
    transaction,
    trip_ref,
    expected_processed,
    expected_method: str,
    updates: Dict,
    increments: Dict,
    bump_epoch: bool,
) -> bool:
    """
    Record a processed checkpoint only if nobody processed it or moved
    authority since the trip was read. Increments are applied to the values
    read inside the transaction.
    """
    snapshot = trip_ref.get(transaction=transaction)
    if not snapshot.exists:
        return False

    data = snapshot.to_dict() or {}
    method = data.get('calculationMethod') or CalculationMethod.DEVICE.value
    if data.get('processedCheckpoint') != expected_processed or method != expected_method:
        return False

    final = dict(updates)
    for field, amount in increments.items():
        final[field] = (data.get(field) or 0) + amount
    if bump_epoch:
        final['authorityEpoch'] = int(data.get('authorityEpoch', 0) or 0) + 1

    transaction.update(trip_ref, final)
    return True


class BackendReconciler:
    """
    Listens to Firebase vehicle_trips and charges camera-based segments
    """

    def __init__(self, db=None, zone_service=None, wallet_service=None, config: Optional[TollingConfig] = None):
        self.db = db or firestore.client()
        self.trips_ref = self.db.collection(TRIPS_COLLECTION)
        self.zone_service = zone_service or TollZoneFirebaseService(self.db)
        self.wallet_service = wallet_service or WalletFirebaseService(self.db)
        self.config = config or TollingConfig.from_settings()

    def _parse_method(self, trip_id: str, raw) -> CalculationMethod:
        try:
            return CalculationMethod(raw or CalculationMethod.DEVICE.value)
        except ValueError:
            logger.warning(f"Unknown calculationMethod {raw!r} on trip {trip_id}, treating as BACKEND")
            return CalculationMethod.BACKEND

    def _commit(
        self,
        trip_id: str,
        data: Dict,
        checkpoint: str,
        updates: Dict,
        increments: Optional[Dict] = None,
        bump_epoch: bool = False,
    ) -> bool:
        trip_ref = self.trips_ref.document(trip_id)
        updates = {**updates, 'processedCheckpoint': checkpoint, 'updated_at': firestore.SERVER_TIMESTAMP}
        committed = _apply_checkpoint(
            self.db.transaction(),
            trip_ref,
            data.get('processedCheckpoint'),
            data.get('calculationMethod') or CalculationMethod.DEVICE.value,
            updates,
            increments or {},
            bump_epoch,
        )
        if not committed:
            logger.warning(f"Trip {trip_id} changed while processing checkpoint {checkpoint}, not recorded")
        return committed

    def _segment_locations(
        self,
        trip_id: str,
        data: Dict,
        method: CalculationMethod,
        checkpoint: str,
    ) -> Optional[Tuple]:
        """(start, end) coordinates of the segment ending at this camera, or None to abort."""
        zone_id = data.get('tollZoneId')
        if not zone_id:
            logger.error(f"Trip {trip_id} has no tollZoneId, cannot locate camera {checkpoint}")
            return None

        end = self.zone_service.get_camera_location(zone_id, checkpoint)
        if end is None:
            return None

        if method == CalculationMethod.HYBRID:
            anchor = coordinate_from_value(data.get('lastKnownGpsLocation'))
            if anchor is not None:
                logger.info(f"Using HYBRID method for trip {trip_id}.")
                return anchor, end
            logger.warning(f"Trip {trip_id} is HYBRID without a handoff anchor, using previous camera")

        previous = data.get('processedCheckpoint')
        if not previous:
            return None, end

        start = self.zone_service.get_camera_location(zone_id, previous)
        if start is None:
            return None
        logger.info(f"Using ANPR method for trip {trip_id}.")
        return start, end

    def process_trip_update(self, trip_id: str, data: Dict) -> Optional[SegmentResult]:
        """
        Process one vehicle_trips document after a change.

        Args:
            trip_id: Firebase document ID
            data: Trip data from Firebase

        Returns:
            SegmentResult, or None when there was nothing to do or the
            segment had to be aborted
        """
        checkpoint = data.get('lastCheckpoint')
        if not checkpoint or checkpoint == data.get('processedCheckpoint'):
            return None

        method = self._parse_method(trip_id, data.get('calculationMethod'))
        logger.info(f"Trip {trip_id} sighted at {checkpoint} ({method.value})")

        if method == CalculationMethod.DEVICE:
            logger.info(f"Trip {trip_id} is tracked by the vehicle unit. Deferring.")
            if not self._commit(trip_id, data, checkpoint, {}):
                return None
            return SegmentResult(trip_id, checkpoint, method, OUTCOME_DEFERRED)

        locations = self._segment_locations(trip_id, data, method, checkpoint)
        if locations is None:
            logger.error(f"Segment ending at {checkpoint} on trip {trip_id} aborted")
            return None

        start, end = locations
        takeover = method == CalculationMethod.HYBRID
        updates = {'calculationMethod': CalculationMethod.BACKEND.value} if takeover else {}

        if start is None:
            # First camera of a camera-only trip opens the segment.
            if not self._commit(trip_id, data, checkpoint, updates, bump_epoch=takeover):
                return None
            return SegmentResult(trip_id, checkpoint, method, OUTCOME_OPENED)

        distance = haversine_distance(start, end)
        amount = compute_toll(distance, self.config.rate_per_meter)
        updates['lastSegmentDistance'] = describe_distance(distance)

        user_id = data.get('userId')
        increments = {'totalToll': amount}

        if not user_id:
            logger.info(f"Trip {trip_id} has no registered user. Accruing {amount} on the trip.")
            outcome = OUTCOME_ACCRUED
        else:
            try:
                result = self.wallet_service.debit(
                    user_id,
                    amount,
                    f"{trip_id}-{checkpoint}",
                    {
                        'zoneId': data.get('tollZoneId'),
                        'zoneName': data.get('zoneName', ''),
                        'tripId': trip_id,
                        'distance': describe_distance(distance),
                        'calculationMethod': CalculationMethod.BACKEND.value,
                        'checkpoint': checkpoint,
                    },
                    self.config.wallet_floor,
                )
            except GoogleAPIError as e:
                logger.error(f"Debit for trip {trip_id} at {checkpoint} failed, will retry: {e}")
                return None

            if result in (DebitResult.APPLIED, DebitResult.DUPLICATE):
                outcome = OUTCOME_CHARGED
            elif result == DebitResult.INSUFFICIENT:
                increments['pendingToll'] = amount
                updates['status'] = TripStatus.PENDING_PAYMENT.value
                outcome = OUTCOME_PENDING
            else:
                logger.error(f"User {user_id} for trip {trip_id} not found.")
                return None

        if not self._commit(trip_id, data, checkpoint, updates, increments, bump_epoch=takeover):
            return None

        logger.info(f"Segment toll for trip {trip_id}: {amount} over {distance:.0f}m ({outcome})")
        return SegmentResult(trip_id, checkpoint, method, outcome, distance, amount)

    def listen_and_process(self, callback: Optional[Callable[[SegmentResult], None]] = None):
        """
        Listen to vehicle_trips and process sightings in real-time.

        Args:
            callback: Optional callback called after each processed segment

        Returns:
            The Firestore watch (call unsubscribe() to stop)
        """
        logger.info("Starting vehicle trip sighting listener...")

        def on_snapshot(col_snapshot, changes, read_time):
            for change in changes:
                if change.type.name not in ['ADDED', 'MODIFIED']:
                    continue

                trip_id = change.document.id
                try:
                    result = self.process_trip_update(trip_id, change.document.to_dict() or {})
                    if result and callback:
                        callback(result)
                except Exception as e:
                    logger.error(f"Error processing trip {trip_id}: {e}", exc_info=True)

        watch = self.trips_ref.on_snapshot(on_snapshot)

        logger.info("✓ Vehicle trip sighting listener is active")

        return watch

    def process_existing_trips(self, limit: int = 100) -> Tuple[int, int]:
        """
        Catch up on sightings that arrived while the listener was down.

        Args:
            limit: Maximum number of open trips to look at

        Returns:
            Tuple of (trips looked at, segments processed)
        """
        logger.info(f"Processing existing trips (limit: {limit})...")

        trips = self.trips_ref.where(
            'status', 'in', [TripStatus.ACTIVE.value, TripStatus.PENDING_PAYMENT.value]
        ).limit(limit).stream()

        processed_count = 0
        segment_count = 0

        for doc in trips:
            try:
                result = self.process_trip_update(doc.id, doc.to_dict() or {})
                processed_count += 1
                if result:
                    segment_count += 1
            except Exception as e:
                logger.error(f"Error processing trip {doc.id}: {e}", exc_info=True)

        logger.info(f"✓ Processed {processed_count} trips, {segment_count} new segments")

        return processed_count, segment_count
