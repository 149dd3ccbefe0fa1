"""
Firebase Service for Vehicle Trips
Handles the vehicle_trips documents shared between the vehicle unit and the
camera-based backend, including the authority handoff.
"""

from firebase_admin import firestore
from datetime import datetime
from typing import Dict, Optional, Tuple
import logging

from apps.geofencing.types import Coordinate
from .types import CalculationMethod, Trip, TripStatus

logger = logging.getLogger(__name__)

TRIPS_COLLECTION = 'vehicle_trips'


@firestore.transactional
def _compare_and_hand_off(transaction, doc_ref, expected_epoch: int, updates: Dict) -> bool:
    """
    Move authority DEVICE -> HYBRID only if nobody changed it since we
    last looked (method still DEVICE and epoch unchanged). Bumps the epoch.
    """
    snapshot = doc_ref.get(transaction=transaction)
    if not snapshot.exists:
        return False

    data = snapshot.to_dict() or {}
    method = data.get('calculationMethod', CalculationMethod.DEVICE.value)
    epoch = int(data.get('authorityEpoch', 0) or 0)

    if method != CalculationMethod.DEVICE.value or epoch != expected_epoch:
        return False

    transaction.update(doc_ref, {**updates, 'authorityEpoch': expected_epoch + 1})
    return True


class TripFirebaseService:
    """Service class for Firebase vehicle trip operations"""

    def __init__(self, db=None):
        self.db = db or firestore.client()
        self.collection = self.db.collection(TRIPS_COLLECTION)

    def create_trip(self, trip: Trip, vehicle_number: Optional[str] = None) -> bool:
        """
        Create the trip document on zone entry

        Returns:
            True if successful, False otherwise
        """
        try:
            data = {
                'userId': trip.user_id,
                'tollZoneId': trip.zone.id,
                'zoneName': trip.zone.name,
                'status': trip.status.value,
                'calculationMethod': trip.calculation_method.value,
                'authorityEpoch': trip.authority_epoch,
                'entryPoint': trip.entry_point.coordinate.to_dict(),
                'entryTimestamp': trip.entry_point.timestamp,
                'totalToll': trip.total_toll,
                'created_at': firestore.SERVER_TIMESTAMP,
                'updated_at': firestore.SERVER_TIMESTAMP,
            }
            if vehicle_number:
                data['vehicleNumber'] = vehicle_number

            self.collection.document(trip.id).set(data)
            logger.info(f"Created trip {trip.id} in zone {trip.zone.id}")
            return True
        except Exception as e:
            logger.error(f"Error creating trip {trip.id}: {e}", exc_info=True)
            return False

    def read_authority(self, trip_id: str) -> Optional[Tuple[CalculationMethod, int]]:
        """
        Current (calculationMethod, authorityEpoch) of a trip.

        Returns:
            Tuple or None if the document cannot be read
        """
        try:
            doc = self.collection.document(trip_id).get()
            if not doc.exists:
                logger.warning(f"Trip {trip_id} not found while reading authority")
                return None

            data = doc.to_dict() or {}
            raw_method = data.get('calculationMethod', CalculationMethod.DEVICE.value)
            try:
                method = CalculationMethod(raw_method)
            except ValueError:
                logger.warning(f"Unknown calculationMethod {raw_method!r} on trip {trip_id}, treating as BACKEND")
                method = CalculationMethod.BACKEND
            return method, int(data.get('authorityEpoch', 0) or 0)
        except Exception as e:
            logger.error(f"Error reading authority for trip {trip_id}: {e}", exc_info=True)
            return None

    def hand_off(
        self,
        trip_id: str,
        anchor: Coordinate,
        expected_epoch: int,
        timestamp: datetime,
    ) -> Optional[bool]:
        """
        Hand the trip over to the camera-based backend.

        Args:
            trip_id: Firebase document ID
            anchor: Last device-observed coordinate
            expected_epoch: Epoch the device believes is current
            timestamp: When GPS was lost

        Returns:
            True if handed off, False if authority had already moved,
            None if the write could not be made (retry later)
        """
        doc_ref = self.collection.document(trip_id)
        updates = {
            'calculationMethod': CalculationMethod.HYBRID.value,
            'lastKnownGpsLocation': anchor.to_dict(),
            'lastGpsUpdateTimestamp': timestamp,
            'updated_at': firestore.SERVER_TIMESTAMP,
        }
        try:
            transaction = self.db.transaction()
            handed_off = _compare_and_hand_off(transaction, doc_ref, expected_epoch, updates)
        except Exception as e:
            logger.error(f"Error handing off trip {trip_id}: {e}", exc_info=True)
            return None

        if handed_off:
            logger.info(f"Trip {trip_id} handed off to backend at ({anchor.lat:.6f}, {anchor.lng:.6f})")
        else:
            logger.warning(f"Trip {trip_id} authority already moved, handoff not written")
        return handed_off

    def close_trip(self, trip_id: str, status: TripStatus, total_toll: int) -> bool:
        """
        Mark a device-owned trip as finished

        Returns:
            True if successful, False otherwise
        """
        try:
            self.collection.document(trip_id).update({
                'status': status.value,
                'totalToll': total_toll,
                'closedAt': firestore.SERVER_TIMESTAMP,
                'updated_at': firestore.SERVER_TIMESTAMP,
            })
            logger.info(f"Trip {trip_id} closed with status {status.value}, toll {total_toll}")
            return True
        except Exception as e:
            logger.error(f"Error closing trip {trip_id}: {e}", exc_info=True)
            return False
