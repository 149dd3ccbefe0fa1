"""
Trip State Machine
Tracks toll zone entry/exit for one vehicle, absorbs boundary jitter with a
grace period, negotiates Device/Backend authority and emits charge requests.

States:
    NoTrip
    InZone(zone, entry)
    GraceExit(zone, entry, exit, deadline)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apps.geofencing.geofence_utils import compute_toll, haversine_distance
from apps.geofencing.types import LocationSample, TollZonePolygon
from .types import (
    CalculationMethod,
    ChargeRequest,
    Trip,
    TripPhase,
    new_trip_id,
)

logger = logging.getLogger(__name__)


class TripStateMachine:
    """
    Consumes filtered samples plus their zone membership.

    The grace timer is a deadline checked on every observe() and tick();
    re-entry clears it, so a cancelled timer can never charge.
    """

    def __init__(
        self,
        user_id: str,
        trip_store,
        notifier=None,
        grace_period_seconds: float = 20,
        rate_per_meter: float = 2.5,
        vehicle_number: Optional[str] = None,
    ):
        """
        Args:
            user_id: Wallet owner the trips belong to
            trip_store: TripFirebaseService (create_trip, read_authority, hand_off)
            notifier: UserNotifier for user-facing notices
            grace_period_seconds: Delay between losing membership and finalizing the exit
            rate_per_meter: Tariff applied to the entry-exit distance
            vehicle_number: Stored on the trip document for the camera pipeline
        """
        self.user_id = user_id
        self.trip_store = trip_store
        self.notifier = notifier
        self.grace_period = timedelta(seconds=grace_period_seconds)
        self.rate_per_meter = rate_per_meter
        self.vehicle_number = vehicle_number

        self.phase = TripPhase.NO_TRIP
        self.trip: Optional[Trip] = None
        self.exit_point: Optional[LocationSample] = None
        self.deadline: Optional[datetime] = None
        self.last_observed: Optional[LocationSample] = None
        self._trip_persisted = False

    @property
    def active_zone(self) -> Optional[TollZonePolygon]:
        return self.trip.zone if self.trip else None

    @property
    def has_open_trip(self) -> bool:
        return self.phase != TripPhase.NO_TRIP

    def observe(
        self,
        sample: LocationSample,
        zone: Optional[TollZonePolygon],
        now: datetime,
    ) -> Optional[ChargeRequest]:
        """
        Apply one filtered sample.

        Args:
            sample: Filtered sample
            zone: Zone containing the sample, or None
            now: Session clock, used for the grace deadline

        Returns:
            ChargeRequest when an exit was finalized, else None
        """
        charge = self._expire(now)
        self.last_observed = sample

        if self.phase == TripPhase.NO_TRIP:
            if zone is not None:
                self._open_trip(zone, sample)
            return charge

        active = self.trip.zone

        if zone is not None and zone.id == active.id:
            if self.phase == TripPhase.GRACE_EXIT:
                logger.info(f"Re-entered {active.name} within grace period, exit cancelled")
                self.phase = TripPhase.IN_ZONE
                self.exit_point = None
                self.deadline = None
            return charge

        if zone is None:
            if self.phase == TripPhase.IN_ZONE:
                self.phase = TripPhase.GRACE_EXIT
                self.exit_point = sample
                self.deadline = now + self.grace_period
                logger.info(f"Left {active.name}, finalizing at {self.deadline.isoformat()} unless re-entered")
            return charge

        # Straight into another zone: the exit is confirmed without waiting.
        exit_point = self.exit_point if self.phase == TripPhase.GRACE_EXIT else sample
        logger.info(f"Moved from {active.name} directly into {zone.name}")
        charge = self._finalize(exit_point)
        self._open_trip(zone, sample)
        return charge

    def tick(self, now: datetime) -> Optional[ChargeRequest]:
        """Timer beat: finalizes the exit once the grace deadline has passed."""
        return self._expire(now)

    def on_gps_lost(self, now: datetime) -> bool:
        """
        Positioning hardware went away mid-trip: hand the trip to the
        camera-based backend. Only from InZone, and only once per trip.

        Returns:
            True if a handoff happened
        """
        if self.phase != TripPhase.IN_ZONE or self.trip is None:
            return False
        if self.trip.calculation_method != CalculationMethod.DEVICE:
            return False

        trip = self.trip
        anchor_sample = self.last_observed or trip.entry_point
        trip.calculation_method = CalculationMethod.HYBRID
        trip.last_known_handoff_location = anchor_sample.coordinate

        logger.warning(f"GPS lost in {trip.zone.name}; trip {trip.id} handed to camera-based tolling")
        if self.notifier:
            self.notifier.notify(
                "GPS signal lost",
                f"GPS is unavailable inside {trip.zone.name}. Camera-based tolling "
                f"will calculate the rest of this trip.",
            )

        trip.handoff_persisted = self._persist_handoff(now)
        return True

    def retry_pending_writes(self, now: datetime) -> bool:
        """
        Re-attempt trip document writes that failed while offline.

        Returns:
            True if nothing is left pending
        """
        if self.trip is None:
            return True

        if not self._trip_persisted:
            self._trip_persisted = self.trip_store.create_trip(self.trip, self.vehicle_number)
            if not self._trip_persisted:
                return False

        if not self.trip.handoff_persisted:
            self.trip.handoff_persisted = self._persist_handoff(now)

        return self.trip.handoff_persisted

    def _open_trip(self, zone: TollZonePolygon, sample: LocationSample):
        self.trip = Trip(
            id=new_trip_id(),
            user_id=self.user_id,
            zone=zone,
            entry_point=sample,
        )
        self.phase = TripPhase.IN_ZONE
        self.exit_point = None
        self.deadline = None
        logger.info(f"Entered {zone.name} ({zone.id}) at ({sample.lat:.6f}, {sample.lng:.6f}), trip {self.trip.id}")
        self._trip_persisted = self.trip_store.create_trip(self.trip, self.vehicle_number)

    def _persist_handoff(self, now: datetime) -> bool:
        trip = self.trip
        if not self._trip_persisted:
            return False

        result = self.trip_store.hand_off(
            trip.id,
            trip.last_known_handoff_location,
            trip.authority_epoch,
            now,
        )
        if result is None:
            logger.warning(f"Handoff of trip {trip.id} not persisted, will retry")
            return False
        return True

    def _expire(self, now: datetime) -> Optional[ChargeRequest]:
        if self.phase != TripPhase.GRACE_EXIT or self.deadline is None:
            return None
        if now < self.deadline:
            return None
        return self._finalize(self.exit_point)

    def _finalize(self, exit_point: LocationSample) -> Optional[ChargeRequest]:
        trip = self.trip

        self.phase = TripPhase.NO_TRIP
        self.trip = None
        self.exit_point = None
        self.deadline = None

        distance = haversine_distance(trip.entry_point.coordinate, exit_point.coordinate)
        amount = compute_toll(distance, self.rate_per_meter)

        if trip.calculation_method != CalculationMethod.DEVICE:
            if trip.handoff_persisted:
                logger.info(f"Trip {trip.id} is owned by the backend, device charge suppressed "
                            f"({distance:.0f}m in {trip.zone.name})")
                return None
            # The backend never saw the handoff, so the device still owns the trip.
            logger.warning(f"Handoff of trip {trip.id} was never persisted, device keeps the charge")

        trip.total_toll = amount
        logger.info(f"Trip {trip.id} finalized: {distance:.0f}m in {trip.zone.name}, toll {amount}")

        return ChargeRequest(
            trip_id=trip.id,
            user_id=trip.user_id,
            zone_id=trip.zone.id,
            zone_name=trip.zone.name,
            amount=amount,
            distance_meters=distance,
            entry=trip.entry_point.coordinate,
            exit=exit_point.coordinate,
            occurred_at=exit_point.timestamp,
            calculation_method=CalculationMethod.DEVICE,
            toll_amount=trip.zone.toll_amount,
            authority_epoch=trip.authority_epoch,
        )

    def confirm_authority(self, charge: ChargeRequest) -> bool:
        """
        Re-read (calculationMethod, authorityEpoch) from the trip document
        right before the charge is applied. Unreadable documents fall back to
        the local view, which already emitted the charge.

        Reads no machine state; the session calls it from the ledger worker.
        """
        authority = self.trip_store.read_authority(charge.trip_id)
        if authority is None:
            return True

        method, epoch = authority
        if method == CalculationMethod.DEVICE and epoch == charge.authority_epoch:
            return True

        logger.info(f"Trip {charge.trip_id} is now {method.value} at epoch {epoch}, device charge suppressed")
        return False
