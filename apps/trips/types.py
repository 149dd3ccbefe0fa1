"""
Trip types shared by the state machine, the ledger and the reconciler.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from apps.geofencing.types import Coordinate, LocationSample, TollZonePolygon


class CalculationMethod(str, Enum):
    """Who computes and charges the current trip segment."""
    DEVICE = 'DEVICE'
    HYBRID = 'HYBRID'
    BACKEND = 'BACKEND'


class TripStatus(str, Enum):
    ACTIVE = 'active'
    CLOSED = 'closed'
    PENDING_PAYMENT = 'pendingPayment'


class TripPhase(str, Enum):
    NO_TRIP = 'NoTrip'
    IN_ZONE = 'InZone'
    GRACE_EXIT = 'GraceExit'


# Values of users/{uid}.gpsStatusInZone
GPS_CONNECTED = 'Connected'
GPS_DISCONNECTED = 'Disconnected'
GPS_NOT_REQUIRED = 'NotRequired'


def new_trip_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Trip:
    """
    Trip mirrored to vehicle_trips/{id}.
    Authority moves DEVICE -> HYBRID at most once per trip, never back.
    """
    id: str
    user_id: str
    zone: TollZonePolygon
    entry_point: LocationSample
    status: TripStatus = TripStatus.ACTIVE
    calculation_method: CalculationMethod = CalculationMethod.DEVICE
    last_known_handoff_location: Optional[Coordinate] = None
    total_toll: int = 0
    authority_epoch: int = 0
    handoff_persisted: bool = True


@dataclass(frozen=True)
class ChargeRequest:
    """A finalized exit to be settled by the TollLedger."""
    trip_id: str
    user_id: str
    zone_id: str
    zone_name: str
    amount: int
    distance_meters: float
    entry: Coordinate
    exit: Coordinate
    occurred_at: datetime
    calculation_method: CalculationMethod = CalculationMethod.DEVICE
    toll_amount: Optional[float] = None
    authority_epoch: int = 0
    charge_id: str = field(default_factory=lambda: uuid.uuid4().hex)
