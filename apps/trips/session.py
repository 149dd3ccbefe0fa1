"""
Vehicle Session
Per-vehicle context owning the filter, zone index, trip state machine and
ledger. Samples are processed one at a time; charges settle in order on a
single worker so the sample loop never waits on the wallet.
"""

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Optional

from django.conf import settings
from django.utils import timezone

from apps.geofencing.firebase_service import TollZoneFirebaseService
from apps.geofencing.types import LocationSample
from apps.geofencing.zone_index import ZoneIndex
from apps.wallet.firebase_service import WalletFirebaseService
from apps.wallet.ledger import ChargeOutcome, TollLedger
from apps.wallet.notifications import UserNotifier
from config.tolling import TollingConfig
from .connectivity import ConnectivityMonitor
from .firebase_service import TripFirebaseService
from .location_filter import LocationFilter
from .position_service import MqttPositionService, PositionService
from .state_machine import TripStateMachine
from .types import (
    GPS_CONNECTED,
    GPS_DISCONNECTED,
    GPS_NOT_REQUIRED,
    ChargeRequest,
)

logger = logging.getLogger(__name__)


class VehicleSession:
    """Wires the position stream through filter -> zone index -> state machine -> ledger."""

    def __init__(
        self,
        user_id: str,
        location_filter: LocationFilter,
        zone_index: ZoneIndex,
        state_machine: TripStateMachine,
        ledger: TollLedger,
        wallet_service: WalletFirebaseService,
        connectivity: ConnectivityMonitor,
        position_service: PositionService,
        config: Optional[TollingConfig] = None,
        zone_service: Optional[TollZoneFirebaseService] = None,
        notifier: Optional[UserNotifier] = None,
        clock: Callable[[], datetime] = timezone.now,
        executor: Optional[Executor] = None,
    ):
        self.user_id = user_id
        self.location_filter = location_filter
        self.zone_index = zone_index
        self.state_machine = state_machine
        self.ledger = ledger
        self.wallet_service = wallet_service
        self.connectivity = connectivity
        self.position_service = position_service
        self.config = config or TollingConfig()
        self.zone_service = zone_service
        self.notifier = notifier
        self.clock = clock
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix='toll-ledger')

        self._lock = threading.RLock()
        self._subscription = None
        self._zone_watch = None
        self._user_watch = None
        self._hardware_enabled = True
        self._last_hardware_poll: Optional[datetime] = None
        self._gps_status_written: Optional[str] = None
        self._last_balance = None

        self.connectivity.add_listener(self.on_reconnect)

    def _notify(self, title: str, message: str):
        if self.notifier:
            self.notifier.notify(title, message)

    def start(self) -> bool:
        """
        Request permission, check the hardware and start watching positions.

        Returns:
            False when location permission was refused
        """
        if not self.position_service.request_permission():
            self._notify("Permission Denied", "Location permission is required.")
            logger.error("Location permission refused, tracking not started")
            return False

        self.poll_hardware(force=True)

        self._subscription = self.position_service.watch(
            self.on_sample,
            accuracy=self.config.position_accuracy,
            time_interval_ms=self.config.position_time_interval_ms,
            distance_interval_m=self.config.position_distance_interval_m,
        )

        if self.zone_service:
            self._zone_watch = self.zone_service.watch_zones(self._on_zones_changed)
        self._user_watch = self.wallet_service.watch_user(self.user_id, self._on_user_update)

        with self._lock:
            self._sync_gps_status()

        logger.info(f"Vehicle session started for {self.user_id}")
        return True

    def stop(self):
        if self._subscription:
            self._subscription.remove()
            self._subscription = None
        for watch in (self._zone_watch, self._user_watch):
            if watch is not None:
                watch.unsubscribe()
        self._zone_watch = None
        self._user_watch = None
        self.executor.shutdown(wait=True)
        logger.info(f"Vehicle session stopped for {self.user_id}")

    def on_sample(self, raw: LocationSample):
        """Handle one raw sample from the position service."""
        with self._lock:
            try:
                now = self.clock()
                sample = self.location_filter.process(raw, in_zone=self.state_machine.has_open_trip)
                if sample is None:
                    return

                self.zone_index.refresh(sample.coordinate)
                active = self.state_machine.active_zone
                zone = self.zone_index.containing_zone(
                    sample.coordinate,
                    preferred_zone_id=active.id if active else None,
                )

                charge = self.state_machine.observe(sample, zone, now)
                self._sync_pin()
                self._sync_gps_status()

                if charge:
                    self._dispatch(charge)
            except Exception as e:
                logger.error(f"Error processing location sample: {e}", exc_info=True)

    def tick(self):
        """Timer beat: grace deadline and periodic hardware poll."""
        with self._lock:
            try:
                charge = self.state_machine.tick(self.clock())
                if charge:
                    self._sync_pin()
                    self._sync_gps_status()
                    self._dispatch(charge)
            except Exception as e:
                logger.error(f"Error on session tick: {e}", exc_info=True)

        self.poll_hardware()

    def poll_hardware(self, force: bool = False):
        now = self.clock()
        if not force and self._last_hardware_poll is not None:
            elapsed = (now - self._last_hardware_poll).total_seconds()
            if elapsed < self.config.gps_status_poll_seconds:
                return
        self._last_hardware_poll = now
        try:
            enabled = self.position_service.is_hardware_enabled()
        except Exception as e:
            logger.error(f"Could not query GPS hardware status: {e}", exc_info=True)
            return
        self.on_hardware_status(enabled)

    def on_hardware_status(self, enabled: bool):
        """GPS hardware went on or off."""
        with self._lock:
            try:
                if enabled == self._hardware_enabled:
                    return
                self._hardware_enabled = enabled

                if enabled:
                    logger.info("GPS hardware available again")
                elif not self.state_machine.on_gps_lost(self.clock()):
                    self._notify("GPS Disabled", "Turn on location services to keep tolling active.")

                self._sync_gps_status()
            except Exception as e:
                logger.error(f"Error handling GPS status change: {e}", exc_info=True)

    def on_reconnect(self):
        """Connectivity restored: re-send trip writes, then replay deferred charges."""
        with self._lock:
            try:
                self.state_machine.retry_pending_writes(self.clock())
                self._gps_status_written = None
                self._sync_gps_status()
            except Exception as e:
                logger.error(f"Error re-sending trip writes on reconnect: {e}", exc_info=True)

        self.executor.submit(self._run_ledger, self.ledger.on_reconnect)

    def _on_user_update(self, data: Dict):
        balance = data.get('walletBalance')
        if balance is None:
            return
        previous = self._last_balance
        self._last_balance = balance
        if previous is None or balance > previous:
            self.executor.submit(self._run_ledger, self.ledger.on_balance_increased)

    def _on_zones_changed(self, zone_ids):
        logger.info(f"Toll zones changed ({len(zone_ids)}), refreshing on next sample")
        self.zone_index.invalidate()

    def _sync_pin(self):
        zone = self.state_machine.active_zone
        if zone:
            self.zone_index.pin(zone)
        else:
            self.zone_index.unpin()

    def _sync_gps_status(self):
        """Keep users/{uid}.gpsStatusInZone current; written only on change."""
        if not self.state_machine.has_open_trip:
            status = GPS_NOT_REQUIRED
        elif self._hardware_enabled:
            status = GPS_CONNECTED
        else:
            status = GPS_DISCONNECTED

        if status == self._gps_status_written:
            return
        if self.connectivity.is_offline:
            return
        if self.wallet_service.update_gps_status(self.user_id, status):
            self._gps_status_written = status

    def _dispatch(self, charge: ChargeRequest):
        return self.executor.submit(self._settle, charge)

    def _settle(self, charge: ChargeRequest) -> Optional[ChargeOutcome]:
        """Runs on the ledger worker: authority re-read, then the debit."""
        try:
            if not self.state_machine.confirm_authority(charge):
                return None
            return self.ledger.charge(charge)
        except Exception as e:
            logger.error(f"Error settling charge {charge.charge_id}: {e}", exc_info=True)
            return None

    def _run_ledger(self, operation):
        try:
            return operation()
        except Exception as e:
            logger.error(f"Ledger operation {getattr(operation, '__name__', operation)} failed: {e}", exc_info=True)
            return None


def build_session(user_id: Optional[str] = None, position_service: Optional[PositionService] = None) -> VehicleSession:
    """
    Assemble a VehicleSession from settings.

    Args:
        user_id: Firebase UID, defaults to settings.VEHICLE_USER_ID
        position_service: Defaults to the MQTT position service

    Returns:
        VehicleSession (not started)
    """
    config = TollingConfig.from_settings()
    user_id = user_id or settings.VEHICLE_USER_ID
    if not user_id:
        raise ValueError("VEHICLE_USER_ID is not configured.")

    wallet_service = WalletFirebaseService()
    user = wallet_service.get_user(user_id) or {}
    vehicle_number = user.get('vehicleNumber')

    notifier = UserNotifier(email=user.get('email'), email_alerts=config.email_alerts)
    connectivity = ConnectivityMonitor()
    zone_service = TollZoneFirebaseService()
    trip_store = TripFirebaseService()

    if position_service is None:
        position_service = MqttPositionService(
            vehicle_id=vehicle_number or user_id,
            broker=settings.MQTT_BROKER,
            port=settings.MQTT_PORT,
            username=settings.MQTT_USERNAME,
            password=settings.MQTT_PASSWORD,
            use_tls=settings.MQTT_USE_TLS,
            topic_prefix=settings.MQTT_TOPIC_PREFIX,
        )

    session = VehicleSession(
        user_id=user_id,
        location_filter=LocationFilter(
            accuracy_ceiling_meters=config.accuracy_ceiling_meters,
            jump_threshold_meters=config.jump_threshold_meters,
            window_size=config.smoothing_window,
        ),
        zone_index=ZoneIndex(
            zone_service,
            search_radius_meters=config.zone_search_radius_meters,
            refetch_distance_meters=config.zone_refetch_distance_meters,
        ),
        state_machine=TripStateMachine(
            user_id,
            trip_store,
            notifier=notifier,
            grace_period_seconds=config.grace_period_seconds,
            rate_per_meter=config.rate_per_meter,
            vehicle_number=vehicle_number,
        ),
        ledger=TollLedger(
            user_id,
            wallet_service,
            connectivity,
            notifier=notifier,
            floor=config.wallet_floor,
            trip_store=trip_store,
        ),
        wallet_service=wallet_service,
        connectivity=connectivity,
        position_service=position_service,
        config=config,
        zone_service=zone_service,
        notifier=notifier,
    )

    if isinstance(position_service, MqttPositionService):
        position_service.hardware_listener = session.on_hardware_status
        position_service.network_listener = connectivity.update

    return session
