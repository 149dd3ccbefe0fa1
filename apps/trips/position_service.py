"""
Position Service
Source of location samples, GPS hardware status and network status for the
vehicle unit. The MQTT implementation reads them from the unit's local bus.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

import paho.mqtt.client as mqtt
from dateutil import parser as dateutil_parser

from apps.geofencing.geofence_utils import haversine_distance
from apps.geofencing.types import Coordinate, LocationSample

logger = logging.getLogger(__name__)

ACCURACY_TIERS = ('lowest', 'low', 'balanced', 'high', 'highest', 'best_for_navigation')


def parse_timestamp(value) -> datetime:
    """Epoch seconds/milliseconds or ISO-8601 string; naive values are taken as UTC."""
    if value is None:
        return datetime.now(timezone.utc)

    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    parsed = dateutil_parser.isoparse(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_sample(payload) -> Optional[LocationSample]:
    """
    Parse a GPS message from the bus.

    Expected format:
        {"latitude": 19.07, "longitude": 72.87, "accuracy": 4.5, "timestamp": "..."}
    "lat"/"lng" keys are accepted as well.

    Returns:
        LocationSample or None if the payload is malformed
    """
    try:
        data = json.loads(payload) if isinstance(payload, (str, bytes, bytearray)) else payload
        lat = data.get('latitude', data.get('lat'))
        lng = data.get('longitude', data.get('lng'))
        if lat is None or lng is None:
            logger.warning(f"GPS payload without coordinates: {data}")
            return None

        accuracy = data.get('accuracy')
        return LocationSample(
            coordinate=Coordinate(lat=float(lat), lng=float(lng)),
            timestamp=parse_timestamp(data.get('timestamp')),
            accuracy_meters=float(accuracy) if accuracy is not None else None,
        )
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Could not parse GPS payload {payload!r}: {e}")
        return None


def parse_flag(payload, key: str) -> Optional[bool]:
    """Read a boolean status from '{"key": true}', 'on'/'off', 'true'/'false' or '1'/'0'."""
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode('utf-8', errors='replace')

    text = str(payload).strip()
    try:
        data = json.loads(text)
    except ValueError:
        data = text

    if isinstance(data, dict):
        data = data.get(key)

    if isinstance(data, bool):
        return data
    if isinstance(data, (int, float)):
        return bool(data)
    if isinstance(data, str):
        lowered = data.lower()
        if lowered in ('on', 'true', '1', 'enabled', 'connected'):
            return True
        if lowered in ('off', 'false', '0', 'disabled', 'disconnected'):
            return False
    return None


class SampleThrottle:
    """
    Passes a sample only when both the minimum time and the minimum distance
    since the last passed sample have elapsed.
    """

    def __init__(self, time_interval_ms: int = 0, distance_interval_m: float = 0.0):
        self.time_interval_ms = time_interval_ms
        self.distance_interval_m = distance_interval_m
        self._last: Optional[LocationSample] = None

    def allow(self, sample: LocationSample) -> bool:
        last = self._last
        if last is not None:
            elapsed_ms = (sample.timestamp - last.timestamp).total_seconds() * 1000
            if elapsed_ms < self.time_interval_ms:
                return False
            if haversine_distance(last.coordinate, sample.coordinate) < self.distance_interval_m:
                return False
        self._last = sample
        return True


class PositionSubscription:
    """Handle returned by PositionService.watch()."""

    def __init__(self, on_remove: Callable[[], None]):
        self._on_remove = on_remove
        self.active = True

    def remove(self):
        if self.active:
            self.active = False
            self._on_remove()


class PositionService(ABC):
    """Interface the vehicle session consumes."""

    @abstractmethod
    def request_permission(self) -> bool:
        """Ask for access to location. Returns True when granted."""

    @abstractmethod
    def watch(
        self,
        callback: Callable[[LocationSample], None],
        accuracy: str = 'best_for_navigation',
        time_interval_ms: int = 1000,
        distance_interval_m: float = 5.0,
    ) -> PositionSubscription:
        """Deliver samples to callback until the subscription is removed."""

    @abstractmethod
    def is_hardware_enabled(self) -> bool:
        """Whether the positioning hardware is currently on."""


class MqttPositionService(PositionService):
    """
    Position service backed by the unit's MQTT bus.

    Topics (prefix defaults to 'vehicles'):
        <prefix>/<vehicle>/gps          samples (JSON)
        <prefix>/<vehicle>/gps/status   hardware on/off
        <prefix>/<vehicle>/network      {"connected": .., "internet_reachable": ..}
        <prefix>/<vehicle>/gps/config   requested accuracy tier and intervals (published)
    """

    def __init__(
        self,
        vehicle_id: str,
        broker: str = 'localhost',
        port: int = 1883,
        username: str = '',
        password: str = '',
        use_tls: bool = False,
        topic_prefix: str = 'vehicles',
        client=None,
    ):
        self.vehicle_id = vehicle_id
        self.broker = broker
        self.port = port
        self.base_topic = f"{topic_prefix}/{vehicle_id}"

        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"tollpay-{vehicle_id}",
        )
        if username:
            self.client.username_pw_set(username, password)
        if use_tls:
            self.client.tls_set()

        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.on_message = self.on_message

        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._hardware_enabled = True
        self._sample_callback: Optional[Callable[[LocationSample], None]] = None
        self._throttle = SampleThrottle()
        self.hardware_listener: Optional[Callable[[bool], None]] = None
        self.network_listener: Optional[Callable[[bool, bool], None]] = None

    @property
    def gps_topic(self) -> str:
        return f"{self.base_topic}/gps"

    @property
    def status_topic(self) -> str:
        return f"{self.base_topic}/gps/status"

    @property
    def network_topic(self) -> str:
        return f"{self.base_topic}/network"

    @property
    def config_topic(self) -> str:
        return f"{self.base_topic}/gps/config"

    def connect(self, timeout: float = 10.0) -> bool:
        """Connect to the broker and start the network loop."""
        try:
            logger.info(f"Connecting to MQTT broker {self.broker}:{self.port}")
            self.client.connect(self.broker, self.port, 60)
            self.client.loop_start()
        except Exception as e:
            logger.error(f"MQTT connection error: {e}", exc_info=True)
            return False
        return self._connected.wait(timeout)

    def disconnect(self):
        self.client.loop_stop()
        self.client.disconnect()
        logger.info("Disconnected from MQTT broker")

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            return
        logger.info("Connected to MQTT broker")
        for topic in (self.gps_topic, self.status_topic, self.network_topic):
            client.subscribe(topic, qos=1)
        self._connected.set()

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected.clear()
        logger.warning(f"MQTT broker connection lost: {reason_code}")

    def on_message(self, client, userdata, msg):
        try:
            if msg.topic == self.gps_topic:
                self._handle_sample(msg.payload)
            elif msg.topic == self.status_topic:
                self._handle_hardware(msg.payload)
            elif msg.topic == self.network_topic:
                self._handle_network(msg.payload)
        except Exception as e:
            logger.error(f"Error handling MQTT message on {msg.topic}: {e}", exc_info=True)

    def _handle_sample(self, payload):
        sample = parse_sample(payload)
        if sample is None:
            return
        with self._lock:
            callback = self._sample_callback
            if callback is None or not self._throttle.allow(sample):
                return
        callback(sample)

    def _handle_hardware(self, payload):
        enabled = parse_flag(payload, 'enabled')
        if enabled is None:
            logger.warning(f"Unrecognised GPS status payload: {payload!r}")
            return
        self._hardware_enabled = enabled
        if self.hardware_listener:
            self.hardware_listener(enabled)

    def _handle_network(self, payload):
        connected = parse_flag(payload, 'connected')
        if connected is None:
            logger.warning(f"Unrecognised network payload: {payload!r}")
            return
        reachable = parse_flag(payload, 'internet_reachable')
        if self.network_listener:
            self.network_listener(connected, connected if reachable is None else reachable)

    def request_permission(self) -> bool:
        if self._connected.is_set():
            return True
        return self.connect()

    def watch(
        self,
        callback: Callable[[LocationSample], None],
        accuracy: str = 'best_for_navigation',
        time_interval_ms: int = 1000,
        distance_interval_m: float = 5.0,
    ) -> PositionSubscription:
        if accuracy not in ACCURACY_TIERS:
            raise ValueError(f"Unknown accuracy tier {accuracy!r}")

        with self._lock:
            self._sample_callback = callback
            self._throttle = SampleThrottle(time_interval_ms, distance_interval_m)

        self.client.publish(self.config_topic, json.dumps({
            'accuracy': accuracy,
            'time_interval_ms': time_interval_ms,
            'distance_interval_m': distance_interval_m,
        }), qos=1, retain=True)
        logger.info(f"Watching {self.gps_topic} ({accuracy}, {time_interval_ms}ms, {distance_interval_m}m)")

        return PositionSubscription(self._stop_watch)

    def _stop_watch(self):
        with self._lock:
            self._sample_callback = None
        logger.info(f"Stopped watching {self.gps_topic}")

    def is_hardware_enabled(self) -> bool:
        return self._hardware_enabled
