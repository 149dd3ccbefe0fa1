#!/usr/bin/env python3
"""
Vehicle Simulator - For testing the toll tracker end to end
Drives one vehicle in a straight line and publishes GPS fixes, GPS hardware
status and network status to the unit's MQTT bus.

Usage:
    python vehicle_simulator.py                 # drive for 2 minutes, 1 fix per second
    python vehicle_simulator.py 5 2             # drive for 5 minutes, 1 fix every 2 seconds
    python vehicle_simulator.py once            # publish a single fix
    python vehicle_simulator.py gps off|on      # toggle GPS hardware
    python vehicle_simulator.py network off|on  # toggle connectivity
"""

import json
import math
import random
import sys
import time
from datetime import datetime, timezone

import paho.mqtt.client as mqtt
from decouple import config

# MQTT Configuration
MQTT_BROKER = config('MQTT_BROKER', default='localhost')
MQTT_PORT = config('MQTT_PORT', default=1883, cast=int)
MQTT_USERNAME = config('MQTT_USERNAME', default='')
MQTT_PASSWORD = config('MQTT_PASSWORD', default='')
MQTT_USE_TLS = config('MQTT_USE_TLS', default=False, cast=bool)
TOPIC_PREFIX = config('MQTT_TOPIC_PREFIX', default='vehicles')
VEHICLE_ID = config('SIM_VEHICLE_ID', default='MH01AB1234')

# Starting location (Mumbai, heading north)
BASE_LAT = config('SIM_START_LAT', default=19.0760, cast=float)
BASE_LNG = config('SIM_START_LNG', default=72.8777, cast=float)
BEARING = config('SIM_BEARING', default=0.0, cast=float)
SPEED_KMH = config('SIM_SPEED_KMH', default=40.0, cast=float)

EARTH_RADIUS_METERS = 6371000.0


def step_position(lat, lng, bearing_deg, distance_m):
    """Move distance_m along bearing_deg from (lat, lng); returns the new (lat, lng)."""
    angular = distance_m / EARTH_RADIUS_METERS
    bearing = math.radians(bearing_deg)
    lat1 = math.radians(lat)
    lng1 = math.radians(lng)

    lat2 = math.asin(math.sin(lat1) * math.cos(angular)
                     + math.cos(lat1) * math.sin(angular) * math.cos(bearing))
    lng2 = lng1 + math.atan2(math.sin(bearing) * math.sin(angular) * math.cos(lat1),
                             math.cos(angular) - math.sin(lat1) * math.sin(lat2))
    return math.degrees(lat2), math.degrees(lng2)


def build_gps_payload(lat, lng, accuracy, timestamp=None):
    """GPS message in the format the tracker parses."""
    return {
        "latitude": round(lat, 7),
        "longitude": round(lng, 7),
        "accuracy": round(accuracy, 1),
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
    }


class VehicleSimulator:
    def __init__(self, vehicle_id=VEHICLE_ID):
        self.vehicle_id = vehicle_id
        self.base_topic = f"{TOPIC_PREFIX}/{vehicle_id}"

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"sim-{vehicle_id}")
        if MQTT_USERNAME:
            self.client.username_pw_set(MQTT_USERNAME, MQTT_PASSWORD)
        if MQTT_USE_TLS:
            self.client.tls_set()

        self.client.on_connect = self.on_connect

        self.lat = BASE_LAT
        self.lng = BASE_LNG
        self.speed_kmh = SPEED_KMH

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            print(f"❌ Failed to connect, reason {reason_code}")
        else:
            print("✅ Connected to MQTT Broker")

    def connect(self):
        """Connect to MQTT broker"""
        try:
            print(f"🔌 Connecting to {MQTT_BROKER}:{MQTT_PORT}...")
            self.client.connect(MQTT_BROKER, MQTT_PORT, 60)
            self.client.loop_start()
            time.sleep(2)  # Wait for connection
        except Exception as e:
            print(f"❌ Connection error: {e}")
            raise

    def disconnect(self):
        """Disconnect from MQTT broker"""
        self.client.loop_stop()
        self.client.disconnect()
        print("👋 Disconnected from MQTT Broker")

    def move(self, seconds):
        """Advance the vehicle along its bearing at roughly constant speed"""
        distance_m = (self.speed_kmh / 3.6) * seconds
        self.lat, self.lng = step_position(self.lat, self.lng, BEARING, distance_m)

        self.speed_kmh += random.uniform(-3, 3)
        self.speed_kmh = max(20, min(80, self.speed_kmh))

    def publish(self, suffix, data):
        topic = f"{self.base_topic}/{suffix}" if suffix else self.base_topic
        result = self.client.publish(topic, json.dumps(data), qos=1)
        return result.rc == mqtt.MQTT_ERR_SUCCESS

    def publish_location(self):
        """Publish the current fix with a realistic accuracy"""
        payload = build_gps_payload(self.lat, self.lng, random.uniform(3, 12))

        if self.publish('gps', payload):
            print(f"📍 {self.vehicle_id}: [{payload['latitude']:.6f}, {payload['longitude']:.6f}] "
                  f"@ {self.speed_kmh:.1f} km/h ±{payload['accuracy']}m")
        else:
            print(f"❌ Failed to publish for {self.vehicle_id}")

    def set_gps(self, enabled):
        self.publish('gps/status', {"enabled": enabled})
        print(f"🛰️  GPS hardware {'ON' if enabled else 'OFF'}")

    def set_network(self, connected):
        self.publish('network', {"connected": connected, "internet_reachable": connected})
        print(f"📶 Network {'ONLINE' if connected else 'OFFLINE'}")

    def run(self, duration_minutes=2, update_interval=1):
        """
        Run simulation

        Args:
            duration_minutes: How long to run simulation (minutes)
            update_interval: Seconds between fixes
        """
        print(f"\n🚗 Driving {self.vehicle_id} for {duration_minutes} minutes...")
        print(f"⏱️  Update interval: {update_interval} seconds\n")

        end_time = time.time() + (duration_minutes * 60)

        try:
            while time.time() < end_time:
                self.move(update_interval)
                self.publish_location()
                time.sleep(update_interval)

            print(f"\n✅ Simulation completed after {duration_minutes} minutes")

        except KeyboardInterrupt:
            print("\n\n⚠️  Simulation interrupted by user")


def main():
    """Main function"""
    print("=" * 60)
    print("🚗 TollPay Vehicle Simulator")
    print("=" * 60)

    simulator = VehicleSimulator()

    try:
        simulator.connect()

        args = sys.argv[1:]
        if args and args[0] == "once":
            simulator.publish_location()
        elif args and args[0] == "gps":
            simulator.set_gps(len(args) < 2 or args[1] != "off")
        elif args and args[0] == "network":
            simulator.set_network(len(args) < 2 or args[1] != "off")
        elif args:
            duration = int(args[0])
            interval = int(args[1]) if len(args) > 1 else 1
            simulator.run(duration_minutes=duration, update_interval=interval)
        else:
            simulator.run()

        time.sleep(1)

    except Exception as e:
        print(f"\n❌ Error: {e}")
    finally:
        simulator.disconnect()
        print("\n" + "=" * 60)


if __name__ == "__main__":
    main()
