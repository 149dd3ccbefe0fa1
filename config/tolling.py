"""
Tolling configuration
Collects the TOLLING settings into one object passed explicitly to the
per-vehicle session and the backend reconciler.
"""

from dataclasses import dataclass, fields

from django.conf import settings


@dataclass(frozen=True)
class TollingConfig:
    grace_period_seconds: int = 20
    rate_per_meter: float = 2.5
    wallet_floor: int = 500
    accuracy_ceiling_meters: float = 50.0
    jump_threshold_meters: float = 100.0
    smoothing_window: int = 5
    zone_search_radius_meters: float = 5000.0
    zone_refetch_distance_meters: float = 1000.0
    gps_status_poll_seconds: int = 5
    position_accuracy: str = 'best_for_navigation'
    position_time_interval_ms: int = 1000
    position_distance_interval_m: float = 5.0
    email_alerts: bool = False

    @classmethod
    def from_settings(cls) -> 'TollingConfig':
        """Build from settings.TOLLING; unknown keys are ignored, missing keys keep defaults."""
        raw = getattr(settings, 'TOLLING', {}) or {}
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in raw.items():
            name = key.lower()
            if name in known:
                values[name] = value
        return cls(**values)
