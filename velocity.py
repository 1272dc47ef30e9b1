"""
Impossible travel ("velocity") criterion.

Compares each event for an identity with the previous event persisted for that
identity, independent of window boundaries. The persisted baseline is re-read
for every event and always advanced to the current event afterwards, so
distances are measured between strictly consecutive events.
"""

import math
from typing import Any, Dict, List, Optional

from alert_builder import MONITOR_ONLY_SUFFIX, Alert, AlertBuilder, notify_merge_key
from normalized_event import NormalizedEvent, format_timestamp, parse_timestamp
from state_store import KeyLocks, StateStore


VELOCITY_NAMESPACE = "customs_velocity"
EARTH_RADIUS_KM = 6378.0


def km_between(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers (haversine)."""
    lat1_rad = math.radians(lat1)
    lon1_rad = math.radians(lon1)
    lat2_rad = math.radians(lat2)
    lon2_rad = math.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return EARTH_RADIUS_KM * c


def baseline_record(event: NormalizedEvent) -> Dict[str, Any]:
    return {
        "timestamp": format_timestamp(event.timestamp),
        "latitude": event.latitude,
        "longitude": event.longitude,
        "source_address": event.source_address,
        "city": event.source_address_city,
        "country": event.source_address_country,
    }


class VelocityCriterion:
    """Alert when consecutive events for an identity are implausibly far apart."""

    def __init__(
        self,
        state: StateStore,
        monitored_resource: str,
        severity: str = "medium",
        tag: str = "velocity",
        minimum_distance_for_alert: float = 500.0,
        monitor_only_enabled: bool = False,
        minimum_distance_for_alert_monitor_only: float = 100.0,
        maximum_kilometers_per_hour: Optional[float] = None,
        namespace: str = VELOCITY_NAMESPACE,
        locks: Optional[KeyLocks] = None,
    ):
        self.state = state
        self.monitored_resource = monitored_resource
        self.severity = severity
        self.tag = tag
        self.minimum_distance_for_alert = minimum_distance_for_alert
        self.monitor_only_enabled = monitor_only_enabled
        self.minimum_distance_for_alert_monitor_only = minimum_distance_for_alert_monitor_only
        self.maximum_kilometers_per_hour = maximum_kilometers_per_hour
        self.namespace = namespace
        self.locks = locks if locks is not None else KeyLocks()

    def evaluate(self, key: Optional[str], event: NormalizedEvent) -> List[Alert]:
        """
        Evaluate one event for key and advance the key's baseline.

        Returns zero, one or two alerts; the primary and monitor-only checks
        are independent of each other.
        """
        if key is None or not event.has_location():
            return []

        with self.locks.hold(key):
            baseline = self.state.get(self.namespace, key)
            alerts = []
            if baseline is not None:
                alerts = self._compare(key, baseline, event)
            self.state.put(self.namespace, key, baseline_record(event))
        return alerts

    def _compare(self, key: str, baseline: Dict[str, Any], event: NormalizedEvent) -> List[Alert]:
        previous_time = parse_timestamp(baseline.get("timestamp"))
        try:
            prev_lat = float(baseline["latitude"])
            prev_lon = float(baseline["longitude"])
        except (KeyError, TypeError, ValueError):
            return []
        if previous_time is None:
            return []

        distance = km_between(prev_lat, prev_lon, event.latitude, event.longitude)
        elapsed = int(abs((event.timestamp - previous_time).total_seconds()))

        if not self._speed_exceeded(distance, elapsed):
            return []

        alerts = []
        if distance >= self.minimum_distance_for_alert:
            alerts.append(self._build(key, baseline, event, distance, elapsed, monitor_only=False))
        if self.monitor_only_enabled and distance >= self.minimum_distance_for_alert_monitor_only:
            alerts.append(self._build(key, baseline, event, distance, elapsed, monitor_only=True))
        return alerts

    def _speed_exceeded(self, distance: float, elapsed: int) -> bool:
        if self.maximum_kilometers_per_hour is None or elapsed == 0:
            return True
        return distance / (elapsed / 3600) > self.maximum_kilometers_per_hour

    def _build(self, key: str, baseline: Dict[str, Any], event: NormalizedEvent,
               distance: float, elapsed: int, monitor_only: bool) -> Alert:
        summary = (f"{self.monitored_resource} {key} velocity exceeded, "
                   f"{distance:.2f} km in {elapsed} seconds")
        if monitor_only:
            summary += MONITOR_ONLY_SUFFIX

        builder = AlertBuilder(
            severity=self.severity,
            summary=summary,
            notify_merge=notify_merge_key(self.tag, monitor_only=monitor_only),
            timestamp=event.timestamp,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("uid", key)
        builder.metadata("email", event.email)
        builder.metadata("sourceaddress", event.source_address)
        builder.metadata("sourceaddress_city", event.source_address_city)
        builder.metadata("sourceaddress_country", event.source_address_country)
        builder.metadata("sourceaddress_previous", baseline.get("source_address"))
        builder.metadata("sourceaddress_previous_city", baseline.get("city"))
        builder.metadata("sourceaddress_previous_country", baseline.get("country"))
        builder.metadata("km_distance", f"{distance:.2f}")
        builder.metadata("time_delta_seconds", elapsed)
        return builder.build()
