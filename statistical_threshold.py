"""
Population-relative threshold criterion.

For a closed window, the mean per-key count is computed across every key in the
window (optionally leaving out likely NAT gateways). Keys whose count is
strictly above mean * modifier, clamped to an optional maximum, raise an alert.
Windows with too few keys or too low an average are not evaluated at all.
"""

import statistics
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

from alert_builder import MONITOR_ONLY_SUFFIX, Alert, AlertBuilder, notify_merge_key
from nat_detect import NatSnapshot
from normalized_event import format_timestamp
from window_manager import Pane


class WindowStatistics(NamedTuple):
    mean: float
    contributing_keys: int
    threshold: float
    window_end: datetime


def latest_panes(panes: Iterable[Pane]) -> Dict[str, Pane]:
    """Most recent pane per key; later panes supersede earlier ones."""
    latest: Dict[str, Pane] = {}
    for pane in panes:
        current = latest.get(pane.key)
        if current is None or pane.index > current.index:
            latest[pane.key] = pane
    return latest


class StatisticalThresholdCriterion:
    """Fire for keys far above the window's mean count."""

    def __init__(
        self,
        severity: str,
        tag: str,
        monitored_resource: str,
        threshold_modifier: float = 1.0,
        required_minimum_average: float = 0.0,
        required_minimum_clients: int = 0,
        clamp_threshold_maximum: Optional[float] = None,
        monitor_only: bool = False,
        key_fields: Sequence[str] = ("source_address",),
    ):
        self.severity = severity
        self.tag = tag
        self.monitored_resource = monitored_resource
        self.threshold_modifier = threshold_modifier
        self.required_minimum_average = required_minimum_average
        self.required_minimum_clients = required_minimum_clients
        self.clamp_threshold_maximum = clamp_threshold_maximum
        self.monitor_only = monitor_only
        self.key_fields = tuple(key_fields)
        self.notify_merge = notify_merge_key(tag, self.key_fields, monitor_only)

    def window_statistics(self, panes: Dict[str, Pane],
                          nat_snapshot: Optional[NatSnapshot] = None) -> Optional[WindowStatistics]:
        """Compute the window mean and threshold, or None if the window is skipped."""
        counts = [
            pane.count for key, pane in panes.items()
            if nat_snapshot is None or not nat_snapshot.is_nat(key)
        ]
        if not counts or len(counts) < self.required_minimum_clients:
            return None

        mean = statistics.mean(counts)
        if mean < self.required_minimum_average:
            return None

        threshold = mean * self.threshold_modifier
        if self.clamp_threshold_maximum is not None and threshold > self.clamp_threshold_maximum:
            threshold = self.clamp_threshold_maximum

        window_end = next(iter(panes.values())).window_end
        return WindowStatistics(mean, len(counts), threshold, window_end)

    def evaluate(self, key: str, pane: Pane, stats: WindowStatistics) -> Optional[Alert]:
        if pane.count <= stats.threshold:
            return None

        summary = f"{self.monitored_resource} {self.tag} {key} {pane.count}"
        if self.monitor_only:
            summary += MONITOR_ONLY_SUFFIX

        builder = AlertBuilder(
            severity=self.severity,
            summary=summary,
            notify_merge=self.notify_merge,
            timestamp=pane.events[-1].timestamp if pane.events else None,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("customs_suspected", key)
        if self.key_fields == ("source_address",):
            builder.metadata("sourceaddress", key)
        builder.metadata("count", pane.count)
        builder.metadata("mean", stats.mean)
        builder.metadata("threshold_modifier", self.threshold_modifier)
        builder.metadata("window_timestamp",
                         format_timestamp(stats.window_end - timedelta(milliseconds=1)))
        return builder.build()

    def evaluate_window(self, panes: Iterable[Pane],
                        nat_snapshot: Optional[NatSnapshot] = None) -> List[Alert]:
        """Evaluate every key of one closed window against the population."""
        latest = latest_panes(panes)
        if not latest:
            return []
        stats = self.window_statistics(latest, nat_snapshot)
        if stats is None:
            return []

        alerts = []
        for key, pane in latest.items():
            if nat_snapshot is not None and nat_snapshot.is_nat(key):
                continue
            alert = self.evaluate(key, pane, stats)
            if alert is not None:
                alerts.append(alert)
        return alerts
