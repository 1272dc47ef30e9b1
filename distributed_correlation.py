"""
Distributed correlation criterion.

Detects one identity acting through many distinct secondary values within a
window, e.g. a single account failing logins from many source addresses, or a
single address resetting passwords on many accounts. Repeated secondary values
are counted once.
"""

from typing import List, Optional, Sequence

from alert_builder import MAX_SAMPLE, Alert, AlertBuilder, notify_merge_key
from normalized_event import NormalizedEvent
from window_manager import Pane


def distinct_values(events: Sequence[NormalizedEvent], field: str) -> List[str]:
    """Non-null values of field in first-seen order, duplicates removed."""
    seen = {}
    for event in events:
        value = getattr(event, field)
        if value is not None and value not in seen:
            seen[value] = True
    return list(seen)


class DistributedCorrelationCriterion:
    """Fire when a key is associated with at least `threshold` distinct values."""

    def __init__(self, severity: str, tag: str, threshold: int, distinct_field: str,
                 monitored_resource: str, key_fields: Sequence[str] = ()):
        if distinct_field not in NormalizedEvent._fields:
            raise ValueError(f"unknown event field: {distinct_field}")
        if threshold < 1:
            raise ValueError("distinct threshold must be at least 1")
        self.severity = severity
        self.tag = tag
        self.threshold = threshold
        self.distinct_field = distinct_field
        self.monitored_resource = monitored_resource
        self.notify_merge = notify_merge_key(tag, key_fields)

    def evaluate(self, key: str, pane: Pane) -> Optional[Alert]:
        values = distinct_values(pane.events, self.distinct_field)
        distinct = len(values)
        if distinct < self.threshold:
            return None

        builder = AlertBuilder(
            severity=self.severity,
            summary=f"{self.monitored_resource} {self.tag} {key} {distinct} {self.threshold}",
            notify_merge=self.notify_merge,
            timestamp=pane.events[-1].timestamp,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("customs_suspected", key)
        builder.metadata("customs_count", distinct)
        builder.metadata("customs_threshold", self.threshold)
        builder.metadata("customs_distinct_field", self.distinct_field)
        builder.metadata("customs_distinct_sample", ",".join(values[:MAX_SAMPLE]))
        builder.metadata("customs_distinct_sample_truncated", str(distinct > MAX_SAMPLE).lower())
        return builder.build()
