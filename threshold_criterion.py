"""
Absolute rate limit criterion.

Fires when the number of events for a key within a window pane meets or exceeds
a fixed limit. The alert carries a sample of the contributing events and, for a
fixed set of attributes, the value shared by every sampled event when there is
exactly one.
"""

from typing import Callable, List, Optional, Sequence

from alert_builder import Alert, AlertBuilder, notify_merge_key, take_sample
from normalized_event import NormalizedEvent
from window_manager import Pane


Extractor = Callable[[NormalizedEvent], Optional[str]]


def unique_attribute(events: Sequence[NormalizedEvent], fn: Extractor) -> bool:
    """
    True if every event shares the same non-null value for fn.

    A single event always counts as unique; an empty sequence never does, and
    neither does a null value on the first of several events.
    """
    if not events:
        return False
    if len(events) == 1:
        return True
    first = fn(events[0])
    if first is None:
        return False
    return all(fn(e) == first for e in events[1:])


# (metadata key, extractor). Source address city/country are only consulted
# when the source address itself is unique.
UNIQUE_ATTRIBUTES = [
    ("customs_unique_actor_accountid", lambda e: e.actor_account_id),
    ("customs_unique_sms_recipient", lambda e: e.sms_recipient),
    ("customs_unique_email_recipient", lambda e: e.email_recipient),
    ("customs_unique_source_address", lambda e: e.source_address),
]
SOURCE_ADDRESS_DEPENDENT = [
    ("customs_unique_source_address_city", lambda e: e.source_address_city),
    ("customs_unique_source_address_country", lambda e: e.source_address_country),
]
TRAILING_ATTRIBUTES = [
    ("customs_unique_object_accountid", lambda e: e.destination_account_id),
]


def unique_metadata(sample: Sequence[NormalizedEvent]) -> List[tuple]:
    """Ordered (metadata key, value) pairs for attributes unique across the sample."""
    found = []

    def check(attributes):
        hits = []
        for meta_key, fn in attributes:
            if unique_attribute(sample, fn):
                value = fn(sample[0])
                if value is not None:
                    hits.append((meta_key, value))
        return hits

    for meta_key, value in check(UNIQUE_ATTRIBUTES):
        found.append((meta_key, value))
        if meta_key == "customs_unique_source_address":
            found.extend(check(SOURCE_ADDRESS_DEPENDENT))
    found.extend(check(TRAILING_ATTRIBUTES))
    return found


class ThresholdCriterion:
    """Fire when count >= limit for a key in a pane."""

    def __init__(self, severity: str, tag: str, limit: int, monitored_resource: str,
                 key_fields: Sequence[str] = ()):
        if limit < 1:
            raise ValueError("threshold limit must be at least 1")
        self.severity = severity
        self.tag = tag
        self.limit = limit
        self.monitored_resource = monitored_resource
        self.notify_merge = notify_merge_key(tag, key_fields)

    def evaluate(self, key: str, pane: Pane) -> Optional[Alert]:
        count = pane.count
        if count < self.limit:
            return None

        sample, truncated = take_sample(pane.events)
        builder = AlertBuilder(
            severity=self.severity,
            summary=f"{self.monitored_resource} {self.tag} {key} {count} {self.limit}",
            notify_merge=self.notify_merge,
            timestamp=pane.events[-1].timestamp if pane.events else None,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("customs_suspected", key)
        builder.metadata("customs_count", count)
        builder.metadata("customs_threshold", self.limit)

        for meta_key, value in unique_metadata(sample):
            builder.metadata(meta_key, value)

        if sample:
            builder.sample(sample, truncated)
        return builder.build()
