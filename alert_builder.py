"""
Alert records produced by the customs detectors.

An alert must carry a category, severity, summary, identifier and timestamp
before it leaves a detector. AlertBuilder enforces this; a violation is a
programming error and raises AlertSchemaError instead of emitting a malformed
alert.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from normalized_event import NormalizedEvent, format_timestamp, parse_timestamp


CATEGORY = "customs"
SEVERITIES = ("low", "medium", "high", "critical")
MAX_SAMPLE = 5
MONITOR_ONLY_SUFFIX = " (monitor only)"


class AlertSchemaError(RuntimeError):
    """Raised when a detector constructs an alert missing required fields."""


def notify_merge_key(tag: str, key_fields: Sequence[str] = (), monitor_only: bool = False) -> str:
    """
    Merge key used downstream to group related alerts.

    Depends only on the detector tag, the shape of its key and whether it is a
    monitor-only variant, never on the key value itself.
    """
    parts = [tag]
    if len(key_fields) > 1:
        parts.extend(key_fields)
    if monitor_only:
        parts.append("monitor_only")
    return "_".join(parts)


def take_sample(events: Iterable[NormalizedEvent], limit: int = MAX_SAMPLE) -> Tuple[List[NormalizedEvent], bool]:
    """First `limit` events in order, and whether any were left out."""
    sample = []
    truncated = False
    for event in events:
        if len(sample) >= limit:
            truncated = True
            break
        sample.append(event)
    return sample, truncated


class Alert:
    """Security alert emitted by a customs detector."""

    def __init__(
        self,
        category: Optional[str] = None,
        severity: Optional[str] = None,
        summary: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        notify_merge: Optional[str] = None,
        sample: Optional[List[Dict[str, Any]]] = None,
        sample_truncated: bool = False,
        alert_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ):
        self.category = category
        self.severity = severity
        self.summary = summary
        self.metadata: Dict[str, str] = dict(metadata or {})
        self.notify_merge = notify_merge
        self.sample: List[Dict[str, Any]] = list(sample or [])
        self.sample_truncated = sample_truncated
        self.timestamp = timestamp or datetime.now(timezone.utc)
        self.alert_id = alert_id or self._generate_alert_id()

    def _generate_alert_id(self) -> str:
        """Generate unique alert ID."""
        components = [
            self.category or "",
            self.summary or "",
            str(self.timestamp.timestamp()),
            uuid.uuid4().hex,
        ]
        id_string = "|".join(components)
        return hashlib.sha256(id_string.encode()).hexdigest()[:16]

    def add_metadata(self, key: str, value: Any):
        if value is None:
            return
        self.metadata[key] = str(value)

    def get_metadata(self, key: str) -> Optional[str]:
        return self.metadata.get(key)

    def has_correct_fields(self) -> bool:
        """Check the structural invariant required before emission."""
        if not self.category or not self.summary or not self.alert_id:
            return False
        if self.severity not in SEVERITIES:
            return False
        if self.timestamp is None:
            return False
        if len(self.sample) > MAX_SAMPLE:
            return False
        return all(isinstance(k, str) and isinstance(v, str) for k, v in self.metadata.items())

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary."""
        out = {
            "id": self.alert_id,
            "timestamp": format_timestamp(self.timestamp),
            "category": self.category,
            "severity": self.severity,
            "summary": self.summary,
            "notify_merge": self.notify_merge,
            "metadata": dict(self.metadata),
        }
        if self.sample:
            out["sample"] = list(self.sample)
            out["sample_truncated"] = self.sample_truncated
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        alert = cls(
            category=data.get("category"),
            severity=data.get("severity"),
            summary=data.get("summary"),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            notify_merge=data.get("notify_merge"),
            sample=data.get("sample"),
            sample_truncated=bool(data.get("sample_truncated", False)),
            alert_id=data.get("id"),
            timestamp=parse_timestamp(data.get("timestamp")),
        )
        if not alert.has_correct_fields():
            raise ValueError("alert record is missing required fields")
        return alert

    @classmethod
    def from_json(cls, text: str) -> "Alert":
        return cls.from_dict(json.loads(text))

    def __repr__(self):
        return f"Alert({self.severity} {self.notify_merge}: {self.summary})"


class AlertBuilder:
    """Assemble an alert and validate it before handing it out."""

    def __init__(self, severity: str, summary: str, notify_merge: str,
                 timestamp: Optional[datetime] = None, category: str = CATEGORY):
        self._alert = Alert(
            category=category,
            severity=severity,
            summary=summary,
            notify_merge=notify_merge,
            timestamp=timestamp,
        )

    def metadata(self, key: str, value: Any) -> "AlertBuilder":
        self._alert.add_metadata(key, value)
        return self

    def sample(self, events: Sequence[NormalizedEvent], truncated: bool) -> "AlertBuilder":
        self._alert.sample = [e.to_dict() for e in events]
        self._alert.sample_truncated = truncated
        return self

    def build(self) -> Alert:
        if not self._alert.has_correct_fields():
            raise AlertSchemaError(f"alert has invalid field configuration: {self._alert.to_dict()}")
        return self._alert
