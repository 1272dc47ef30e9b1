"""
Normalized event record consumed by the customs detectors.

Events are produced by the parsing layer as flat JSON objects. This module only
knows the normalized field names; it has no knowledge of raw log formats.
"""

from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple, Optional


ACTION_ACCOUNT_CREATE = "account_create"
ACTION_LOGIN_FAILURE = "login_failure"
ACTION_LOGIN_SUCCESS = "login_success"
ACTION_PASSWORD_RESET = "password_reset"
ACTION_STATUS_CHECK = "account_status_check"
ACTION_RELAY_EXPECTED = "relay_expected_hash"
ACTION_RELAY_FORWARD = "relay_forward"


def parse_timestamp(ts: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings or epoch seconds into an aware UTC datetime."""
    if ts is None or ts == "":
        return None
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with millisecond precision."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _clean_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class NormalizedEvent(NamedTuple):
    """Immutable normalized security event."""

    timestamp: datetime
    source_address: Optional[str] = None
    uid: Optional[str] = None
    email: Optional[str] = None
    action: Optional[str] = None
    source_address_city: Optional[str] = None
    source_address_country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    sms_recipient: Optional[str] = None
    email_recipient: Optional[str] = None
    actor_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    user_agent: Optional[str] = None
    message_id: Optional[str] = None
    real_address_hash: Optional[str] = None

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "NormalizedEvent":
        """
        Build an event from a flat normalized record.

        Unparsable optional fields become None. A missing or unparsable
        timestamp raises ValueError since the event cannot be windowed.
        """
        timestamp = parse_timestamp(record.get("timestamp", record.get("event_time")))
        if timestamp is None:
            raise ValueError("event has no usable timestamp")

        fields = {}
        for name in cls._fields[1:]:
            if name in ("latitude", "longitude"):
                fields[name] = _clean_float(record.get(name))
            else:
                fields[name] = _clean_str(record.get(name))
        return cls(timestamp=timestamp, **fields)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation, omitting unset fields."""
        out: Dict[str, Any] = {"timestamp": format_timestamp(self.timestamp)}
        for name in self._fields[1:]:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out

    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
