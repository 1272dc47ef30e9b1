"""
Per-key event aggregation for a single window.

A KeyedCounter keeps the running count and the full ordered list of
contributing events for each key. Detectors choose how keys are derived from
events; a derivation returning None leaves the event out of that detector.
"""

from collections import OrderedDict
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from normalized_event import NormalizedEvent


KEY_DELIMITER = "+"

KeyFunc = Callable[[NormalizedEvent], Optional[str]]


class KeyedCounter:
    """Running count and contributing events per key."""

    def __init__(self):
        self._events: "OrderedDict[str, List[NormalizedEvent]]" = OrderedDict()

    def add(self, key: str, event: NormalizedEvent) -> int:
        """Add event under key, returning the new count for that key."""
        bucket = self._events.setdefault(key, [])
        bucket.append(event)
        return len(bucket)

    def count(self, key: str) -> int:
        return len(self._events.get(key, ()))

    def events(self, key: str) -> Tuple[NormalizedEvent, ...]:
        """Events for key in arrival order, as an immutable snapshot."""
        return tuple(self._events.get(key, ()))

    def keys(self) -> List[str]:
        return list(self._events.keys())

    def items(self) -> Iterator[Tuple[str, Tuple[NormalizedEvent, ...]]]:
        for key, bucket in self._events.items():
            yield key, tuple(bucket)

    def counts(self) -> Dict[str, int]:
        return {key: len(bucket) for key, bucket in self._events.items()}

    def __contains__(self, key: str) -> bool:
        return key in self._events

    def __len__(self) -> int:
        return len(self._events)


# ======================================================================
# Key derivation
# ======================================================================

def field_key(name: str) -> KeyFunc:
    """Key on a single event field."""
    if name not in NormalizedEvent._fields:
        raise ValueError(f"unknown event field for key: {name}")

    def derive(event: NormalizedEvent) -> Optional[str]:
        value = getattr(event, name)
        return str(value) if value is not None else None

    return derive


def composite_key(*names: str, delimiter: str = KEY_DELIMITER) -> KeyFunc:
    """Key on several fields joined by delimiter; any missing field drops the event."""
    if len(names) == 1:
        return field_key(names[0])
    parts = [field_key(n) for n in names]

    def derive(event: NormalizedEvent) -> Optional[str]:
        values = [p(event) for p in parts]
        if any(v is None for v in values):
            return None
        return delimiter.join(values)

    return derive


def normalize_email(address: Optional[str]) -> Optional[str]:
    """Lowercase, strip +tags and dots from the local part (user.name+x@d -> username@d)."""
    if not address or "@" not in address:
        return None
    local, _, domain = address.strip().lower().rpartition("@")
    local = local.split("+", 1)[0].replace(".", "")
    if not local or not domain:
        return None
    return f"{local}@{domain}"


def normalized_email_key() -> KeyFunc:
    """Key on the normalized account email, grouping tagged/dotted variants."""

    def derive(event: NormalizedEvent) -> Optional[str]:
        return normalize_email(event.email)

    return derive


def build_key_func(spec) -> Tuple[KeyFunc, Tuple[str, ...]]:
    """
    Resolve a key specification from configuration.

    Accepts a field name, a list of field names, or the special value
    "normalized_email". Returns the derivation and the key shape.
    """
    if spec == "normalized_email":
        return normalized_email_key(), ("normalized_email",)
    if isinstance(spec, str):
        return field_key(spec), (spec,)
    names = tuple(spec or ())
    if not names:
        raise ValueError("detector key must name at least one field")
    return composite_key(*names), names
