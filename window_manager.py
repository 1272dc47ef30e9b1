"""
Event-time windowing for the customs detectors.

Two window strategies are supported:

- FixedWindows: tumbling windows of a fixed size, closed when the watermark
  passes the window end. Data arriving after close but within the allowed
  lateness produces an immediate late pane; anything later is dropped.
- GlobalWindow: a single unbounded window per key that fires an early pane
  every N elements buffered since the previous pane, and a final pane on drain.

Panes accumulate: every pane for a (key, window) contains all events of the
panes emitted before it, and pane indexes increase strictly.
"""

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, NamedTuple, Optional, Tuple

from keyed_counter import KeyedCounter
from normalized_event import NormalizedEvent


EARLY = "early"
ON_TIME = "on_time"
LATE = "late"
FINAL = "final"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
GLOBAL_WINDOW_START = datetime.min.replace(tzinfo=timezone.utc)
GLOBAL_WINDOW_END = datetime.max.replace(tzinfo=timezone.utc)


class Pane(NamedTuple):
    """One emitted aggregation result for a (key, window)."""

    key: str
    window_start: datetime
    window_end: datetime
    index: int
    count: int
    events: Tuple[NormalizedEvent, ...]
    timing: str

    @property
    def window(self) -> Tuple[datetime, datetime]:
        return (self.window_start, self.window_end)


class FixedWindows:
    """Tumbling event-time windows aligned to the epoch."""

    trigger_count = None
    closes_on_watermark = True

    def __init__(self, size_seconds: int, allowed_lateness_seconds: int = 0):
        if size_seconds <= 0:
            raise ValueError("window size must be positive")
        if allowed_lateness_seconds < 0:
            raise ValueError("allowed lateness cannot be negative")
        self.size = timedelta(seconds=size_seconds)
        self.allowed_lateness = timedelta(seconds=allowed_lateness_seconds)

    def assign(self, timestamp: datetime) -> Tuple[datetime, datetime]:
        offset = (timestamp - EPOCH) // self.size
        start = EPOCH + offset * self.size
        return start, start + self.size

    def __repr__(self):
        return f"FixedWindows({int(self.size.total_seconds())}s)"


class GlobalWindow:
    """Single unbounded window with count-based early firing."""

    closes_on_watermark = False
    allowed_lateness = timedelta(0)

    def __init__(self, trigger_count: int):
        if trigger_count <= 0:
            raise ValueError("trigger count must be positive")
        self.trigger_count = trigger_count

    def assign(self, timestamp: datetime) -> Tuple[datetime, datetime]:
        return GLOBAL_WINDOW_START, GLOBAL_WINDOW_END

    def __repr__(self):
        return f"GlobalWindow(every {self.trigger_count})"


class _WindowState:
    """Mutable bookkeeping for one open window; panes handed out are immutable."""

    def __init__(self, start: datetime, end: datetime):
        self.start = start
        self.end = end
        self.counter = KeyedCounter()
        self.next_index: Dict[str, int] = {}
        self.since_last_pane: Dict[str, int] = {}
        self.closed = False


class WindowManager:
    """
    Assign keyed events to windows and emit panes.

    add() may emit early or late panes, advance_watermark() emits on-time panes
    for windows it closes, and drain() flushes everything still open.
    """

    def __init__(self, strategy):
        self.strategy = strategy
        self.watermark: Optional[datetime] = None
        self._windows: "OrderedDict[Tuple[datetime, datetime], _WindowState]" = OrderedDict()
        self._drained = False
        self.stats = {
            "events": 0,
            "panes": 0,
            "dropped_late": 0,
            "windows_closed": 0,
            "windows_expired": 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add(self, key: str, event: NormalizedEvent) -> List[Pane]:
        """Buffer event under key; returns any pane the arrival triggers."""
        if self._drained:
            raise RuntimeError("window manager has been drained")

        start, end = self.strategy.assign(event.timestamp)
        if self.is_expired(end):
            self.stats["dropped_late"] += 1
            return []

        state = self._windows.get((start, end))
        if state is None:
            state = _WindowState(start, end)
            self._windows[(start, end)] = state

        state.counter.add(key, event)
        state.since_last_pane[key] = state.since_last_pane.get(key, 0) + 1
        self.stats["events"] += 1

        if state.closed:
            return [self._emit(state, key, LATE)]

        trigger = self.strategy.trigger_count
        if trigger and state.since_last_pane[key] >= trigger:
            return [self._emit(state, key, EARLY)]
        return []

    def advance_watermark(self, timestamp: datetime) -> List[Pane]:
        """Move the watermark forward, closing and expiring windows behind it."""
        if self.watermark is not None and timestamp <= self.watermark:
            return []
        self.watermark = timestamp

        if not self.strategy.closes_on_watermark:
            return []

        panes = []
        for window, state in list(self._windows.items()):
            if not state.closed and state.end <= timestamp:
                state.closed = True
                self.stats["windows_closed"] += 1
                for key in state.counter.keys():
                    panes.append(self._emit(state, key, ON_TIME))
            if state.closed and self.is_expired(state.end):
                del self._windows[window]
                self.stats["windows_expired"] += 1
        return panes

    def drain(self, every_key: bool = False) -> List[Pane]:
        """
        Flush a final pane for every open window and stop accepting events.

        By default a key gets a final pane only if it has elements not yet
        emitted. With every_key, each key in the window gets one, so callers
        that evaluate a whole window population see all of its keys.
        """
        panes = []
        for state in self._windows.values():
            if state.closed:
                continue
            for key in state.counter.keys():
                if every_key or state.since_last_pane.get(key, 0) or key not in state.next_index:
                    panes.append(self._emit(state, key, FINAL))
        self._windows.clear()
        self._drained = True
        return panes

    def is_expired(self, window_end: datetime) -> bool:
        """True once the watermark has passed window_end plus allowed lateness."""
        if self.watermark is None or not self.strategy.closes_on_watermark:
            return False
        return window_end + self.strategy.allowed_lateness <= self.watermark

    def open_windows(self) -> int:
        return len(self._windows)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _emit(self, state: _WindowState, key: str, timing: str) -> Pane:
        index = state.next_index.get(key, 0)
        events = state.counter.events(key)
        pane = Pane(
            key=key,
            window_start=state.start,
            window_end=state.end,
            index=index,
            count=len(events),
            events=events,
            timing=timing,
        )
        state.next_index[key] = index + 1
        state.since_last_pane[key] = 0
        self.stats["panes"] += 1
        return pane


def window_from_config(window_config: Optional[dict]):
    """Build a window strategy from a detector's `window` configuration block."""
    window_config = window_config or {}
    window_type = window_config.get("type", "fixed")
    if window_type == "fixed":
        return FixedWindows(
            int(window_config.get("size_seconds", 600)),
            int(window_config.get("allowed_lateness_seconds", 0)),
        )
    if window_type == "global":
        return GlobalWindow(int(window_config.get("trigger_count", 5)))
    raise ValueError(f"unknown window type: {window_type}")
