from datetime import timedelta

import pytest

from normalized_event import NormalizedEvent
from state_store import StateStore, StateStoreUnavailable
from window_manager import EPOCH, ON_TIME, Pane


@pytest.fixture
def at():
    """Datetime `seconds` after the epoch."""

    def _at(seconds: float):
        return EPOCH + timedelta(seconds=seconds)

    return _at


@pytest.fixture
def make_event(at):
    def _make_event(seconds: float = 0, **fields) -> NormalizedEvent:
        return NormalizedEvent(timestamp=at(seconds), **fields)

    return _make_event


@pytest.fixture
def make_pane(at):
    def _make_pane(key, events, timing=ON_TIME, start=0, size=60, index=0) -> Pane:
        events = tuple(events)
        return Pane(
            key=key,
            window_start=at(start),
            window_end=at(start + size),
            index=index,
            count=len(events),
            events=events,
            timing=timing,
        )

    return _make_pane


class UnavailableStateStore(StateStore):
    """Backend whose every call fails as if the store were unreachable."""

    def get(self, namespace, key):
        raise StateStoreUnavailable(f"get {namespace}/{key}: connection refused")

    def put(self, namespace, key, value):
        raise StateStoreUnavailable(f"put {namespace}/{key}: connection refused")

    def delete_all(self, namespace):
        raise StateStoreUnavailable(f"delete {namespace}: connection refused")


@pytest.fixture
def unavailable_store():
    return UnavailableStateStore()
