from concurrent.futures import ThreadPoolExecutor

import pytest

from state_store import KeyLocks, MemoryStateStore, StateStoreUnavailable
from velocity import VELOCITY_NAMESPACE, VelocityCriterion, km_between


UID = "00000000-0000-0000-0000-000000000000"


@pytest.fixture
def milton(make_event):
    return make_event(
        0, uid=UID, source_address="216.160.83.56", source_address_city="Milton",
        source_address_country="US", latitude=47.2513, longitude=-122.3149)


@pytest.fixture
def london(make_event):
    return make_event(
        9, uid=UID, source_address="81.2.69.192", source_address_city="London",
        source_address_country="GB", latitude=51.5142, longitude=-0.0931)


def _criterion(state=None, **kwargs):
    return VelocityCriterion(state or MemoryStateStore(), "test", **kwargs)


def test_first_event_only_records_baseline(milton) -> None:
    state = MemoryStateStore()

    assert _criterion(state).evaluate(UID, milton) == []
    assert state.get(VELOCITY_NAMESPACE, UID)["source_address"] == "216.160.83.56"


def test_distant_consecutive_events_alert(milton, london) -> None:
    criterion = _criterion()
    criterion.evaluate(UID, milton)

    alerts = criterion.evaluate(UID, london)

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.summary == f"test {UID} velocity exceeded, 7740.82 km in 9 seconds"
    assert alert.notify_merge == "velocity"
    assert alert.get_metadata("km_distance") == "7740.82"
    assert alert.get_metadata("time_delta_seconds") == "9"
    assert alert.get_metadata("sourceaddress") == "81.2.69.192"
    assert alert.get_metadata("sourceaddress_city") == "London"
    assert alert.get_metadata("sourceaddress_previous") == "216.160.83.56"
    assert alert.get_metadata("sourceaddress_previous_country") == "US"
    assert alert.get_metadata("customs_category") == "velocity"


def test_minimum_distance_suppresses_but_advances_baseline(milton, london) -> None:
    state = MemoryStateStore()
    criterion = _criterion(state, minimum_distance_for_alert=9000.0)
    criterion.evaluate(UID, milton)

    assert criterion.evaluate(UID, london) == []
    assert state.get(VELOCITY_NAMESPACE, UID)["city"] == "London"


def test_monitor_only_alerts_independently(milton, london) -> None:
    criterion = _criterion(minimum_distance_for_alert=9000.0, monitor_only_enabled=True,
                           minimum_distance_for_alert_monitor_only=100.0)
    criterion.evaluate(UID, milton)

    alerts = criterion.evaluate(UID, london)

    assert len(alerts) == 1
    assert alerts[0].summary.endswith(" (monitor only)")
    assert alerts[0].notify_merge == "velocity_monitor_only"


def test_primary_and_monitor_only_can_both_fire(milton, london) -> None:
    criterion = _criterion(monitor_only_enabled=True)
    criterion.evaluate(UID, milton)

    alerts = criterion.evaluate(UID, london)

    assert [a.notify_merge for a in alerts] == ["velocity", "velocity_monitor_only"]


def test_event_without_location_is_ignored(milton, make_event) -> None:
    state = MemoryStateStore()
    criterion = _criterion(state)
    criterion.evaluate(UID, milton)

    assert criterion.evaluate(UID, make_event(30, uid=UID, source_address="10.0.0.1")) == []
    assert state.get(VELOCITY_NAMESPACE, UID)["source_address"] == "216.160.83.56"


def test_speed_limit_when_configured(milton, london) -> None:
    criterion = _criterion(maximum_kilometers_per_hour=1e9)
    criterion.evaluate(UID, milton)

    assert criterion.evaluate(UID, london) == []


def test_km_between() -> None:
    assert km_between(47.2513, -122.3149, 47.2513, -122.3149) == 0
    assert km_between(47.2513, -122.3149, 51.5142, -0.0931) == pytest.approx(7740.82, abs=0.01)


def test_concurrent_keys_keep_their_own_baseline(make_event) -> None:
    state = MemoryStateStore()
    criterion = _criterion(state, locks=KeyLocks())

    def run(uid):
        out = []
        for i in range(5):
            event = make_event(i * 60, uid=uid, latitude=0.0, longitude=float(i * 10))
            out.extend(criterion.evaluate(uid, event))
        return out

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(run, [f"user-{n}" for n in range(8)]))

    # 10 degrees of longitude at the equator is about 1113 km
    assert all(len(alerts) == 4 for alerts in results)
    for n in range(8):
        assert state.get(VELOCITY_NAMESPACE, f"user-{n}")["longitude"] == 40.0


def test_unavailable_store_propagates(unavailable_store, milton) -> None:
    criterion = _criterion(unavailable_store)

    with pytest.raises(StateStoreUnavailable):
        criterion.evaluate(UID, milton)


def test_shares_the_lock_registry_it_is_given() -> None:
    locks = KeyLocks()

    assert _criterion(locks=locks).locks is locks
