import threading

import pytest

from state_store import (
    JSONFileStateStore,
    KeyLocks,
    MemoryStateStore,
    StateStoreUnavailable,
    store_from_config,
)


def test_memory_store_copies_values() -> None:
    store = MemoryStateStore()
    value = {"city": "Milton"}
    store.put("ns", "k", value)
    value["city"] = "London"

    stored = store.get("ns", "k")
    stored["city"] = "Paris"

    assert store.get("ns", "k") == {"city": "Milton"}
    assert store.get("ns", "missing") is None
    assert store.get("other", "k") is None


def test_memory_store_delete_all() -> None:
    store = MemoryStateStore()
    store.put("ns", "k", {"a": 1})
    store.put("keep", "k", {"a": 2})

    store.delete_all("ns")

    assert store.get("ns", "k") is None
    assert store.get("keep", "k") == {"a": 2}


def test_json_store_persists_across_instances(tmp_path) -> None:
    directory = tmp_path / "state"
    JSONFileStateStore(str(directory)).put("customs_velocity", "u1", {"latitude": 1.5})

    reopened = JSONFileStateStore(str(directory))

    assert reopened.get("customs_velocity", "u1") == {"latitude": 1.5}
    assert (directory / "customs_velocity.json").exists()

    reopened.delete_all("customs_velocity")
    assert reopened.get("customs_velocity", "u1") is None


def test_json_store_unreadable_file(tmp_path) -> None:
    (tmp_path / "broken.json").write_text("{not json")
    store = JSONFileStateStore(str(tmp_path))

    with pytest.raises(StateStoreUnavailable):
        store.get("broken", "k")


def test_store_from_config(tmp_path) -> None:
    assert isinstance(store_from_config(None), MemoryStateStore)

    store = store_from_config({"backend": "json", "path": str(tmp_path)})
    assert isinstance(store, JSONFileStateStore)
    assert store.directory == str(tmp_path)

    with pytest.raises(ValueError):
        store_from_config({"backend": "redis"})


def test_key_locks_are_released_when_idle() -> None:
    locks = KeyLocks()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    with locks.hold("a"):
        assert len(locks) == 1

    assert len(locks) == 0


def test_key_locks_serialize_same_key() -> None:
    locks = KeyLocks()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def first():
        with locks.hold("k"):
            entered.set()
            release.wait(5)
            order.append("first")

    def second():
        entered.wait(5)
        with locks.hold("k"):
            order.append("second")

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    for t in threads:
        t.start()
    entered.wait(5)
    with locks.hold("other"):
        pass
    release.set()
    for t in threads:
        t.join(5)

    assert order == ["first", "second"]
    assert len(locks) == 0


def test_key_locks_release_after_error() -> None:
    locks = KeyLocks()

    with pytest.raises(StateStoreUnavailable):
        with locks.hold("k"):
            raise StateStoreUnavailable("down")

    assert len(locks) == 0
