"""
Durable per-key state used by the stateful customs detectors.

Provides:
- StateStore: the key-value contract (get / put / delete_all by namespace)
- MemoryStateStore: in-process backend for tests and single runs
- JSONFileStateStore: one JSON document per namespace on local disk
- KeyLocks: per-key locks giving a single writer per key

Detectors never cache values between evaluations; they read at the start and
write back at the end of each per-key evaluation. Backend failures surface as
StateStoreUnavailable, which callers are expected to retry.
"""

import json
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional


class StateStoreUnavailable(RuntimeError):
    """The backing store could not be read or written; the step may be retried."""


class StateStore:
    """Key-value contract addressed by namespace and key. No multi-key transactions."""

    def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def put(self, namespace: str, key: str, value: Dict[str, Any]):
        raise NotImplementedError

    def delete_all(self, namespace: str):
        raise NotImplementedError


class MemoryStateStore(StateStore):
    """Dictionary-backed store. Values are copied in and out through JSON."""

    def __init__(self):
        self._data: Dict[str, Dict[str, str]] = {}
        self._guard = threading.Lock()

    def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        with self._guard:
            raw = self._data.get(namespace, {}).get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, namespace: str, key: str, value: Dict[str, Any]):
        raw = json.dumps(value, separators=(",", ":"))
        with self._guard:
            self._data.setdefault(namespace, {})[key] = raw

    def delete_all(self, namespace: str):
        with self._guard:
            self._data.pop(namespace, None)


class JSONFileStateStore(StateStore):
    """
    Store each namespace as a JSON object in `<directory>/<namespace>.json`.

    Every get re-reads the file so the file stays the only source of truth.
    Writes go to a temporary file that atomically replaces the namespace file.
    """

    def __init__(self, directory: str):
        self.directory = directory
        self._file_guard = threading.Lock()

    def _path(self, namespace: str) -> str:
        return os.path.join(self.directory, f"{namespace}.json")

    def _load(self, namespace: str) -> Dict[str, Any]:
        path = self._path(namespace)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreUnavailable(f"could not read state {path}: {e}") from e

    def _save(self, namespace: str, data: Dict[str, Any]):
        path = self._path(namespace)
        tmp_path = path + ".tmp"
        try:
            os.makedirs(self.directory or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, separators=(",", ":"))
            os.replace(tmp_path, path)
        except OSError as e:
            raise StateStoreUnavailable(f"could not write state {path}: {e}") from e

    def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        with self._file_guard:
            return self._load(namespace).get(key)

    def put(self, namespace: str, key: str, value: Dict[str, Any]):
        with self._file_guard:
            data = self._load(namespace)
            data[key] = value
            self._save(namespace, data)

    def delete_all(self, namespace: str):
        with self._file_guard:
            path = self._path(namespace)
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                raise StateStoreUnavailable(f"could not delete state {path}: {e}") from e


class KeyLocks:
    """
    One lock per key, so updates to the same key are serialized while distinct
    keys proceed independently. The registry guard is held only while looking
    up, creating or releasing a key's lock.

    A lock is kept only while some caller holds or waits for it, so the
    registry does not grow with every key ever seen.
    """

    def __init__(self):
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}
        self._registry_guard = threading.Lock()

    def _acquire_entry(self, key: str) -> list:
        with self._registry_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry

    def _release_entry(self, key: str, entry: list):
        with self._registry_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        entry = self._acquire_entry(key)
        try:
            with entry[0]:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self) -> int:
        return len(self._locks)


def store_from_config(state_config: Optional[Dict[str, Any]]) -> StateStore:
    """Build the configured state backend (memory by default)."""
    state_config = state_config or {}
    backend = state_config.get("backend", "memory")
    if backend == "memory":
        return MemoryStateStore()
    if backend == "json":
        return JSONFileStateStore(state_config.get("path", ".state/customs"))
    raise ValueError(f"unknown state backend: {backend}")
