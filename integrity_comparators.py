"""
Point-wise comparator criteria.

Each comparator looks at a single event and emits at most one alert for it:

- RelayForwardComparator: expected vs actual forwarded address hash for a
  message id, matched through the durable state store
- KnownAddressComparator: account status checks from an address on a static list
- MonitoredAccountComparator: any activity for an account on a static list
- AtRiskLoginFailureComparator: login failures for accounts in an externally
  maintained flagged set
"""

import sys
import threading
from typing import FrozenSet, Iterable, Optional

from alert_builder import Alert, AlertBuilder, notify_merge_key
from normalized_event import (
    ACTION_LOGIN_FAILURE,
    ACTION_RELAY_EXPECTED,
    ACTION_RELAY_FORWARD,
    ACTION_STATUS_CHECK,
    NormalizedEvent,
)
from state_store import KeyLocks, StateStore


RELAY_NAMESPACE = "customs_relay_forward"


def load_static_list(path: str) -> FrozenSet[str]:
    """Load a newline-delimited identifier list, skipping blanks and # comments."""
    entries = set()
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#'):
                entries.add(line)
    print(f"✓ Static list loaded: {path} ({len(entries)} entries)", file=sys.stderr)
    return frozenset(entries)


def account_identifiers(event: NormalizedEvent) -> Iterable[str]:
    for value in (event.email, event.uid):
        if value is not None:
            yield value


class FlaggedAccounts:
    """
    Read-only snapshot of accounts considered at risk.

    Writers replace the whole snapshot; readers always see a complete frozenset.
    """

    def __init__(self, accounts: Iterable[str] = ()):
        self._snapshot: FrozenSet[str] = frozenset(accounts)
        self._writer = threading.Lock()

    def snapshot(self) -> FrozenSet[str]:
        return self._snapshot

    def replace(self, accounts: Iterable[str]):
        new_snapshot = frozenset(accounts)
        with self._writer:
            self._snapshot = new_snapshot

    def add(self, *accounts: str):
        with self._writer:
            self._snapshot = self._snapshot | frozenset(accounts)

    def __contains__(self, account: str) -> bool:
        return account in self._snapshot


class RelayForwardComparator:
    """Compare the expected and actual real-address hash recorded for a message."""

    def __init__(self, state: StateStore, monitored_resource: str, severity: str = "high",
                 tag: str = "private_relay_forward", namespace: str = RELAY_NAMESPACE,
                 locks: Optional[KeyLocks] = None):
        self.state = state
        self.monitored_resource = monitored_resource
        self.severity = severity
        self.tag = tag
        self.namespace = namespace
        self.locks = locks if locks is not None else KeyLocks()
        self.notify_merge = notify_merge_key(tag)

    def evaluate(self, key: Optional[str], event: NormalizedEvent) -> Optional[Alert]:
        if event.action == ACTION_RELAY_EXPECTED:
            side = "expected"
        elif event.action == ACTION_RELAY_FORWARD:
            side = "actual"
        else:
            return None
        if key is None or event.real_address_hash is None:
            return None

        with self.locks.hold(key):
            record = self.state.get(self.namespace, key) or {}
            if record.get("resolved"):
                return None

            record[side] = event.real_address_hash
            if event.uid is not None and "uid" not in record:
                record["uid"] = event.uid

            alert = None
            if "expected" in record and "actual" in record:
                record["resolved"] = True
                if record["expected"] != record["actual"]:
                    alert = self._build(key, record, event)
            self.state.put(self.namespace, key, record)
        return alert

    def _build(self, key: str, record: dict, event: NormalizedEvent) -> Alert:
        uid = record.get("uid", "unknown")
        builder = AlertBuilder(
            severity=self.severity,
            summary=f"{self.monitored_resource} private relay address hash mismatch for {uid}",
            notify_merge=self.notify_merge,
            timestamp=event.timestamp,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("uid", record.get("uid"))
        builder.metadata("message_id", key)
        builder.metadata("real_address_hash_expected", record["expected"])
        builder.metadata("real_address_hash_actual", record["actual"])
        return builder.build()


class KnownAddressComparator:
    """Account status check originating from a known address."""

    def __init__(self, addresses: FrozenSet[str], monitored_resource: str,
                 severity: str = "medium", tag: str = "status_comparator"):
        self.addresses = frozenset(addresses)
        self.monitored_resource = monitored_resource
        self.severity = severity
        self.tag = tag
        self.notify_merge = notify_merge_key(tag)

    def evaluate(self, key: Optional[str], event: NormalizedEvent) -> Optional[Alert]:
        if event.action != ACTION_STATUS_CHECK:
            return None
        if event.source_address is None or event.source_address not in self.addresses:
            return None

        builder = AlertBuilder(
            severity=self.severity,
            summary=f"{self.monitored_resource} status check comparator indicates known address",
            notify_merge=self.notify_merge,
            timestamp=event.timestamp,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("email", event.email)
        builder.metadata("uid", event.uid)
        builder.metadata("sourceaddress", event.source_address)
        return builder.build()


class MonitoredAccountComparator:
    """Any activity for an account on the monitored list."""

    def __init__(self, accounts: FrozenSet[str], monitored_resource: str,
                 severity: str = "medium", tag: str = "activity_monitor"):
        self.accounts = frozenset(accounts)
        self.monitored_resource = monitored_resource
        self.severity = severity
        self.tag = tag
        self.notify_merge = notify_merge_key(tag)

    def evaluate(self, key: Optional[str], event: NormalizedEvent) -> Optional[Alert]:
        if not any(a in self.accounts for a in account_identifiers(event)):
            return None

        action = event.action or "unknown"
        builder = AlertBuilder(
            severity=self.severity,
            summary=f"{self.monitored_resource} activity on monitored account - action {action}",
            notify_merge=self.notify_merge,
            timestamp=event.timestamp,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("email", event.email)
        builder.metadata("uid", event.uid)
        builder.metadata("sourceaddress", event.source_address)
        builder.metadata("action", action)
        return builder.build()


class AtRiskLoginFailureComparator:
    """Login failure for an account currently flagged as at risk."""

    def __init__(self, flagged: FlaggedAccounts, monitored_resource: str,
                 severity: str = "medium", tag: str = "login_failure_at_risk_account"):
        self.flagged = flagged
        self.monitored_resource = monitored_resource
        self.severity = severity
        self.tag = tag
        self.notify_merge = notify_merge_key(tag)

    def evaluate(self, key: Optional[str], event: NormalizedEvent) -> Optional[Alert]:
        if event.action != ACTION_LOGIN_FAILURE:
            return None
        snapshot = self.flagged.snapshot()
        if not any(a in snapshot for a in account_identifiers(event)):
            return None

        builder = AlertBuilder(
            severity=self.severity,
            summary=(f"{self.monitored_resource} login failure for at risk account, "
                     f"{event.source_address or 'unknown'}"),
            notify_merge=self.notify_merge,
            timestamp=event.timestamp,
        )
        builder.metadata("customs_category", self.tag)
        builder.metadata("email", event.email)
        builder.metadata("uid", event.uid)
        builder.metadata("sourceaddress", event.source_address)
        return builder.build()
