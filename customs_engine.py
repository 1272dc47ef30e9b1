#!/usr/bin/env python3
"""
Customs Abuse Detection Engine
Evaluates normalized events against the configured customs detectors and emits alerts.

Normalized events → windowed detectors (threshold, statistical, distributed)
                  → point-wise detectors (velocity, relay forward, static list comparators)
                  → escalation policy → alerts

Features:
- Fixed and global (count-triggered) event-time windows with watermark and allowed lateness
- Fire-once per (detector, key, window) over accumulating panes
- NAT-aware population threshold analysis
- Durable per-key baselines with single-writer-per-key evaluation
- Partition-parallel evaluation of stateful detectors
- Drain flushes every open window

Usage:
    python3 customs_engine.py --input normalized.jsonl --output alerts.jsonl --config customs_config.yaml
"""

import argparse
import json
import sys
import zlib
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from alert_builder import Alert
from customs_config import EscalationPolicy, load_config, validate_config
from distributed_correlation import DistributedCorrelationCriterion
from integrity_comparators import (
    AtRiskLoginFailureComparator,
    FlaggedAccounts,
    KnownAddressComparator,
    MonitoredAccountComparator,
    RelayForwardComparator,
    account_identifiers,
    load_static_list,
)
from keyed_counter import KeyFunc, build_key_func
from nat_detect import DEFAULT_USER_AGENT_THRESHOLD, NatSnapshot, detect_nat
from normalized_event import NormalizedEvent
from state_store import KeyLocks, StateStore, store_from_config
from statistical_threshold import StatisticalThresholdCriterion
from threshold_criterion import ThresholdCriterion
from velocity import VelocityCriterion
from window_manager import FINAL, ON_TIME, Pane, WindowManager, window_from_config


WINDOWED_TYPES = ("threshold", "statistical", "distributed")
STATEFUL_TYPES = ("velocity", "relay_forward")


class Detector:
    """A criterion bound to its event filter and key derivation."""

    def __init__(self, name: str, detector_type: str, criterion: Any, key_func: KeyFunc,
                 actions: Optional[List[str]] = None, manager: Optional[WindowManager] = None,
                 options: Optional[Dict[str, Any]] = None):
        self.name = name
        self.type = detector_type
        self.criterion = criterion
        self.key_func = key_func
        self.actions = set(actions) if actions else None
        self.manager = manager
        self.options = options or {}

    def accepts(self, event: NormalizedEvent) -> bool:
        return self.actions is None or event.action in self.actions

    def key_for(self, event: NormalizedEvent) -> Optional[str]:
        return self.key_func(event)

    def __repr__(self):
        return f"Detector({self.name}, {self.type})"


def _as_list(result) -> List[Alert]:
    if result is None:
        return []
    if isinstance(result, list):
        return result
    return [result]


def partition_for(key: str, partitions: int) -> int:
    """Stable partition index for key."""
    return zlib.crc32(key.encode("utf-8")) % partitions


class CustomsEngine:
    """
    Drive the configured detectors over a stream of normalized events.

    process_event() handles one event in streaming fashion, deriving the
    watermark from the latest event time minus the configured delay.
    advance_watermark() lets a caller supply an external watermark, and drain()
    flushes every open window. process_events() runs a whole batch.
    """

    def __init__(self, config: Dict[str, Any], state: Optional[StateStore] = None,
                 nat_snapshot: Optional[NatSnapshot] = None,
                 flagged_accounts: Optional[FlaggedAccounts] = None):
        validate_config(config)
        self.config = config
        self.monitored_resource = config.get("monitored_resource", "customs")
        self.watermark_delay = timedelta(seconds=config.get("watermark_delay_seconds", 0))
        self.state = state or store_from_config(config.get("state"))
        self.locks = KeyLocks()
        self.static_nat = nat_snapshot
        self.flagged_accounts = flagged_accounts or FlaggedAccounts()
        self.escalation = EscalationPolicy.from_config(config.get("escalation"))

        self.detectors: List[Detector] = []
        for detector_config in config.get("detectors", []):
            if not detector_config.get("enabled", True):
                continue
            self.detectors.append(self._build_detector(detector_config))

        self._max_event_time: Optional[datetime] = None
        self._fired: Dict[Tuple[str, str, datetime, datetime], bool] = {}
        self._drained = False
        self.stats = {
            "events_processed": 0,
            "alerts_emitted": 0,
            "records_skipped": 0,
            "alerts_suppressed": 0,
            "alerts_by_category": Counter(),
        }

        print(f"✓ Customs engine initialized: {len(self.detectors)} detector(s) "
              f"[{', '.join(d.name for d in self.detectors)}]", file=sys.stderr)

    # ------------------------------------------------------------------
    # Detector construction
    # ------------------------------------------------------------------

    def _build_detector(self, dc: Dict[str, Any]) -> Detector:
        name = dc["name"]
        detector_type = dc["type"]
        tag = dc.get("tag", name)
        severity = dc.get("severity", "medium")
        key_func, key_fields = build_key_func(dc.get("key", ["source_address"]))
        actions = dc.get("actions")
        resource = self.monitored_resource

        manager = None
        if detector_type in WINDOWED_TYPES:
            manager = WindowManager(window_from_config(dc.get("window")))

        if detector_type == "threshold":
            criterion = ThresholdCriterion(severity, tag, int(dc.get("limit", 10)), resource, key_fields)
        elif detector_type == "distributed":
            criterion = DistributedCorrelationCriterion(
                severity, tag, int(dc.get("threshold", 10)),
                dc.get("distinct_field", "source_address"), resource, key_fields)
        elif detector_type == "statistical":
            clamp = dc.get("clamp_threshold_maximum")
            criterion = StatisticalThresholdCriterion(
                severity, tag, resource,
                threshold_modifier=float(dc.get("threshold_modifier", 75.0)),
                required_minimum_average=float(dc.get("required_minimum_average", 0.0)),
                required_minimum_clients=int(dc.get("required_minimum_clients", 0)),
                clamp_threshold_maximum=float(clamp) if clamp is not None else None,
                monitor_only=bool(dc.get("monitor_only", False)),
                key_fields=key_fields,
            )
        elif detector_type == "velocity":
            max_kmh = dc.get("maximum_kilometers_per_hour")
            criterion = VelocityCriterion(
                self.state, resource, severity=severity, tag=tag,
                minimum_distance_for_alert=float(dc.get("minimum_distance_for_alert", 500.0)),
                monitor_only_enabled=bool(dc.get("monitor_only_enabled", False)),
                minimum_distance_for_alert_monitor_only=float(
                    dc.get("minimum_distance_for_alert_monitor_only", 100.0)),
                maximum_kilometers_per_hour=float(max_kmh) if max_kmh is not None else None,
                locks=self.locks,
            )
        elif detector_type == "relay_forward":
            criterion = RelayForwardComparator(self.state, resource, severity=severity, tag=tag,
                                               locks=self.locks)
        elif detector_type == "known_address":
            criterion = KnownAddressComparator(load_static_list(dc["address_list"]), resource,
                                               severity=severity, tag=tag)
        elif detector_type == "monitored_account":
            criterion = MonitoredAccountComparator(load_static_list(dc["account_list"]), resource,
                                                   severity=severity, tag=tag)
        elif detector_type == "at_risk_login_failure":
            if dc.get("account_list"):
                self.flagged_accounts.add(*load_static_list(dc["account_list"]))
            criterion = AtRiskLoginFailureComparator(self.flagged_accounts, resource,
                                                     severity=severity, tag=tag)
        else:
            raise ValueError(f"detector {name}: unknown type {detector_type}")

        return Detector(name, detector_type, criterion, key_func, actions, manager, dc)

    # ------------------------------------------------------------------
    # Streaming API
    # ------------------------------------------------------------------

    def process_event(self, event: NormalizedEvent) -> List[Alert]:
        """Evaluate one event, then advance the derived watermark."""
        alerts = self._process_stateful(event)
        alerts.extend(self._process_pointwise(event))
        alerts.extend(self._process_windowed(event))
        alerts.extend(self._advance_from_event_time(event))
        return self._emit(alerts)

    def advance_watermark(self, watermark: datetime) -> List[Alert]:
        """Advance every window manager to watermark and evaluate closed windows."""
        return self._emit(self._advance(watermark))

    def drain(self) -> List[Alert]:
        """Flush every open window with a final pane. The engine accepts no more events."""
        alerts = []
        for detector in self._windowed_detectors():
            panes = detector.manager.drain(every_key=detector.type == "statistical")
            alerts.extend(self._handle_panes(detector, panes))
        self._fired.clear()
        self._drained = True
        return self._emit(alerts)

    # ------------------------------------------------------------------
    # Batch API
    # ------------------------------------------------------------------

    def process_events(self, events: Iterable[NormalizedEvent], workers: int = 1) -> List[Alert]:
        """
        Process a complete batch in event-time order and drain.

        With workers > 1 the stateful detectors run partition-parallel: events
        are partitioned by detector key so each key is handled by exactly one
        worker in order, while distinct partitions proceed concurrently.
        """
        ordered = sorted(events, key=lambda e: e.timestamp)
        print(f"Processing {len(ordered)} events...", file=sys.stderr)

        alerts = []
        if workers > 1:
            alerts.extend(self._emit(self._run_stateful_partitioned(ordered, workers)))

        for event in ordered:
            if workers > 1:
                pending = self._process_pointwise(event)
            else:
                pending = self._process_stateful(event)
                pending.extend(self._process_pointwise(event))
            pending.extend(self._process_windowed(event))
            pending.extend(self._advance_from_event_time(event))
            alerts.extend(self._emit(pending))

        alerts.extend(self.drain())
        print(f"Generated {len(alerts)} alert(s)", file=sys.stderr)
        return alerts

    def _run_stateful_partitioned(self, events: List[NormalizedEvent], workers: int) -> List[Alert]:
        partitions: Dict[int, List[Tuple[Detector, str, NormalizedEvent]]] = defaultdict(list)
        for event in events:
            self.stats["events_processed"] += 1
            for detector in self._stateful_detectors():
                if not detector.accepts(event):
                    continue
                key = detector.key_for(event)
                if key is None:
                    continue
                partitions[partition_for(key, workers)].append((detector, key, event))

        def run(items):
            out = []
            for detector, key, event in items:
                out.extend(_as_list(detector.criterion.evaluate(key, event)))
            return out

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(run, partitions[p]) for p in sorted(partitions)]
            results = []
            for future in futures:
                results.extend(future.result())
        return results

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _windowed_detectors(self) -> List[Detector]:
        return [d for d in self.detectors if d.manager is not None]

    def _stateful_detectors(self) -> List[Detector]:
        return [d for d in self.detectors if d.type in STATEFUL_TYPES]

    def _pointwise_detectors(self) -> List[Detector]:
        return [d for d in self.detectors
                if d.manager is None and d.type not in STATEFUL_TYPES]

    def _check_open(self):
        if self._drained:
            raise RuntimeError("engine has been drained")

    def _process_stateful(self, event: NormalizedEvent) -> List[Alert]:
        self._check_open()
        self.stats["events_processed"] += 1
        alerts = []
        for detector in self._stateful_detectors():
            if detector.accepts(event):
                alerts.extend(_as_list(detector.criterion.evaluate(detector.key_for(event), event)))
        return alerts

    def _process_pointwise(self, event: NormalizedEvent) -> List[Alert]:
        self._check_open()
        alerts = []
        for detector in self._pointwise_detectors():
            if not detector.accepts(event):
                continue
            fired = _as_list(detector.criterion.evaluate(detector.key_for(event), event))
            if fired and detector.type == "known_address" and detector.options.get("flag_at_risk", True):
                self.flagged_accounts.add(*account_identifiers(event))
            alerts.extend(fired)
        return alerts

    def _process_windowed(self, event: NormalizedEvent) -> List[Alert]:
        alerts = []
        for detector in self._windowed_detectors():
            if not detector.accepts(event):
                continue
            key = detector.key_for(event)
            if key is None:
                continue
            alerts.extend(self._handle_panes(detector, detector.manager.add(key, event)))
        return alerts

    def _advance_from_event_time(self, event: NormalizedEvent) -> List[Alert]:
        if self._max_event_time is None or event.timestamp > self._max_event_time:
            self._max_event_time = event.timestamp
        return self._advance(self._max_event_time - self.watermark_delay)

    def _advance(self, watermark: datetime) -> List[Alert]:
        alerts = []
        for detector in self._windowed_detectors():
            alerts.extend(self._handle_panes(detector, detector.manager.advance_watermark(watermark)))
        self._expire_fired()
        return alerts

    def _expire_fired(self):
        managers = {d.name: d.manager for d in self._windowed_detectors()}
        expired = [fk for fk in self._fired if managers[fk[0]].is_expired(fk[3])]
        for fk in expired:
            del self._fired[fk]

    def _handle_panes(self, detector: Detector, panes: List[Pane]) -> List[Alert]:
        if not panes:
            return []
        if detector.type == "statistical":
            return self._evaluate_statistical(detector, panes)

        alerts = []
        for pane in panes:
            fire_key = (detector.name, pane.key, pane.window_start, pane.window_end)
            if fire_key in self._fired:
                continue
            alert = detector.criterion.evaluate(pane.key, pane)
            if alert is not None:
                self._fired[fire_key] = True
                alerts.append(alert)
        return alerts

    def _evaluate_statistical(self, detector: Detector, panes: List[Pane]) -> List[Alert]:
        by_window: Dict[Tuple[datetime, datetime], List[Pane]] = defaultdict(list)
        for pane in panes:
            if pane.timing in (ON_TIME, FINAL):
                by_window[pane.window].append(pane)

        alerts = []
        for window_panes in by_window.values():
            nat = self.static_nat
            if nat is None and detector.options.get("nat_detection", False):
                nat = detect_nat(
                    window_panes,
                    int(detector.options.get("nat_user_agent_threshold", DEFAULT_USER_AGENT_THRESHOLD)),
                )
            alerts.extend(detector.criterion.evaluate_window(window_panes, nat))
        return alerts

    def _emit(self, alerts: List[Alert]) -> List[Alert]:
        allowed = []
        for alert in alerts:
            if not self.escalation.allow(alert):
                self.stats["alerts_suppressed"] += 1
                continue
            self.stats["alerts_emitted"] += 1
            self.stats["alerts_by_category"][alert.get_metadata("customs_category")] += 1
            allowed.append(alert)
        return allowed

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        windows = {}
        for detector in self._windowed_detectors():
            windows[detector.name] = dict(detector.manager.stats)
        return {
            "events_processed": self.stats["events_processed"],
            "alerts_emitted": self.stats["alerts_emitted"],
            "alerts_suppressed": self.stats["alerts_suppressed"],
            "records_skipped": self.stats["records_skipped"],
            "alerts_by_category": dict(self.stats["alerts_by_category"]),
            "dropped_late": sum(w["dropped_late"] for w in windows.values()),
            "windows": windows,
            "flagged_accounts": len(self.flagged_accounts.snapshot()),
        }


# ======================================================================
# Helper: JSONL output
# ======================================================================

def append_jsonl(fileobj, obj: Dict[str, Any]):
    """Write one JSON object as a compact JSONL line and flush."""
    fileobj.write(json.dumps(obj, separators=(",", ":"), ensure_ascii=False) + "\n")
    fileobj.flush()


def read_events(path: str, stats: Dict[str, int]) -> List[NormalizedEvent]:
    """Read normalized events from a JSONL file, counting records that cannot be used."""
    events = []
    with open(path, 'r', encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(NormalizedEvent.from_dict(json.loads(line)))
            except json.JSONDecodeError:
                stats["malformed"] += 1
            except ValueError:
                stats["no_timestamp"] += 1
    return events


def main():
    parser = argparse.ArgumentParser(description="Customs abuse detection engine")
    parser.add_argument("--input", default="normalized.jsonl", help="Input normalized events")
    parser.add_argument("--output", default="alerts.jsonl", help="Output alerts")
    parser.add_argument("--config", default="customs_config.yaml", help="Configuration")
    parser.add_argument("--workers", type=int, default=1,
                        help="Worker threads for stateful detectors")
    parser.add_argument("--stats", action="store_true", help="Print statistics")

    args = parser.parse_args()

    print(f"Loading customs configuration...", file=sys.stderr)
    try:
        config = load_config(args.config)
        engine = CustomsEngine(config)
    except (ValueError, KeyError, FileNotFoundError) as e:
        print(f"✗ Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    skipped = Counter()
    try:
        events = read_events(args.input, skipped)
    except FileNotFoundError:
        print(f"✗ Input file not found: {args.input}", file=sys.stderr)
        sys.exit(1)
    print(f"✓ Loaded {len(events)} events", file=sys.stderr)
    engine.stats["records_skipped"] = sum(skipped.values())

    alerts = engine.process_events(events, workers=args.workers)

    print(f"Writing alerts to {args.output}...", file=sys.stderr)
    with open(args.output, 'w', encoding="utf-8") as f:
        for alert in alerts:
            append_jsonl(f, alert.to_dict())

    print(f"✓ Generated {len(alerts)} alerts", file=sys.stderr)

    if args.stats:
        stats = engine.get_stats()
        print("\n" + "="*60, file=sys.stderr)
        print("CUSTOMS STATISTICS", file=sys.stderr)
        print("="*60, file=sys.stderr)
        print(f"Events Processed: {stats['events_processed']}", file=sys.stderr)
        print(f"Records Skipped: {stats['records_skipped']}", file=sys.stderr)
        print(f"Alerts Emitted: {stats['alerts_emitted']}", file=sys.stderr)
        print(f"Alerts Suppressed: {stats['alerts_suppressed']}", file=sys.stderr)
        print(f"Late Events Dropped: {stats['dropped_late']}", file=sys.stderr)

        if stats['alerts_by_category']:
            print(f"\nBy Category:", file=sys.stderr)
            for category, count in sorted(stats['alerts_by_category'].items()):
                print(f"  {category}: {count}", file=sys.stderr)

        print("="*60, file=sys.stderr)


if __name__ == "__main__":
    main()
