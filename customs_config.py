"""
Configuration for the customs engine.

Configuration is a YAML document read with yaml.safe_load. Any top-level key
missing from the file falls back to DEFAULT_CONFIG; a `detectors` list in the
file replaces the default detector list entirely.

Escalation toggles are resolved once into an EscalationPolicy mapping detector
category -> enabled.
"""

import copy
import sys
from typing import Any, Dict, Optional

import yaml

from alert_builder import SEVERITIES, Alert


DEFAULT_CONFIG: Dict[str, Any] = {
    "monitored_resource": "customs",
    "watermark_delay_seconds": 30,
    "state": {"backend": "memory"},
    "escalation": {
        "default": True,
    },
    "detectors": [
        {
            "name": "account_creation_abuse",
            "type": "threshold",
            "severity": "medium",
            "actions": ["account_create"],
            "key": ["source_address"],
            "limit": 3,
            "window": {"type": "fixed", "size_seconds": 600},
        },
        {
            "name": "account_creation_abuse_distributed",
            "type": "distributed",
            "severity": "medium",
            "actions": ["account_create"],
            "key": "normalized_email",
            "distinct_field": "source_address",
            "threshold": 5,
            "window": {"type": "fixed", "size_seconds": 600},
        },
        {
            "name": "source_login_failure",
            "type": "threshold",
            "severity": "medium",
            "actions": ["login_failure"],
            "key": ["source_address"],
            "limit": 10,
            "window": {"type": "fixed", "size_seconds": 600},
        },
        {
            "name": "source_login_failure_distributed",
            "type": "distributed",
            "severity": "medium",
            "actions": ["login_failure"],
            "key": ["email"],
            "distinct_field": "source_address",
            "threshold": 10,
            "window": {"type": "fixed", "size_seconds": 600},
        },
        {
            "name": "password_reset_abuse",
            "type": "distributed",
            "severity": "medium",
            "actions": ["password_reset"],
            "key": ["source_address"],
            "distinct_field": "email",
            "threshold": 5,
            "window": {"type": "fixed", "size_seconds": 600},
        },
        {
            "name": "threshold_analysis",
            "type": "statistical",
            "severity": "low",
            "key": ["source_address"],
            "threshold_modifier": 75.0,
            "required_minimum_average": 5.0,
            "required_minimum_clients": 5,
            "clamp_threshold_maximum": None,
            "nat_detection": True,
            "window": {"type": "fixed", "size_seconds": 60},
        },
        {
            "name": "threshold_analysis_monitor_only",
            "tag": "threshold_analysis",
            "type": "statistical",
            "enabled": False,
            "monitor_only": True,
            "severity": "low",
            "key": ["source_address"],
            "threshold_modifier": 50.0,
            "required_minimum_average": 5.0,
            "required_minimum_clients": 5,
            "nat_detection": True,
            "window": {"type": "fixed", "size_seconds": 60},
        },
        {
            "name": "velocity",
            "type": "velocity",
            "severity": "medium",
            "key": ["uid"],
            "minimum_distance_for_alert": 500.0,
            "monitor_only_enabled": False,
            "minimum_distance_for_alert_monitor_only": 100.0,
            "maximum_kilometers_per_hour": None,
        },
        {
            "name": "private_relay_forward",
            "type": "relay_forward",
            "severity": "high",
            "key": ["message_id"],
        },
    ],
}

DETECTOR_TYPES = (
    "threshold",
    "statistical",
    "distributed",
    "velocity",
    "relay_forward",
    "known_address",
    "monitored_account",
    "at_risk_login_failure",
)


class EscalationPolicy:
    """
    Per-category escalation switch, resolved once at start-up.

    Categories not listed fall back to `default`, which is True unless the
    configuration sets it. Use `default: false` to escalate only the
    categories enabled explicitly.
    """

    def __init__(self, categories: Optional[Dict[str, bool]] = None, default: bool = True):
        self.categories = {str(k): bool(v) for k, v in (categories or {}).items()}
        self.default = default

    @classmethod
    def from_config(cls, escalation_config: Optional[Dict[str, Any]]) -> "EscalationPolicy":
        escalation_config = dict(escalation_config or {})
        default = bool(escalation_config.pop("default", True))
        return cls(escalation_config, default)

    def allow(self, alert: Alert) -> bool:
        category = alert.get_metadata("customs_category")
        if category is None:
            return self.default
        return self.categories.get(category, self.default)


def load_config(path: Optional[str]) -> Dict[str, Any]:
    """Load YAML configuration merged over DEFAULT_CONFIG."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if not path:
        return config

    try:
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    except FileNotFoundError:
        print(f"⚠ Config not found: {path}, using defaults", file=sys.stderr)
        return config

    if not isinstance(loaded, dict):
        raise ValueError(f"configuration in {path} must be a mapping")

    config.update(loaded)
    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]):
    """Reject detector entries the engine cannot build."""
    names = set()
    for detector in config.get("detectors", []):
        name = detector.get("name")
        if not name:
            raise ValueError("every detector needs a name")
        if name in names:
            raise ValueError(f"duplicate detector name: {name}")
        names.add(name)
        if detector.get("type") not in DETECTOR_TYPES:
            raise ValueError(f"detector {name}: unknown type {detector.get('type')}")
        severity = detector.get("severity", "medium")
        if severity not in SEVERITIES:
            raise ValueError(f"detector {name}: severity {severity!r} is not one of {', '.join(SEVERITIES)}")
