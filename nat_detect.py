"""
NAT likelihood side input for the statistical threshold detector.

A NatSnapshot maps source address -> "likely a shared gateway". It is only ever
constructed from a complete mapping and is read-only afterwards, so evaluators
never observe a partially populated view.
"""

from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Set

from window_manager import Pane


DEFAULT_USER_AGENT_THRESHOLD = 2


class NatSnapshot:
    """Immutable point-in-time address -> NAT flag mapping."""

    def __init__(self, flags: Optional[Mapping[str, bool]] = None):
        self._flags = MappingProxyType(dict(flags or {}))

    def is_nat(self, address: Optional[str]) -> bool:
        if address is None:
            return False
        return bool(self._flags.get(address, False))

    def flagged(self) -> Set[str]:
        return {addr for addr, flag in self._flags.items() if flag}

    def __len__(self) -> int:
        return len(self._flags)

    @classmethod
    def from_addresses(cls, addresses: Iterable[str]) -> "NatSnapshot":
        return cls({addr: True for addr in addresses})


def detect_nat(panes: Iterable[Pane], user_agent_threshold: int = DEFAULT_USER_AGENT_THRESHOLD) -> NatSnapshot:
    """
    Build a snapshot from a closed window's panes keyed by source address.

    An address seen with at least `user_agent_threshold` distinct user agents is
    treated as a shared gateway. The mapping is fully built before the snapshot
    is returned.
    """
    agents: Dict[str, Set[str]] = {}
    for pane in panes:
        for event in pane.events:
            if event.source_address is None or event.user_agent is None:
                continue
            agents.setdefault(event.source_address, set()).add(event.user_agent)

    flags = {addr: len(seen) >= user_agent_threshold for addr, seen in agents.items()}
    return NatSnapshot(flags)
