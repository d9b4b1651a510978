"""Deterministic port allocation per repository slot.

Each service kind owns a disjoint base range of MAX_SLOTS ports, so two
distinct slots never share a port.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from workspace_engine.models.repository import PortTriple, ServiceKind

MAX_SLOTS = 1000

EDITOR_BASE_PORT = 8080
TERMINAL_BASE_PORT = 10000
AGENT_BASE_PORT = 4000

BASE_PORTS: dict[ServiceKind, int] = {
    ServiceKind.EDITOR: EDITOR_BASE_PORT,
    ServiceKind.TERMINAL: TERMINAL_BASE_PORT,
    ServiceKind.AGENT: AGENT_BASE_PORT,
}

# Port names written by older records, mapped to the current service kinds
LEGACY_PORT_KEYS: dict[str, ServiceKind] = {
    "vscode": ServiceKind.EDITOR,
    "claude": ServiceKind.AGENT,
}


def _check_slot(slot: int) -> None:
    if isinstance(slot, bool) or not isinstance(slot, int):
        raise TypeError(f"Slot must be an integer, got {type(slot).__name__}")
    if not 0 <= slot < MAX_SLOTS:
        raise ValueError(f"Slot {slot} outside supported range [0, {MAX_SLOTS})")


def port_for(kind: ServiceKind, slot: int) -> int:
    _check_slot(slot)
    return BASE_PORTS[kind] + slot


def ports_for_slot(slot: int) -> PortTriple:
    """Derive the port triple for a repository slot.

    Args:
        slot: Ordinal of the repository within its sandbox

    Returns:
        Ports for the editor, terminal and agent-terminal daemons

    Raises:
        ValueError: If the slot is negative or beyond MAX_SLOTS
    """
    _check_slot(slot)
    return PortTriple(
        editor=EDITOR_BASE_PORT + slot,
        terminal=TERMINAL_BASE_PORT + slot,
        agent=AGENT_BASE_PORT + slot,
    )


def repair_ports(ports: Mapping[str, Any] | PortTriple | None, slot: int) -> PortTriple:
    """Fill in ports missing from a stored record without touching the rest.

    Records written before a service existed (or with legacy key names) keep
    every port they already have; only absent ones are recomputed from the
    slot.
    """
    if isinstance(ports, PortTriple):
        return ports

    current: dict[ServiceKind, int] = {}
    for key, value in (ports or {}).items():
        if value is None:
            continue
        kind = LEGACY_PORT_KEYS.get(key)
        if kind is None:
            try:
                kind = ServiceKind(key)
            except ValueError:
                continue
        # Current key names win over legacy ones
        if kind in current and key in LEGACY_PORT_KEYS:
            continue
        current[kind] = int(value)

    for kind in ServiceKind:
        if kind not in current:
            current[kind] = port_for(kind, slot)

    return PortTriple(
        editor=current[ServiceKind.EDITOR],
        terminal=current[ServiceKind.TERMINAL],
        agent=current[ServiceKind.AGENT],
    )


def infer_slot(ports: Mapping[str, Any] | None, fallback: int) -> int:
    """Recover the slot of a legacy record that never stored one."""
    for key, value in (ports or {}).items():
        kind = LEGACY_PORT_KEYS.get(key)
        if kind is None:
            try:
                kind = ServiceKind(key)
            except ValueError:
                continue
        if value is None:
            continue
        slot = int(value) - BASE_PORTS[kind]
        if 0 <= slot < MAX_SLOTS:
            return slot
    return fallback


def next_slot(used_slots: Iterable[int]) -> int:
    """Slot for a newly registered repository.

    Slots are never reused while a repository exists, so this is one past
    the highest slot in use rather than the first gap.
    """
    used = list(used_slots)
    slot = max(used) + 1 if used else 0
    _check_slot(slot)
    return slot
