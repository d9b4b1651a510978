"""Workspace service managers."""

from workspace_engine.managers.health_monitor import HealthMonitor, HealthMonitorRegistry
from workspace_engine.managers.health_prober import HealthProber
from workspace_engine.managers.health_state import HealthPolicy, HealthState, HealthStateMachine
from workspace_engine.managers.ports import next_slot, ports_for_slot, repair_ports
from workspace_engine.managers.service_manager import LifecycleConfig, ServiceLifecycleManager

__all__ = [
    "HealthMonitor",
    "HealthMonitorRegistry",
    "HealthPolicy",
    "HealthProber",
    "HealthState",
    "HealthStateMachine",
    "LifecycleConfig",
    "ServiceLifecycleManager",
    "next_slot",
    "ports_for_slot",
    "repair_ports",
]
