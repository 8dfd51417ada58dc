"""Logical device layer - registry, devices and the manager facade."""

from onvif_fleet.devices.device import (
    Credentials,
    Device,
    DeviceClosedError,
    DeviceError,
)
from onvif_fleet.devices.manager import (
    DeviceManager,
    DispatchResult,
    DispatchStatus,
    ManagerHooks,
    Operation,
    UnknownOperationError,
    get_manager,
    init_manager,
    shutdown_manager,
)
from onvif_fleet.devices.probe import ProbeData
from onvif_fleet.devices.registry import (
    Admission,
    DeviceRegistry,
)

__all__ = [
    # Device
    "Device",
    "Credentials",
    "DeviceError",
    "DeviceClosedError",
    # Discovery records
    "ProbeData",
    # Registry
    "DeviceRegistry",
    "Admission",
    # Manager
    "DeviceManager",
    "ManagerHooks",
    "Operation",
    "DispatchResult",
    "DispatchStatus",
    "UnknownOperationError",
    "init_manager",
    "get_manager",
    "shutdown_manager",
]
