"""Drivers for ONVIF device access and discovery.

Supports two modes:
- HARDWARE: Real network drivers (onvif-zeep, WSDiscovery)
- DIGITAL_TWIN: Simulated fleet for testing without cameras

Use drivers.config to switch modes:
    from onvif_fleet.drivers import config
    config.use_digital_twin()  # or config.use_hardware()

The hardware drivers live in onvif_fleet.drivers.onvif and are imported
on demand by the factory.
"""

from onvif_fleet.drivers import config, twin, types
from onvif_fleet.drivers.config import (
    DriverConfig,
    DriverFactory,
    DriverMode,
    configure,
    get_factory,
    set_default_credentials,
    use_digital_twin,
    use_hardware,
)
from onvif_fleet.drivers.types import (
    DeviceDriver,
    DeviceDriverError,
    DeviceInstance,
    DiscoveryDriver,
    DiscoveryRecord,
)

__all__ = [
    # Submodules
    "config",
    "twin",
    "types",
    # Configuration
    "DriverMode",
    "DriverConfig",
    "DriverFactory",
    "get_factory",
    "configure",
    "use_digital_twin",
    "use_hardware",
    "set_default_credentials",
    # Protocols
    "DeviceDriver",
    "DeviceInstance",
    "DiscoveryDriver",
    "DiscoveryRecord",
    "DeviceDriverError",
]
