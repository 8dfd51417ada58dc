"""Driver configuration and factory.

Supports switching between the real network drivers (onvif-zeep and
WSDiscovery) and digital twin drivers for testing and development without
cameras on the network.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from onvif_fleet.drivers.twin import (
    DEFAULT_FLEET,
    DigitalTwinDeviceDriver,
    DigitalTwinDiscoveryDriver,
    TwinDeviceSpec,
)
from onvif_fleet.drivers.types import (
    DEFAULT_PROBE_TIMEOUT_S,
    DEFAULT_PROBE_TYPES,
    DeviceDriver,
    DiscoveryDriver,
)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_USERNAME = "admin"


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # Real network drivers
    DIGITAL_TWIN = "digital_twin"  # Simulated fleet for testing


@dataclass
class DriverConfig:
    """Configuration for driver selection and network settings.

    Attributes:
        mode: HARDWARE for real devices, DIGITAL_TWIN for simulation.
        username: Credentials a new manager starts with.
        password: Credentials a new manager starts with.
        probe_timeout_s: Seconds each WS-Discovery cycle listens.
        probe_types: (namespace, local name) pairs to probe for.
        twin_fleet: Simulated devices in digital twin mode.
        twin_duplicate_records: Times each twin answers per probe cycle.
        twin_threaded: Deliver twin probe results on a background thread.
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN

    # Initial credentials
    username: str = DEFAULT_USERNAME
    password: str = ""

    # Discovery settings (hardware mode)
    probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S
    probe_types: tuple[tuple[str, str], ...] = DEFAULT_PROBE_TYPES

    # Digital twin settings
    twin_fleet: tuple[TwinDeviceSpec, ...] = DEFAULT_FLEET
    twin_duplicate_records: int = 1
    twin_threaded: bool = True

    def __post_init__(self) -> None:
        if self.probe_timeout_s <= 0:
            raise ValueError(
                f"probe_timeout_s must be positive, got {self.probe_timeout_s}"
            )
        if self.twin_duplicate_records < 1:
            raise ValueError(
                f"twin_duplicate_records must be >= 1, got {self.twin_duplicate_records}"
            )


class DriverFactory:
    """Factory for creating drivers based on configuration.

    Thread Safety:
        Not thread-safe. Configure the global factory once at startup,
        before the manager starts discovery threads.
    """

    def __init__(self, config: DriverConfig | None = None):
        """Initialize the factory.

        Args:
            config: Driver configuration. None uses DriverConfig() defaults
                (digital twin mode).

        Example:
            >>> factory = DriverFactory()
            >>> factory.create_device_driver()
            DigitalTwinDeviceDriver(devices=[...])
        """
        self.config = config or DriverConfig()

    def create_device_driver(self) -> DeviceDriver:
        """Create the driver that opens per-device connections.

        Returns:
            OnvifDeviceDriver in HARDWARE mode, DigitalTwinDeviceDriver over
            config.twin_fleet in DIGITAL_TWIN mode.
        """
        if self.config.mode == DriverMode.HARDWARE:
            from onvif_fleet.drivers.onvif import OnvifDeviceDriver

            return OnvifDeviceDriver()
        return DigitalTwinDeviceDriver(self.config.twin_fleet)

    def create_discovery_driver(self) -> DiscoveryDriver:
        """Create the driver that runs probe cycles.

        Returns:
            WSDiscoveryDriver in HARDWARE mode, DigitalTwinDiscoveryDriver
            replaying config.twin_fleet in DIGITAL_TWIN mode.
        """
        if self.config.mode == DriverMode.HARDWARE:
            from onvif_fleet.drivers.onvif import WSDiscoveryDriver

            return WSDiscoveryDriver(
                timeout=self.config.probe_timeout_s,
                types=self.config.probe_types,
            )
        return DigitalTwinDiscoveryDriver(
            self.config.twin_fleet,
            duplicate_records=self.config.twin_duplicate_records,
            threaded=self.config.twin_threaded,
        )


# =============================================================================
# Global Singletons
# =============================================================================
# Thread Safety: configure once at startup before spawning threads.

_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Get the global driver factory, creating a digital twin one on first use."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: DriverConfig) -> None:
    """Replace the global factory with one using config.

    Example:
        >>> configure(DriverConfig(mode=DriverMode.HARDWARE, probe_timeout_s=5))
    """
    global _factory
    _factory = DriverFactory(config)


def use_digital_twin(preserve_config: bool = False) -> None:
    """Switch to digital twin mode.

    Args:
        preserve_config: Keep credentials and other settings; otherwise
            reset everything to defaults.
    """
    if preserve_config:
        configure(replace(get_factory().config, mode=DriverMode.DIGITAL_TWIN))
    else:
        configure(DriverConfig(mode=DriverMode.DIGITAL_TWIN))


def use_hardware(preserve_config: bool = False) -> None:
    """Switch to the real network drivers.

    Args:
        preserve_config: Keep credentials and other settings; otherwise
            reset everything to defaults.
    """
    if preserve_config:
        configure(replace(get_factory().config, mode=DriverMode.HARDWARE))
    else:
        configure(DriverConfig(mode=DriverMode.HARDWARE))


def set_default_credentials(username: str, password: str) -> None:
    """Set the credentials the next manager is created with.

    Running managers are not affected; change their credentials with
    DeviceManager.set_credentials().
    """
    factory = get_factory()
    factory.config.username = username
    factory.config.password = password
