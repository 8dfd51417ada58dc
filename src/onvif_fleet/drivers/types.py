"""Driver type definitions and protocols.

This module holds the contracts between the logical device layer and the
drivers that actually talk to the network. Keeping them here avoids
circular imports between the digital twin and the hardware adapters.

Types defined here:
- DiscoveryRecord: Raw key/value record emitted once per probe response
- DeviceInstance: Protocol for an opened connection to one endpoint
- DeviceDriver: Protocol for opening DeviceInstances
- DiscoveryDriver: Protocol for running probe cycles
- DeviceDriverError: Raised by drivers when a capability call fails

Example:
    from onvif_fleet.drivers.types import DeviceDriver, DiscoveryDriver

    class MyDiscoveryDriver:
        def probe(self, on_record, on_ended) -> None:
            ...
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Protocol, TypedDict, runtime_checkable

#: Keys a discoverer uses in each raw record.
RECORD_KEYS = (
    "ep_address",
    "types",
    "device_ip",
    "device_service_address",
    "scopes",
    "metadata_version",
)

#: Namespace of the ONVIF NetworkVideoTransmitter probe type.
NVT_NAMESPACE = "http://www.onvif.org/ver10/network/wsdl"

#: Seconds a WS-Discovery cycle listens for probe matches.
DEFAULT_PROBE_TIMEOUT_S = 3.0

#: (namespace, local name) pairs probed for by default.
DEFAULT_PROBE_TYPES: tuple[tuple[str, str], ...] = (
    (NVT_NAMESPACE, "NetworkVideoTransmitter"),
)

#: Callback receiving one raw discovery record.
RecordCallback = Callable[[Mapping[str, Any]], None]

#: Callback signalling the end of a probe cycle.
EndedCallback = Callable[[], None]


class DiscoveryRecord(TypedDict, total=False):
    """Raw discovery record as emitted by a discoverer.

    Every key is optional; a record without a usable ``ep_address`` is
    malformed and dropped by the manager.

    Attributes:
        ep_address: WS-Addressing endpoint reference (stable device id).
        types: Space-separated type QNames (e.g. "dn:NetworkVideoTransmitter").
        device_ip: IP address the response came from.
        device_service_address: Space-separated device service XAddrs.
        scopes: Space-separated scope URIs.
        metadata_version: Metadata version announced by the device.
    """

    ep_address: str
    types: str
    device_ip: str
    device_service_address: str
    scopes: str
    metadata_version: str


class DeviceDriverError(Exception):
    """Raised when a driver cannot complete a capability call.

    Covers transport errors, SOAP faults and unsupported capabilities.
    The logical Device turns it into a failure result; it never reaches the
    manager's callers as an exception.
    """

    pass


@runtime_checkable
class DeviceInstance(Protocol):  # pragma: no cover
    """Protocol for an opened connection to one ONVIF endpoint.

    Implemented by OnvifDeviceInstance (onvif-zeep) and
    DigitalTwinDeviceInstance (simulation). Every method raises
    DeviceDriverError on failure; return values are plain JSON-friendly
    Python data so the logical layer can cache them as-is.
    """

    def get_capabilities(self) -> dict[str, Any]:
        """Get the service capabilities (device, media, ptz, ...)."""
        ...

    def get_device_information(self) -> dict[str, Any]:
        """Get manufacturer, model, firmware version, serial number, hardware id."""
        ...

    def get_scopes(self) -> list[str]:
        """Get configured scope URIs."""
        ...

    def set_scopes(self, name: str, location: str) -> None:
        """Replace the ONVIF name and location scopes."""
        ...

    def get_video_encoder_configurations(self) -> list[dict[str, Any]]:
        """Get video encoder configurations."""
        ...

    def get_video_encoder_configuration_options(self) -> dict[str, Any]:
        """Get the ranges/choices accepted by set_video_encoder_configuration."""
        ...

    def set_video_encoder_configuration(self, config: Mapping[str, Any]) -> None:
        """Apply a video encoder configuration (matched by its token)."""
        ...

    def get_profiles(self) -> list[dict[str, Any]]:
        """Get media profiles."""
        ...

    def get_stream_uris(self) -> dict[str, str]:
        """Get RTSP stream URIs keyed by profile token."""
        ...

    def get_network_interfaces(self) -> list[dict[str, Any]]:
        """Get network interface settings."""
        ...

    def set_network_interfaces(self, interfaces: list[Mapping[str, Any]]) -> None:
        """Apply network interface settings."""
        ...

    def get_network_protocols(self) -> list[dict[str, Any]]:
        """Get enabled network protocols (HTTP, HTTPS, RTSP) and ports."""
        ...

    def set_network_protocols(self, protocols: list[Mapping[str, Any]]) -> None:
        """Apply network protocol settings."""
        ...

    def get_users(self) -> list[dict[str, Any]]:
        """Get device user accounts (without passwords)."""
        ...

    def get_system_date_and_time(self) -> datetime:
        """Get the device clock as an aware UTC datetime."""
        ...

    def set_system_date_and_time(self, when: datetime) -> None:
        """Set the device clock (manual mode)."""
        ...

    def get_ptz_configurations(self) -> list[dict[str, Any]]:
        """Get PTZ configurations."""
        ...

    def set_factory_default(self) -> None:
        """Reset the device to factory defaults."""
        ...

    def reboot(self) -> str:
        """Reboot the device, returning the device's reboot message."""
        ...

    def continuous_move(self, x: float, y: float, z: float) -> None:
        """Start continuous pan (x), tilt (y) and zoom (z) movement."""
        ...

    def stop(self) -> None:
        """Stop any pan/tilt/zoom movement."""
        ...

    def close(self) -> None:
        """Release transport resources. Idempotent."""
        ...


@runtime_checkable
class DeviceDriver(Protocol):  # pragma: no cover
    """Protocol for drivers that open DeviceInstances.

    ``open`` must not block on network I/O: hardware drivers connect lazily
    on the first capability call. The registry invokes device factories
    under its exclusive lock.
    """

    def open(
        self, service_address: str, username: str, password: str
    ) -> DeviceInstance:
        """Open a connection handle to the device service at service_address."""
        ...


@runtime_checkable
class DiscoveryDriver(Protocol):  # pragma: no cover
    """Protocol for drivers that run probe cycles.

    ``probe`` returns immediately. Records and the terminal end-of-cycle
    signal are delivered later, on the driver's own thread, strictly
    sequentially within one cycle: every ``on_record`` call of a cycle
    completes before that cycle's ``on_ended`` is invoked.
    """

    def probe(self, on_record: RecordCallback, on_ended: EndedCallback) -> None:
        """Start one probe cycle delivering results to the given callbacks."""
        ...

    def close(self) -> None:
        """Stop any in-flight cycle and release sockets/threads."""
        ...
