"""Digital Twin ONVIF Drivers - Simulated Fleet for Testing.

Provides a simulated camera fleet for development and testing without a
network full of cameras. Follows the DeviceDriver and DiscoveryDriver
protocols for drop-in replacement of the hardware adapters.

Classes:
    TwinDeviceSpec: Static description of one simulated device
    DigitalTwinDeviceDriver: Opens simulated device connections
    DigitalTwinDeviceInstance: In-memory device with mutable capability state
    DigitalTwinDiscoveryDriver: Replays the fleet as discovery records

Constants:
    DEFAULT_FLEET: Two simulated cameras (fixed dome and PTZ)

Example:
    from onvif_fleet.drivers.twin import (
        DigitalTwinDeviceDriver,
        DigitalTwinDiscoveryDriver,
    )

    discovery = DigitalTwinDiscoveryDriver(threaded=False)
    discovery.probe(on_record=print, on_ended=lambda: print("done"))

    driver = DigitalTwinDeviceDriver()
    camera = driver.open("http://192.168.1.64/onvif/device_service", "admin", "")
    print(camera.get_device_information())
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, final

from onvif_fleet.drivers.types import (
    DeviceDriverError,
    DiscoveryRecord,
    EndedCallback,
    RecordCallback,
)
from onvif_fleet.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_FLEET",
    "DigitalTwinDeviceDriver",
    "DigitalTwinDeviceInstance",
    "DigitalTwinDiscoveryDriver",
    "TwinDeviceSpec",
]

_NVT_TYPES = "dn:NetworkVideoTransmitter tds:Device"

# Seconds the background probe thread is given to finish on close()
_JOIN_TIMEOUT_S = 2.0


@dataclass(frozen=True)
class TwinDeviceSpec:
    """Static description of one simulated ONVIF device.

    Attributes:
        endpoint_address: WS-Addressing endpoint reference (registry key).
        service_address: Device service URL the twin answers on.
        device_ip: IP announced in discovery records.
        name: Value of the ONVIF name scope.
        location: Value of the ONVIF location scope.
        manufacturer: Reported by get_device_information().
        model: Reported by get_device_information().
        firmware_version: Reported by get_device_information().
        serial_number: Reported by get_device_information().
        metadata_version: Announced metadata version.
        has_ptz: Whether PTZ calls are supported.
        username: Accepted user name; None accepts any credentials.
        password: Accepted password (ignored when username is None).
        failing_operations: DeviceInstance method names that always raise
            DeviceDriverError, for exercising failure paths.
    """

    endpoint_address: str
    service_address: str
    device_ip: str
    name: str = "Camera"
    location: str = "Lab"
    manufacturer: str = "Twin"
    model: str = "TW-100"
    firmware_version: str = "1.0.0"
    serial_number: str = "0000"
    metadata_version: str = "1"
    has_ptz: bool = False
    username: str | None = None
    password: str = ""
    failing_operations: frozenset[str] = field(default_factory=frozenset)

    def to_record(self) -> DiscoveryRecord:
        """Build the raw discovery record this device would answer a probe with."""
        scopes = " ".join(
            [
                "onvif://www.onvif.org/type/video_encoder",
                f"onvif://www.onvif.org/name/{self.name.replace(' ', '_')}",
                f"onvif://www.onvif.org/location/{self.location.replace(' ', '_')}",
                f"onvif://www.onvif.org/hardware/{self.model}",
            ]
        )
        return DiscoveryRecord(
            ep_address=self.endpoint_address,
            types=_NVT_TYPES,
            device_ip=self.device_ip,
            device_service_address=self.service_address,
            scopes=scopes,
            metadata_version=self.metadata_version,
        )


# Default simulated fleet: one fixed dome, one PTZ camera.
DEFAULT_FLEET: tuple[TwinDeviceSpec, ...] = (
    TwinDeviceSpec(
        endpoint_address="urn:uuid:5f5a69c2-e0ae-504f-829b-00fe1a5f6401",
        service_address="http://192.168.1.64/onvif/device_service",
        device_ip="192.168.1.64",
        name="Front Door",
        location="Entrance",
        manufacturer="Twin",
        model="TW-D200",
        firmware_version="5.6.3",
        serial_number="D200-0001",
    ),
    TwinDeviceSpec(
        endpoint_address="urn:uuid:5f5a69c2-e0ae-504f-829b-00fe1a5f6402",
        service_address="http://192.168.1.65/onvif/device_service",
        device_ip="192.168.1.65",
        name="Parking PTZ",
        location="Parking",
        manufacturer="Twin",
        model="TW-P400",
        firmware_version="2.1.0",
        serial_number="P400-0002",
        has_ptz=True,
    ),
)


@final
class DigitalTwinDeviceDriver:
    """Digital twin device driver.

    Opens DigitalTwinDeviceInstance objects for the service addresses of
    its fleet. ``open`` never fails: an unknown address or bad credentials
    surface on the first call, the way a real device connection would.

    Example:
        driver = DigitalTwinDeviceDriver()
        instance = driver.open(DEFAULT_FLEET[0].service_address, "admin", "x")
        instance.reboot()
    """

    def __init__(self, fleet: Iterable[TwinDeviceSpec] | None = None) -> None:
        """Initialize the driver.

        Args:
            fleet: Simulated devices. Defaults to DEFAULT_FLEET.
        """
        specs = tuple(fleet) if fleet is not None else DEFAULT_FLEET
        self._specs: dict[str, TwinDeviceSpec] = {s.service_address: s for s in specs}
        self.opened: list[DigitalTwinDeviceInstance] = []

    def __repr__(self) -> str:
        """Return a short description listing the simulated service addresses."""
        return f"DigitalTwinDeviceDriver(devices={list(self._specs)})"

    def open(
        self, service_address: str, username: str, password: str
    ) -> DigitalTwinDeviceInstance:
        """Open a simulated connection handle.

        Args:
            service_address: Device service URL.
            username: User name presented to the device.
            password: Password presented to the device.

        Returns:
            DigitalTwinDeviceInstance bound to the matching spec, or to no
            spec at all when nothing answers on that address.
        """
        instance = DigitalTwinDeviceInstance(
            self._specs.get(service_address), service_address, username, password
        )
        self.opened.append(instance)
        return instance


class DigitalTwinDeviceInstance:
    """In-memory ONVIF device.

    Holds mutable capability state so set operations are observable by
    later get operations. Every call first checks reachability, credentials
    and the spec's failing_operations.
    """

    def __init__(
        self,
        spec: TwinDeviceSpec | None,
        service_address: str,
        username: str,
        password: str,
    ) -> None:
        """Create the simulated device state from a spec.

        Args:
            spec: Device description, or None for an unreachable address.
            service_address: Address the caller tried to reach.
            username: Presented user name.
            password: Presented password.
        """
        self.spec = spec
        self.service_address = service_address
        self.username = username
        self.password = password
        self.closed = False
        self.reboot_count = 0
        self.factory_reset_count = 0
        self.ptz_velocity: tuple[float, float, float] = (0.0, 0.0, 0.0)
        self.calls: list[str] = []

        self._clock_offset = timedelta(0)
        self._lock = threading.Lock()

        if spec is None:
            self._name = ""
            self._location = ""
            self._encoders: list[dict[str, Any]] = []
            self._interfaces: list[dict[str, Any]] = []
            self._protocols: list[dict[str, Any]] = []
            return

        self._name = spec.name
        self._location = spec.location
        self._encoders = [
            {
                "token": "VideoEncoder_1",
                "name": "MainStream",
                "encoding": "H264",
                "resolution": {"width": 1920, "height": 1080},
                "quality": 5.0,
                "frame_rate_limit": 25,
                "bitrate_limit": 4096,
                "gov_length": 50,
            },
            {
                "token": "VideoEncoder_2",
                "name": "SubStream",
                "encoding": "H264",
                "resolution": {"width": 640, "height": 360},
                "quality": 3.0,
                "frame_rate_limit": 15,
                "bitrate_limit": 512,
                "gov_length": 30,
            },
        ]
        self._interfaces = [
            {
                "token": "eth0",
                "enabled": True,
                "hw_address": "00:11:22:33:44:" + spec.device_ip.rsplit(".", 1)[-1][-2:].zfill(2),
                "ipv4": {"dhcp": False, "address": spec.device_ip, "prefix_length": 24},
            }
        ]
        self._protocols = [
            {"name": "HTTP", "enabled": True, "port": [80]},
            {"name": "HTTPS", "enabled": False, "port": [443]},
            {"name": "RTSP", "enabled": True, "port": [554]},
        ]

    def __repr__(self) -> str:
        """Return a short description of the simulated endpoint."""
        return (
            f"DigitalTwinDeviceInstance(address={self.service_address!r}, "
            f"closed={self.closed})"
        )

    def _check(self, operation: str) -> TwinDeviceSpec:
        """Validate that the call may proceed and record it.

        Raises:
            DeviceDriverError: Closed handle, unreachable address, bad
                credentials, or an operation configured to fail.
        """
        self.calls.append(operation)
        if self.closed:
            raise DeviceDriverError(f"Connection to {self.service_address} is closed")
        if self.spec is None:
            raise DeviceDriverError(f"No device answering at {self.service_address}")
        if self.spec.username is not None and (
            self.username != self.spec.username or self.password != self.spec.password
        ):
            raise DeviceDriverError("Sender not authorized")
        if operation in self.spec.failing_operations:
            raise DeviceDriverError(f"Simulated failure in {operation}")
        return self.spec

    def _check_ptz(self, operation: str) -> None:
        spec = self._check(operation)
        if not spec.has_ptz:
            raise DeviceDriverError("PTZ service not supported")

    def get_capabilities(self) -> dict[str, Any]:
        """Return the simulated service capabilities."""
        spec = self._check("get_capabilities")
        base = self.service_address.rsplit("/", 1)[0]
        caps: dict[str, Any] = {
            "device": {"xaddr": self.service_address},
            "media": {"xaddr": f"{base}/media_service", "rtp_rtsp_tcp": True},
            "events": {"xaddr": f"{base}/event_service"},
            "ptz": None,
        }
        if spec.has_ptz:
            caps["ptz"] = {"xaddr": f"{base}/ptz_service"}
        return caps

    def get_device_information(self) -> dict[str, Any]:
        """Return manufacturer/model/firmware/serial from the spec."""
        spec = self._check("get_device_information")
        return {
            "manufacturer": spec.manufacturer,
            "model": spec.model,
            "firmware_version": spec.firmware_version,
            "serial_number": spec.serial_number,
            "hardware_id": spec.model,
        }

    def get_scopes(self) -> list[str]:
        """Return the current scope URIs, name and location included."""
        spec = self._check("get_scopes")
        with self._lock:
            return [
                "onvif://www.onvif.org/type/video_encoder",
                f"onvif://www.onvif.org/name/{self._name}",
                f"onvif://www.onvif.org/location/{self._location}",
                f"onvif://www.onvif.org/hardware/{spec.model}",
            ]

    def set_scopes(self, name: str, location: str) -> None:
        """Replace the name and location scopes."""
        self._check("set_scopes")
        with self._lock:
            self._name = name
            self._location = location

    def get_video_encoder_configurations(self) -> list[dict[str, Any]]:
        """Return copies of the encoder configurations."""
        self._check("get_video_encoder_configurations")
        with self._lock:
            return copy.deepcopy(self._encoders)

    def get_video_encoder_configuration_options(self) -> dict[str, Any]:
        """Return the accepted encoder ranges."""
        self._check("get_video_encoder_configuration_options")
        return {
            "quality_range": {"min": 1.0, "max": 10.0},
            "encodings": ["H264", "JPEG"],
            "resolutions": [
                {"width": 1920, "height": 1080},
                {"width": 1280, "height": 720},
                {"width": 640, "height": 360},
            ],
            "frame_rate_range": {"min": 1, "max": 30},
            "gov_length_range": {"min": 1, "max": 250},
        }

    def set_video_encoder_configuration(self, config: Mapping[str, Any]) -> None:
        """Merge config into the encoder configuration with the same token.

        Raises:
            DeviceDriverError: Missing or unknown token.
        """
        self._check("set_video_encoder_configuration")
        token = config.get("token")
        with self._lock:
            for encoder in self._encoders:
                if encoder["token"] == token:
                    encoder.update(copy.deepcopy(dict(config)))
                    return
        raise DeviceDriverError(f"No video encoder configuration {token!r}")

    def get_profiles(self) -> list[dict[str, Any]]:
        """Return one media profile per encoder configuration."""
        spec = self._check("get_profiles")
        with self._lock:
            encoders = copy.deepcopy(self._encoders)
        profiles = []
        for index, encoder in enumerate(encoders, start=1):
            profiles.append(
                {
                    "token": f"Profile_{index}",
                    "name": encoder["name"],
                    "video_encoder": encoder,
                    "ptz": {"token": "PTZ_1"} if spec.has_ptz else None,
                }
            )
        return profiles

    def get_stream_uris(self) -> dict[str, str]:
        """Return RTSP URIs keyed by profile token."""
        spec = self._check("get_stream_uris")
        with self._lock:
            count = len(self._encoders)
        return {
            f"Profile_{index}": f"rtsp://{spec.device_ip}:554/Streaming/Channels/{index}01"
            for index in range(1, count + 1)
        }

    def get_network_interfaces(self) -> list[dict[str, Any]]:
        """Return copies of the interface settings."""
        self._check("get_network_interfaces")
        with self._lock:
            return copy.deepcopy(self._interfaces)

    def set_network_interfaces(self, interfaces: list[Mapping[str, Any]]) -> None:
        """Replace the interface settings."""
        self._check("set_network_interfaces")
        with self._lock:
            self._interfaces = [copy.deepcopy(dict(i)) for i in interfaces]

    def get_network_protocols(self) -> list[dict[str, Any]]:
        """Return copies of the protocol settings."""
        self._check("get_network_protocols")
        with self._lock:
            return copy.deepcopy(self._protocols)

    def set_network_protocols(self, protocols: list[Mapping[str, Any]]) -> None:
        """Replace the protocol settings."""
        self._check("set_network_protocols")
        with self._lock:
            self._protocols = [copy.deepcopy(dict(p)) for p in protocols]

    def get_users(self) -> list[dict[str, Any]]:
        """Return the simulated accounts."""
        spec = self._check("get_users")
        users = [{"username": "admin", "user_level": "Administrator"}]
        if spec.username and spec.username != "admin":
            users.append({"username": spec.username, "user_level": "Operator"})
        return users

    def get_system_date_and_time(self) -> datetime:
        """Return the simulated device clock (UTC)."""
        self._check("get_system_date_and_time")
        with self._lock:
            return datetime.now(UTC) + self._clock_offset

    def set_system_date_and_time(self, when: datetime) -> None:
        """Set the simulated clock. Naive datetimes are taken as UTC."""
        self._check("set_system_date_and_time")
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        with self._lock:
            self._clock_offset = when - datetime.now(UTC)

    def get_ptz_configurations(self) -> list[dict[str, Any]]:
        """Return the PTZ configuration of PTZ-capable twins."""
        self._check_ptz("get_ptz_configurations")
        return [
            {
                "token": "PTZ_1",
                "name": "PTZConfig",
                "node_token": "PTZNode_1",
                "default_ptz_timeout": "PT5S",
                "pan_tilt_limits": {"x": [-1.0, 1.0], "y": [-1.0, 1.0]},
                "zoom_limits": {"x": [0.0, 1.0]},
            }
        ]

    def set_factory_default(self) -> None:
        """Restore scopes, encoders and clock to their initial state."""
        spec = self._check("set_factory_default")
        fresh = DigitalTwinDeviceInstance(
            replace(spec), self.service_address, self.username, self.password
        )
        with self._lock:
            self._name = fresh._name
            self._location = fresh._location
            self._encoders = fresh._encoders
            self._interfaces = fresh._interfaces
            self._protocols = fresh._protocols
            self._clock_offset = timedelta(0)
            self.factory_reset_count += 1

    def reboot(self) -> str:
        """Count the reboot and return the device message."""
        self._check("reboot")
        with self._lock:
            self.reboot_count += 1
            self.ptz_velocity = (0.0, 0.0, 0.0)
        return "Rebooting in 30 seconds"

    def continuous_move(self, x: float, y: float, z: float) -> None:
        """Start simulated movement. Velocities must lie in [-1, 1]."""
        self._check_ptz("continuous_move")
        for axis, value in (("x", x), ("y", y), ("z", z)):
            if not -1.0 <= value <= 1.0:
                raise DeviceDriverError(f"Velocity {axis}={value} out of range [-1, 1]")
        with self._lock:
            self.ptz_velocity = (x, y, z)

    def stop(self) -> None:
        """Stop simulated movement."""
        self._check_ptz("stop")
        with self._lock:
            self.ptz_velocity = (0.0, 0.0, 0.0)

    def close(self) -> None:
        """Mark the handle closed. Idempotent."""
        self.closed = True


class DigitalTwinDiscoveryDriver:
    """Replays a simulated fleet as discovery probe cycles.

    Each probe delivers one record per device (optionally repeated to mimic
    duplicate probe matches), then any extra raw records, then the end
    signal. Delivery is sequential within a cycle. With ``threaded=True``
    (default) the cycle runs on a background thread and probe() returns
    immediately; with ``threaded=False`` the cycle runs inline, which keeps
    tests deterministic.

    Example:
        discovery = DigitalTwinDiscoveryDriver(duplicate_records=2)
        discovery.probe(on_record=handle, on_ended=finish)
        discovery.wait_idle()
    """

    def __init__(
        self,
        fleet: Iterable[TwinDeviceSpec] | None = None,
        *,
        duplicate_records: int = 1,
        threaded: bool = True,
        record_delay_s: float = 0.0,
        extra_records: Sequence[Mapping[str, Any]] = (),
    ) -> None:
        """Initialize the simulated discoverer.

        Args:
            fleet: Devices that answer probes. Defaults to DEFAULT_FLEET.
            duplicate_records: How many times each device answers per cycle.
            threaded: Deliver on a background thread (True) or inline.
            record_delay_s: Pause before each record, to simulate network
                latency in threaded mode.
            extra_records: Raw records appended to every cycle (e.g.
                malformed ones).

        Raises:
            ValueError: If duplicate_records < 1 or record_delay_s < 0.
        """
        if duplicate_records < 1:
            raise ValueError(f"duplicate_records must be >= 1, got {duplicate_records}")
        if record_delay_s < 0:
            raise ValueError(f"record_delay_s must be >= 0, got {record_delay_s}")

        self.fleet: list[TwinDeviceSpec] = (
            list(fleet) if fleet is not None else list(DEFAULT_FLEET)
        )
        self.duplicate_records = duplicate_records
        self.threaded = threaded
        self.record_delay_s = record_delay_s
        self.extra_records = list(extra_records)
        self.probe_count = 0

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        """Return a short description of the simulated discoverer."""
        return (
            f"DigitalTwinDiscoveryDriver(devices={len(self.fleet)}, "
            f"threaded={self.threaded})"
        )

    def _records(self) -> list[Mapping[str, Any]]:
        records: list[Mapping[str, Any]] = []
        for spec in self.fleet:
            records.extend(spec.to_record() for _ in range(self.duplicate_records))
        records.extend(self.extra_records)
        return records

    def _run_cycle(
        self,
        cycle: int,
        records: list[Mapping[str, Any]],
        on_record: RecordCallback,
        on_ended: EndedCallback,
    ) -> None:
        for record in records:
            if self._stop.is_set():
                logger.debug("Twin probe cycle stopped", cycle=cycle)
                return
            if self.record_delay_s and self._stop.wait(self.record_delay_s):
                return
            on_record(record)
        on_ended()
        logger.debug("Twin probe cycle finished", cycle=cycle, records=len(records))

    def probe(self, on_record: RecordCallback, on_ended: EndedCallback) -> None:
        """Start a simulated probe cycle.

        Args:
            on_record: Called once per raw record.
            on_ended: Called once after the last record.
        """
        with self._lock:
            self.probe_count += 1
            cycle = self.probe_count
            self._stop.clear()
            self._threads = [t for t in self._threads if t.is_alive()]

        records = self._records()
        logger.debug("Twin probe started", cycle=cycle, records=len(records))

        if not self.threaded:
            self._run_cycle(cycle, records, on_record, on_ended)
            return

        thread = threading.Thread(
            target=self._run_cycle,
            args=(cycle, records, on_record, on_ended),
            daemon=True,
            name=f"twin-probe-{cycle}",
        )
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def wait_idle(self, timeout: float = _JOIN_TIMEOUT_S) -> bool:
        """Block until every background cycle has finished.

        Returns:
            True if all cycles finished within timeout.
        """
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
        return not any(t.is_alive() for t in threads)

    def close(self) -> None:
        """Stop in-flight cycles and join their threads."""
        self._stop.set()
        self.wait_idle()
