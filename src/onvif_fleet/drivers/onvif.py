"""Hardware ONVIF drivers.

Real-network counterparts of the digital twin drivers:

- OnvifDeviceDriver / OnvifDeviceInstance talk SOAP to a camera through
  onvif-zeep. The ONVIFCamera client is created on the first capability
  call because its constructor already queries the device.
- WSDiscoveryDriver runs WS-Discovery probe cycles with the WSDiscovery
  package on a background thread.

All SOAP faults, transport errors and missing services are raised as
DeviceDriverError.

Example:
    driver = OnvifDeviceDriver()
    camera = driver.open("http://192.168.1.64/onvif/device_service", "admin", "pw")
    print(camera.get_device_information())
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar
from urllib.parse import urlparse

from onvif import ONVIFCamera
from onvif.exceptions import ONVIFError
from wsdiscovery import QName
from wsdiscovery.discovery import ThreadedWSDiscovery
from zeep.exceptions import Fault, TransportError
from zeep.helpers import serialize_object

from onvif_fleet.drivers.types import (
    DEFAULT_PROBE_TIMEOUT_S,
    DEFAULT_PROBE_TYPES,
    DeviceDriverError,
    DiscoveryRecord,
    EndedCallback,
    RecordCallback,
)
from onvif_fleet.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "OnvifDeviceDriver",
    "OnvifDeviceInstance",
    "WSDiscoveryDriver",
]

_SCOPE_NAME = "onvif://www.onvif.org/name/"
_SCOPE_LOCATION = "onvif://www.onvif.org/location/"

_DRIVER_ERRORS = (ONVIFError, Fault, TransportError, OSError)

T = TypeVar("T")


def _plain(value: Any) -> Any:
    """Convert zeep objects into JSON-friendly builtins."""
    value = serialize_object(value)
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(v) for v in value]
    if value is None or isinstance(value, str | int | float | bool | datetime):
        return value
    return str(value)


def _split_service_address(service_address: str) -> tuple[str, int]:
    """Return (host, port) of a device service URL.

    Raises:
        DeviceDriverError: If the URL has no host.
    """
    parsed = urlparse(service_address)
    if not parsed.hostname:
        raise DeviceDriverError(f"Invalid device service address: {service_address!r}")
    default_port = 443 if parsed.scheme == "https" else 80
    return parsed.hostname, parsed.port or default_port


class OnvifDeviceDriver:
    """Opens OnvifDeviceInstance handles. No I/O happens in open()."""

    def __init__(self, wsdl_dir: str | None = None) -> None:
        """Initialize the driver.

        Args:
            wsdl_dir: WSDL directory passed to ONVIFCamera. None uses the
                files bundled with onvif-zeep.
        """
        self._wsdl_dir = wsdl_dir

    def __repr__(self) -> str:
        return f"OnvifDeviceDriver(wsdl_dir={self._wsdl_dir!r})"

    def open(
        self, service_address: str, username: str, password: str
    ) -> OnvifDeviceInstance:
        """Create a lazily-connecting handle for service_address."""
        return OnvifDeviceInstance(service_address, username, password, self._wsdl_dir)


class OnvifDeviceInstance:
    """Connection handle for one ONVIF device over onvif-zeep.

    Values returned by getters are zeep responses flattened with
    ``serialize_object``; they keep ONVIF field names (``token``,
    ``Name``, ``Resolution``...) so they can be edited and passed back
    to the matching setter.
    """

    def __init__(
        self,
        service_address: str,
        username: str,
        password: str,
        wsdl_dir: str | None = None,
    ) -> None:
        self.service_address = service_address
        self._username = username
        self._password = password
        self._wsdl_dir = wsdl_dir
        self._camera: ONVIFCamera | None = None
        self._services: dict[str, Any] = {}
        self._ptz_profile_token: str | None = None
        self._closed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"OnvifDeviceInstance(address={self.service_address!r}, "
            f"connected={self._camera is not None})"
        )

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def _connect(self) -> ONVIFCamera:
        if self._closed:
            raise DeviceDriverError(f"Connection to {self.service_address} is closed")
        if self._camera is None:
            host, port = _split_service_address(self.service_address)
            args: list[Any] = [host, port, self._username, self._password]
            if self._wsdl_dir is not None:
                args.append(self._wsdl_dir)
            logger.debug("Connecting to ONVIF device", host=host, port=port)
            self._camera = ONVIFCamera(*args)
        return self._camera

    def _service(self, name: str) -> Any:
        """Return a cached onvif-zeep service proxy (devicemgmt, media, ptz)."""
        with self._lock:
            camera = self._connect()
            if name not in self._services:
                factory = getattr(camera, f"create_{name}_service")
                self._services[name] = factory()
            return self._services[name]

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run fn, converting library errors into DeviceDriverError."""
        try:
            return fn()
        except DeviceDriverError:
            raise
        except _DRIVER_ERRORS as e:
            raise DeviceDriverError(f"{operation} failed: {e}") from e

    def _ptz_token(self) -> str:
        if self._ptz_profile_token is None:
            media = self._service("media")
            for profile in media.GetProfiles():
                if getattr(profile, "PTZConfiguration", None) is not None:
                    self._ptz_profile_token = profile.token
                    break
            else:
                raise DeviceDriverError("No media profile with a PTZ configuration")
        return self._ptz_profile_token

    # -------------------------------------------------------------------------
    # Device management service
    # -------------------------------------------------------------------------

    def get_capabilities(self) -> dict[str, Any]:
        return self._call(
            "GetCapabilities",
            lambda: _plain(self._service("devicemgmt").GetCapabilities({"Category": "All"})),
        )

    def get_device_information(self) -> dict[str, Any]:
        def fetch() -> dict[str, Any]:
            info = self._service("devicemgmt").GetDeviceInformation()
            return {
                "manufacturer": info.Manufacturer,
                "model": info.Model,
                "firmware_version": info.FirmwareVersion,
                "serial_number": info.SerialNumber,
                "hardware_id": info.HardwareId,
            }

        return self._call("GetDeviceInformation", fetch)

    def get_scopes(self) -> list[str]:
        return self._call(
            "GetScopes",
            lambda: [str(s.ScopeItem) for s in self._service("devicemgmt").GetScopes()],
        )

    def set_scopes(self, name: str, location: str) -> None:
        """Replace the configurable name and location scopes.

        Other configurable scopes are kept as they are.
        """

        def apply() -> None:
            mgmt = self._service("devicemgmt")
            kept = [
                str(s.ScopeItem)
                for s in mgmt.GetScopes()
                if str(getattr(s, "ScopeDef", "")) == "Configurable"
                and not str(s.ScopeItem).startswith((_SCOPE_NAME, _SCOPE_LOCATION))
            ]
            scopes = kept + [_SCOPE_NAME + name, _SCOPE_LOCATION + location]
            mgmt.SetScopes({"Scopes": scopes})

        self._call("SetScopes", apply)

    def get_network_interfaces(self) -> list[dict[str, Any]]:
        return self._call(
            "GetNetworkInterfaces",
            lambda: _plain(self._service("devicemgmt").GetNetworkInterfaces()),
        )

    def set_network_interfaces(self, interfaces: list[Mapping[str, Any]]) -> None:
        """Apply each entry as one SetNetworkInterfaces request.

        Entries carry ``InterfaceToken`` and ``NetworkInterface`` keys.
        """

        def apply() -> None:
            mgmt = self._service("devicemgmt")
            for entry in interfaces:
                mgmt.SetNetworkInterfaces(dict(entry))

        self._call("SetNetworkInterfaces", apply)

    def get_network_protocols(self) -> list[dict[str, Any]]:
        return self._call(
            "GetNetworkProtocols",
            lambda: _plain(self._service("devicemgmt").GetNetworkProtocols()),
        )

    def set_network_protocols(self, protocols: list[Mapping[str, Any]]) -> None:
        self._call(
            "SetNetworkProtocols",
            lambda: self._service("devicemgmt").SetNetworkProtocols(
                {"NetworkProtocols": [dict(p) for p in protocols]}
            ),
        )

    def get_users(self) -> list[dict[str, Any]]:
        return self._call(
            "GetUsers",
            lambda: [
                {"username": u.Username, "user_level": str(u.UserLevel)}
                for u in self._service("devicemgmt").GetUsers()
            ],
        )

    def get_system_date_and_time(self) -> datetime:
        def fetch() -> datetime:
            result = self._service("devicemgmt").GetSystemDateAndTime()
            utc = result.UTCDateTime
            if utc is None:
                raise DeviceDriverError("Device did not report a UTC time")
            return datetime(
                utc.Date.Year,
                utc.Date.Month,
                utc.Date.Day,
                utc.Time.Hour,
                utc.Time.Minute,
                utc.Time.Second,
                tzinfo=UTC,
            )

        return self._call("GetSystemDateAndTime", fetch)

    def set_system_date_and_time(self, when: datetime) -> None:
        """Switch the device clock to manual mode and set it to ``when``."""
        if when.tzinfo is not None:
            when = when.astimezone(UTC)

        def apply() -> None:
            mgmt = self._service("devicemgmt")
            request = mgmt.create_type("SetSystemDateAndTime")
            request.DateTimeType = "Manual"
            request.DaylightSavings = False
            request.TimeZone = {"TZ": "UTC"}
            request.UTCDateTime = {
                "Date": {"Year": when.year, "Month": when.month, "Day": when.day},
                "Time": {"Hour": when.hour, "Minute": when.minute, "Second": when.second},
            }
            mgmt.SetSystemDateAndTime(request)

        self._call("SetSystemDateAndTime", apply)

    def set_factory_default(self) -> None:
        self._call(
            "SetSystemFactoryDefault",
            lambda: self._service("devicemgmt").SetSystemFactoryDefault(
                {"FactoryDefault": "Soft"}
            ),
        )

    def reboot(self) -> str:
        return self._call(
            "SystemReboot", lambda: str(self._service("devicemgmt").SystemReboot())
        )

    # -------------------------------------------------------------------------
    # Media service
    # -------------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        return self._call("GetProfiles", lambda: _plain(self._service("media").GetProfiles()))

    def get_video_encoder_configurations(self) -> list[dict[str, Any]]:
        return self._call(
            "GetVideoEncoderConfigurations",
            lambda: _plain(self._service("media").GetVideoEncoderConfigurations()),
        )

    def get_video_encoder_configuration_options(self) -> dict[str, Any]:
        return self._call(
            "GetVideoEncoderConfigurationOptions",
            lambda: _plain(self._service("media").GetVideoEncoderConfigurationOptions()),
        )

    def set_video_encoder_configuration(self, config: Mapping[str, Any]) -> None:
        self._call(
            "SetVideoEncoderConfiguration",
            lambda: self._service("media").SetVideoEncoderConfiguration(
                {"Configuration": dict(config), "ForcePersistence": True}
            ),
        )

    def get_stream_uris(self) -> dict[str, str]:
        def fetch() -> dict[str, str]:
            media = self._service("media")
            uris: dict[str, str] = {}
            for profile in media.GetProfiles():
                result = media.GetStreamUri(
                    {
                        "StreamSetup": {
                            "Stream": "RTP-Unicast",
                            "Transport": {"Protocol": "RTSP"},
                        },
                        "ProfileToken": profile.token,
                    }
                )
                uris[str(profile.token)] = str(result.Uri)
            return uris

        return self._call("GetStreamUri", fetch)

    # -------------------------------------------------------------------------
    # PTZ service
    # -------------------------------------------------------------------------

    def get_ptz_configurations(self) -> list[dict[str, Any]]:
        return self._call(
            "GetConfigurations", lambda: _plain(self._service("ptz").GetConfigurations())
        )

    def continuous_move(self, x: float, y: float, z: float) -> None:
        self._call(
            "ContinuousMove",
            lambda: self._service("ptz").ContinuousMove(
                {
                    "ProfileToken": self._ptz_token(),
                    "Velocity": {"PanTilt": {"x": x, "y": y}, "Zoom": {"x": z}},
                }
            ),
        )

    def stop(self) -> None:
        self._call(
            "Stop",
            lambda: self._service("ptz").Stop(
                {"ProfileToken": self._ptz_token(), "PanTilt": True, "Zoom": True}
            ),
        )

    def close(self) -> None:
        """Drop the client and its service proxies. Idempotent."""
        with self._lock:
            self._closed = True
            self._services.clear()
            self._camera = None


def _qname_text(qname: Any) -> str:
    prefix = qname.getNamespacePrefix()
    local = qname.getLocalname()
    return f"{prefix}:{local}" if prefix else local


def _service_to_record(service: Any) -> DiscoveryRecord:
    """Flatten one WSDiscovery service into a raw discovery record."""
    xaddrs = [str(x) for x in service.getXAddrs() or []]
    host = urlparse(xaddrs[0]).hostname if xaddrs else None
    return DiscoveryRecord(
        ep_address=str(service.getEPR() or ""),
        types=" ".join(_qname_text(t) for t in service.getTypes() or []),
        device_ip=host or "",
        device_service_address=" ".join(xaddrs),
        scopes=" ".join(s.getValue() for s in service.getScopes() or []),
        metadata_version=str(service.getMetadataVersion()),
    )


class WSDiscoveryDriver:
    """WS-Discovery probe cycles for ONVIF NetworkVideoTransmitters.

    Each probe() starts a daemon thread that searches for ``timeout``
    seconds, then reports every responding service in order and finally
    calls on_ended. A failing search still ends the cycle.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_PROBE_TIMEOUT_S,
        types: Sequence[tuple[str, str]] = DEFAULT_PROBE_TYPES,
    ) -> None:
        """Initialize the driver.

        Args:
            timeout: Seconds each cycle listens for probe matches.
            types: (namespace, local name) pairs to probe for. Empty
                probes for every WS-Discovery target service.

        Raises:
            ValueError: If timeout is not positive.
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.timeout = timeout
        self.types = tuple(types)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._cycles = 0

    def __repr__(self) -> str:
        return f"WSDiscoveryDriver(timeout={self.timeout}, types={len(self.types)})"

    def _search(self) -> list[Any]:
        qnames = [QName(ns, local) for ns, local in self.types] or None
        wsd = ThreadedWSDiscovery()
        wsd.start()
        try:
            return list(wsd.searchServices(types=qnames, timeout=self.timeout))
        finally:
            wsd.stop()

    def _run_cycle(
        self, cycle: int, on_record: RecordCallback, on_ended: EndedCallback
    ) -> None:
        try:
            services = self._search()
            logger.info(
                "WS-Discovery search finished", cycle=cycle, responses=len(services)
            )
            for service in services:
                if self._stop.is_set():
                    return
                on_record(_service_to_record(service))
        except Exception as e:  # noqa: BLE001
            logger.error(
                "WS-Discovery search failed", cycle=cycle, error=str(e), exc_info=True
            )
        if not self._stop.is_set():
            on_ended()

    def probe(self, on_record: RecordCallback, on_ended: EndedCallback) -> None:
        """Start a probe cycle on a background thread and return."""
        with self._lock:
            self._cycles += 1
            cycle = self._cycles
            self._stop.clear()
            self._threads = [t for t in self._threads if t.is_alive()]
            thread = threading.Thread(
                target=self._run_cycle,
                args=(cycle, on_record, on_ended),
                daemon=True,
                name=f"ws-discovery-{cycle}",
            )
            self._threads.append(thread)
        thread.start()

    def close(self) -> None:
        """Abandon in-flight cycles and wait for their threads."""
        self._stop.set()
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(self.timeout + 1.0)
