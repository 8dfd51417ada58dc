"""Logical ONVIF device with driver injection.

A Device wraps one discovered endpoint. It is created by the registry with
the manager's current credentials and an injected DeviceDriver (onvif-zeep
or digital twin), opens its driver connection on first use, and keeps the
results of refresh calls as cached capability state.

Every capability operation reports success as a boolean (or a typed value
for ``device_date_and_time``). Driver failures are logged and turned into
``False``/``None``; they never escape as exceptions, so one failing device
cannot disturb the registry or other devices.

Example:
    from onvif_fleet.devices.device import Credentials, Device
    from onvif_fleet.devices.probe import ProbeData
    from onvif_fleet.drivers.twin import DigitalTwinDeviceDriver

    probe = ProbeData.from_record(record)
    device = Device(probe, Credentials("admin", ""), DigitalTwinDeviceDriver())
    if device.refresh_device_information():
        print(device.information["model"])
    device.close()
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from onvif_fleet.drivers.types import DeviceDriverError
from onvif_fleet.observability import get_logger

if TYPE_CHECKING:
    from onvif_fleet.devices.probe import ProbeData
    from onvif_fleet.drivers.types import DeviceDriver, DeviceInstance

logger = get_logger(__name__)

T = TypeVar("T")


# --- Exceptions ---


class DeviceError(Exception):
    """Base exception for logical device operations."""

    pass


class DeviceClosedError(DeviceError):
    """Raised internally when an operation targets a closed device."""

    pass


# --- Credentials ---


@dataclass(frozen=True, slots=True)
class Credentials:
    """Username/password pair a Device authenticates with.

    Immutable: a credential change replaces the whole pair, and devices
    built with the old pair are discarded rather than updated.
    """

    username: str = ""
    password: str = field(default="", repr=False)

    def __repr__(self) -> str:
        masked = "***" if self.password else ""
        return f"Credentials(username={self.username!r}, password={masked!r})"


# --- Device ---


class Device:
    """Logical ONVIF device bound to one endpoint address.

    Construction never touches the network; the driver connection is
    opened on the first capability operation. Safe to call from several
    threads: cached state is replaced wholesale under a short lock.

    Attributes:
        probe: Discovery snapshot the device was admitted from
        credentials: Credentials copied from the manager at creation
        endpoint_address: Registry key (probe.endpoint_address)
        service_address: Device service URL (probe.device_service_address)
        is_closed: Whether close() has been called
    """

    def __init__(
        self,
        probe: ProbeData,
        credentials: Credentials,
        driver: DeviceDriver,
    ) -> None:
        """Create a device without connecting to it.

        Args:
            probe: Normalized discovery snapshot. Its endpoint address is
                the device identity.
            credentials: Credentials to open the connection with.
            driver: Driver used to open the connection lazily.
        """
        self._probe = probe
        self._credentials = credentials
        self._driver = driver
        self._lock = threading.Lock()
        self._instance: DeviceInstance | None = None
        self._closed = False

        self._capabilities: dict[str, Any] | None = None
        self._information: dict[str, Any] | None = None
        self._scopes: list[str] | None = None
        self._video_configs: list[dict[str, Any]] | None = None
        self._video_config_options: dict[str, Any] | None = None
        self._stream_uris: dict[str, str] | None = None
        self._profiles: list[dict[str, Any]] | None = None
        self._interfaces: list[dict[str, Any]] | None = None
        self._protocols: list[dict[str, Any]] | None = None
        self._users: list[dict[str, Any]] | None = None
        self._ptz_configs: list[dict[str, Any]] | None = None
        self._date_time: datetime | None = None
        self._last_reboot_message: str | None = None

    def __repr__(self) -> str:
        return (
            f"Device(address={self.endpoint_address!r}, "
            f"service={self.service_address!r}, closed={self._closed})"
        )

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def probe(self) -> ProbeData:
        return self._probe

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @property
    def endpoint_address(self) -> str:
        return self._probe.endpoint_address

    @property
    def service_address(self) -> str:
        return self._probe.device_service_address

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_connected(self) -> bool:
        """Whether a driver connection handle has been opened."""
        return self._instance is not None and not self._closed

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    def _connection(self) -> DeviceInstance:
        """Return the driver connection, opening it on first use.

        Raises:
            DeviceClosedError: If the device has been closed.
        """
        with self._lock:
            if self._closed:
                raise DeviceClosedError(f"Device {self.endpoint_address} is closed")
            if self._instance is None:
                self._instance = self._driver.open(
                    self.service_address,
                    self._credentials.username,
                    self._credentials.password,
                )
                logger.debug(
                    "Device connection opened",
                    endpoint=self.endpoint_address,
                    service=self.service_address,
                )
            return self._instance

    def _run(
        self, operation: str, call: Callable[[DeviceInstance], T]
    ) -> tuple[bool, T | None]:
        """Run one driver call, converting failures into (False, None).

        Args:
            operation: Operation name for logging.
            call: Receives the open connection and performs the request.

        Returns:
            (True, result) on success, (False, None) on a driver failure or
            a closed device.
        """
        try:
            result = call(self._connection())
        except DeviceClosedError:
            logger.warning(
                "Operation on closed device",
                endpoint=self.endpoint_address,
                operation=operation,
            )
            return False, None
        except DeviceDriverError as e:
            logger.warning(
                "Device operation failed",
                endpoint=self.endpoint_address,
                operation=operation,
                error=str(e),
            )
            return False, None
        logger.debug("Device operation ok", endpoint=self.endpoint_address, operation=operation)
        return True, result

    def close(self) -> None:
        """Dispose the driver connection. Idempotent.

        Later operations return failure. A driver error while closing is
        logged; the device counts as closed regardless.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            instance, self._instance = self._instance, None

        if instance is None:
            return
        try:
            instance.close()
        except DeviceDriverError as e:
            logger.warning(
                "Error closing device connection",
                endpoint=self.endpoint_address,
                error=str(e),
            )

    # -------------------------------------------------------------------------
    # Refresh operations (populate cached state)
    # -------------------------------------------------------------------------

    def refresh_device_capabilities(self) -> bool:
        ok, value = self._run("refresh_device_capabilities", lambda i: i.get_capabilities())
        if ok:
            self._capabilities = value
        return ok

    def refresh_device_information(self) -> bool:
        ok, value = self._run(
            "refresh_device_information", lambda i: i.get_device_information()
        )
        if ok:
            self._information = value
        return ok

    def refresh_device_scopes(self) -> bool:
        ok, value = self._run("refresh_device_scopes", lambda i: i.get_scopes())
        if ok:
            self._scopes = value
        return ok

    def refresh_video_configs(self) -> bool:
        ok, value = self._run(
            "refresh_video_configs", lambda i: i.get_video_encoder_configurations()
        )
        if ok:
            self._video_configs = value
        return ok

    def refresh_video_configs_options(self) -> bool:
        ok, value = self._run(
            "refresh_video_configs_options",
            lambda i: i.get_video_encoder_configuration_options(),
        )
        if ok:
            self._video_config_options = value
        return ok

    def refresh_stream_uris(self) -> bool:
        ok, value = self._run("refresh_stream_uris", lambda i: i.get_stream_uris())
        if ok:
            self._stream_uris = value
        return ok

    def refresh_profiles(self) -> bool:
        ok, value = self._run("refresh_profiles", lambda i: i.get_profiles())
        if ok:
            self._profiles = value
        return ok

    def refresh_interfaces(self) -> bool:
        ok, value = self._run("refresh_interfaces", lambda i: i.get_network_interfaces())
        if ok:
            self._interfaces = value
        return ok

    def refresh_protocols(self) -> bool:
        ok, value = self._run("refresh_protocols", lambda i: i.get_network_protocols())
        if ok:
            self._protocols = value
        return ok

    def refresh_users(self) -> bool:
        ok, value = self._run("refresh_users", lambda i: i.get_users())
        if ok:
            self._users = value
        return ok

    def refresh_ptz_configs(self) -> bool:
        ok, value = self._run("refresh_ptz_configs", lambda i: i.get_ptz_configurations())
        if ok:
            self._ptz_configs = value
        return ok

    def device_date_and_time(self) -> datetime | None:
        """Read the device clock.

        Returns:
            The device time (also cached as date_time), or None on failure.
        """
        ok, value = self._run(
            "device_date_and_time", lambda i: i.get_system_date_and_time()
        )
        if ok:
            self._date_time = value
        return value

    # -------------------------------------------------------------------------
    # Set operations
    # -------------------------------------------------------------------------

    def set_scopes(self, name: str, location: str) -> bool:
        """Set the ONVIF name and location scopes."""
        ok, _ = self._run("set_scopes", lambda i: i.set_scopes(name, location))
        return ok

    def set_video_config(self, config: Mapping[str, Any]) -> bool:
        """Apply a video encoder configuration, matched by its token."""
        ok, _ = self._run(
            "set_video_config", lambda i: i.set_video_encoder_configuration(config)
        )
        return ok

    def set_interfaces(self, interfaces: list[Mapping[str, Any]]) -> bool:
        ok, _ = self._run("set_interfaces", lambda i: i.set_network_interfaces(interfaces))
        return ok

    def set_protocols(self, protocols: list[Mapping[str, Any]]) -> bool:
        ok, _ = self._run("set_protocols", lambda i: i.set_network_protocols(protocols))
        return ok

    def set_date_and_time(self, when: datetime) -> bool:
        ok, _ = self._run("set_date_and_time", lambda i: i.set_system_date_and_time(when))
        return ok

    # -------------------------------------------------------------------------
    # Maintenance and PTZ commands
    # -------------------------------------------------------------------------

    def reset_factory_device(self) -> bool:
        ok, _ = self._run("reset_factory_device", lambda i: i.set_factory_default())
        return ok

    def reboot_device(self) -> bool:
        """Reboot the device. The device's message is kept in last_reboot_message."""
        ok, message = self._run("reboot_device", lambda i: i.reboot())
        if ok:
            self._last_reboot_message = message
        return ok

    def continuous_move(self, x: float, y: float, z: float) -> bool:
        """Start continuous pan/tilt/zoom movement with velocities in [-1, 1]."""
        ok, _ = self._run("continuous_move", lambda i: i.continuous_move(x, y, z))
        return ok

    def stop_movement(self) -> bool:
        ok, _ = self._run("stop_movement", lambda i: i.stop())
        return ok

    # -------------------------------------------------------------------------
    # Cached state accessors (None until the matching refresh succeeds)
    # -------------------------------------------------------------------------

    @property
    def capabilities(self) -> dict[str, Any] | None:
        return self._capabilities

    @property
    def information(self) -> dict[str, Any] | None:
        return self._information

    @property
    def scopes(self) -> list[str] | None:
        return self._scopes

    @property
    def video_configs(self) -> list[dict[str, Any]] | None:
        return self._video_configs

    @property
    def video_config_options(self) -> dict[str, Any] | None:
        return self._video_config_options

    @property
    def stream_uris(self) -> dict[str, str] | None:
        return self._stream_uris

    @property
    def profiles(self) -> list[dict[str, Any]] | None:
        return self._profiles

    @property
    def interfaces(self) -> list[dict[str, Any]] | None:
        return self._interfaces

    @property
    def protocols(self) -> list[dict[str, Any]] | None:
        return self._protocols

    @property
    def users(self) -> list[dict[str, Any]] | None:
        return self._users

    @property
    def ptz_configs(self) -> list[dict[str, Any]] | None:
        return self._ptz_configs

    @property
    def date_time(self) -> datetime | None:
        return self._date_time

    @property
    def last_reboot_message(self) -> str | None:
        return self._last_reboot_message

    def snapshot(self) -> dict[str, Any]:
        """Return identity and cached state as a JSON-friendly dict.

        Used by the MCP tools and the web API. Values that were never
        refreshed are None.
        """
        return {
            "endpoint_address": self.endpoint_address,
            "service_address": self.service_address,
            "probe": self._probe.to_dict(),
            "username": self._credentials.username,
            "closed": self._closed,
            "connected": self.is_connected,
            "capabilities": self._capabilities,
            "information": self._information,
            "scopes": self._scopes,
            "video_configs": self._video_configs,
            "video_config_options": self._video_config_options,
            "stream_uris": self._stream_uris,
            "profiles": self._profiles,
            "interfaces": self._interfaces,
            "protocols": self._protocols,
            "users": self._users,
            "ptz_configs": self._ptz_configs,
            "date_time": self._date_time.isoformat() if self._date_time else None,
            "last_reboot_message": self._last_reboot_message,
        }
