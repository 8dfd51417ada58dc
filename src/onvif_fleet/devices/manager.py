"""Device manager: discovery reconciliation and command dispatch.

DeviceManager is the facade over the registry. It

- owns the current credentials,
- drives discovery cycles and numbers them with a generation counter,
- admits discovery records into the registry (once per address),
- routes per-device commands by endpoint address,
- republishes "device found" and "discovery ended" notifications.

Records are tagged with the generation active when the probe was sent.
Starting a new cycle advances the generation and clears the registry, so a
late record from a superseded cycle is dropped instead of repopulating the
registry.

Example:
    from onvif_fleet.devices import DeviceManager, ManagerHooks
    from onvif_fleet.drivers import get_factory

    factory = get_factory()
    manager = DeviceManager(
        factory.create_discovery_driver(),
        factory.create_device_driver(),
        hooks=ManagerHooks(on_device_found=lambda d: print("found", d)),
    )
    manager.start_discovery()
    ...
    result = manager.dispatch("urn:uuid:cam-1", "reboot_device")
    if not result.ok:
        print(result.status, result.error)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from onvif_fleet.devices.device import Credentials, Device
from onvif_fleet.devices.probe import ProbeData
from onvif_fleet.devices.registry import DeviceRegistry
from onvif_fleet.observability import LogContext, get_logger

if TYPE_CHECKING:
    from onvif_fleet.drivers.types import DeviceDriver, DiscoveryDriver
    from onvif_fleet.observability import DispatchStats

logger = get_logger(__name__)


# --- Operations ---


class UnknownOperationError(ValueError):
    """Raised when a name does not match any dispatchable operation."""

    pass


class Operation(Enum):
    """Per-device commands accepted by DeviceManager.dispatch().

    Values are the names of the Device methods they are routed to.
    """

    REFRESH_DEVICE_CAPABILITIES = "refresh_device_capabilities"
    REFRESH_DEVICE_INFORMATION = "refresh_device_information"
    REFRESH_DEVICE_SCOPES = "refresh_device_scopes"
    REFRESH_VIDEO_CONFIGS = "refresh_video_configs"
    REFRESH_STREAM_URIS = "refresh_stream_uris"
    REFRESH_VIDEO_CONFIGS_OPTIONS = "refresh_video_configs_options"
    REFRESH_PROFILES = "refresh_profiles"
    REFRESH_INTERFACES = "refresh_interfaces"
    REFRESH_PROTOCOLS = "refresh_protocols"
    REFRESH_USERS = "refresh_users"
    REFRESH_PTZ_CONFIGS = "refresh_ptz_configs"
    DEVICE_DATE_AND_TIME = "device_date_and_time"
    SET_SCOPES = "set_scopes"
    SET_VIDEO_CONFIG = "set_video_config"
    SET_INTERFACES = "set_interfaces"
    SET_PROTOCOLS = "set_protocols"
    SET_DATE_AND_TIME = "set_date_and_time"
    RESET_FACTORY_DEVICE = "reset_factory_device"
    REBOOT_DEVICE = "reboot_device"
    CONTINUOUS_MOVE = "continuous_move"
    STOP_MOVEMENT = "stop_movement"

    @classmethod
    def parse(cls, value: str | Operation) -> Operation:
        """Resolve an operation from its name.

        Args:
            value: An Operation, its value ("reboot_device") or its member
                name ("REBOOT_DEVICE").

        Raises:
            UnknownOperationError: If value names no operation.
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip()
        try:
            return cls(name)
        except ValueError:
            pass
        try:
            return cls[name.upper()]
        except KeyError:
            raise UnknownOperationError(f"Unknown operation: {value!r}") from None

    @property
    def parameters(self) -> tuple[str, ...]:
        """Keyword parameters of the Device method."""
        return _PARAMETERS.get(self, ())

    def bind(self, arguments: Mapping[str, Any] | None) -> dict[str, Any]:
        """Validate JSON-style arguments and convert them to call kwargs.

        Velocities become floats and ``when`` accepts an ISO 8601 string.

        Raises:
            ValueError: On missing, unexpected or unconvertible arguments.
        """
        arguments = dict(arguments or {})
        expected = self.parameters
        unexpected = sorted(set(arguments) - set(expected))
        if unexpected:
            raise ValueError(f"{self.value} got unexpected arguments: {unexpected}")
        missing = [name for name in expected if name not in arguments]
        if missing:
            raise ValueError(f"{self.value} missing arguments: {missing}")

        if self is Operation.CONTINUOUS_MOVE:
            return {axis: float(arguments[axis]) for axis in expected}
        if self is Operation.SET_DATE_AND_TIME and isinstance(arguments["when"], str):
            arguments["when"] = datetime.fromisoformat(arguments["when"])
        return arguments


_PARAMETERS: dict[Operation, tuple[str, ...]] = {
    Operation.SET_SCOPES: ("name", "location"),
    Operation.SET_VIDEO_CONFIG: ("config",),
    Operation.SET_INTERFACES: ("interfaces",),
    Operation.SET_PROTOCOLS: ("protocols",),
    Operation.SET_DATE_AND_TIME: ("when",),
    Operation.CONTINUOUS_MOVE: ("x", "y", "z"),
}


class DispatchStatus(Enum):
    """Outcome of a dispatch."""

    OK = "ok"
    FAILED = "failed"  # Device reported failure
    UNKNOWN_DEVICE = "unknown_device"  # Address not in the registry


@dataclass(slots=True)
class DispatchResult:
    """Result of DeviceManager.dispatch().

    Attributes:
        address: Target endpoint address
        operation: Operation dispatched
        status: OK, FAILED or UNKNOWN_DEVICE
        value: The Device method's return value, unchanged (None when the
            device was unknown)
        error: Human-readable reason for UNKNOWN_DEVICE
        duration_ms: Time spent in the Device call
    """

    address: str
    operation: Operation
    status: DispatchStatus
    value: Any = None
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is DispatchStatus.OK

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict (datetimes as ISO strings)."""
        value = self.value.isoformat() if isinstance(self.value, datetime) else self.value
        return {
            "address": self.address,
            "operation": self.operation.value,
            "status": self.status.value,
            "ok": self.ok,
            "value": value,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
        }


# --- Notifications ---


class OnDeviceFoundCallback(Protocol):  # pragma: no cover
    """Callback for a device admitted for the first time."""

    def __call__(self, device: Device) -> None:
        """Handle a newly admitted device.

        Runs on the discovery driver's thread, outside registry locks.
        """
        ...


class OnDiscoveryEndedCallback(Protocol):  # pragma: no cover
    """Callback for the end of a discovery cycle."""

    def __call__(self, generation: int) -> None:
        """Handle the end of cycle ``generation``.

        Every record of that cycle has been admitted when this runs.
        """
        ...


@dataclass(slots=True)
class ManagerHooks:
    """Optional callbacks for manager events.

    Attributes:
        on_device_found: Called once per newly admitted device
        on_discovery_ended: Called once per completed current cycle
    """

    on_device_found: OnDeviceFoundCallback | None = None
    on_discovery_ended: OnDiscoveryEndedCallback | None = None


# --- Manager ---


class DeviceManager:
    """Facade over discovery, the registry and per-device commands.

    Thread Safety:
        Discovery callbacks may arrive on the driver's thread while other
        callers dispatch commands. Cycle start (generation increment plus
        registry clear) and record admission (generation check plus
        registry admit) are serialized by one re-entrant lock, so a late
        record can never refill a cleared registry. Dispatch only takes the
        registry's shared lock.

    Usage:
        manager = DeviceManager(discovery_driver, device_driver)
        generation = manager.start_discovery()
        manager.dispatch("urn:uuid:cam-1", Operation.REFRESH_PROFILES)
        manager.shutdown()
    """

    def __init__(
        self,
        discovery: DiscoveryDriver,
        driver: DeviceDriver,
        credentials: Credentials | None = None,
        hooks: ManagerHooks | None = None,
        stats: DispatchStats | None = None,
        registry: DeviceRegistry | None = None,
    ) -> None:
        """Create a manager. No discovery starts until start_discovery().

        Args:
            discovery: Driver running probe cycles.
            driver: Driver Devices open their connections with.
            credentials: Initial credentials (default: empty pair).
            hooks: Notification callbacks.
            stats: Optional collector every dispatch is recorded into.
            registry: Registry to manage (default: a new empty one).
        """
        self._discovery = discovery
        self._driver = driver
        self._credentials = credentials or Credentials()
        self._hooks = hooks or ManagerHooks()
        self._stats = stats
        self._registry = registry if registry is not None else DeviceRegistry()

        self._cycle_lock = threading.RLock()
        self._generation = 0
        self._ended_generation = 0
        self._shut_down = False

        self._found_listeners: list[OnDeviceFoundCallback] = []
        self._ended_listeners: list[OnDiscoveryEndedCallback] = []

    def __repr__(self) -> str:
        return (
            f"DeviceManager(generation={self._generation}, "
            f"devices={len(self._registry)})"
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @property
    def generation(self) -> int:
        """Generation of the most recent discovery cycle (0 before the first)."""
        return self._generation

    @property
    def is_discovering(self) -> bool:
        """Whether the current cycle has not signalled its end yet."""
        with self._cycle_lock:
            return self._generation > self._ended_generation

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def stats(self) -> DispatchStats | None:
        return self._stats

    def lookup(self, address: str) -> Device | None:
        """Get the Device for address, or None if it is not known."""
        return self._registry.get(address)

    def devices(self) -> dict[str, Device]:
        """Snapshot of every known (address, Device) pair."""
        return dict(self._registry.items())

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_device_found_listener(self, callback: OnDeviceFoundCallback) -> None:
        self._found_listeners.append(callback)

    def add_discovery_ended_listener(self, callback: OnDiscoveryEndedCallback) -> None:
        self._ended_listeners.append(callback)

    def _emit_device_found(self, device: Device) -> None:
        callbacks = [self._hooks.on_device_found, *self._found_listeners]
        for callback in callbacks:
            if callback is None:
                continue
            try:
                callback(device)
            except Exception:  # noqa: BLE001
                logger.error(
                    "Device found listener failed",
                    endpoint=device.endpoint_address,
                    exc_info=True,
                )

    def _emit_discovery_ended(self, generation: int) -> None:
        callbacks = [self._hooks.on_discovery_ended, *self._ended_listeners]
        for callback in callbacks:
            if callback is None:
                continue
            try:
                callback(generation)
            except Exception:  # noqa: BLE001
                logger.error(
                    "Discovery ended listener failed",
                    generation=generation,
                    exc_info=True,
                )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def start_discovery(self) -> int:
        """Start a new discovery cycle.

        Advances the generation, disposes every known device, then asks
        the discovery driver to probe. Returns without waiting for results.
        Calling it while a cycle is in flight supersedes that cycle.

        Returns:
            The new generation number.

        Raises:
            RuntimeError: If the manager has been shut down.
        """
        with self._cycle_lock:
            if self._shut_down:
                raise RuntimeError("DeviceManager has been shut down")
            self._generation += 1
            generation = self._generation
            disposed = self._registry.clear()

        logger.info("Discovery started", generation=generation, disposed=disposed)
        self._discovery.probe(
            on_record=lambda raw: self.on_discovery_record(generation, raw),
            on_ended=lambda: self.on_discovery_ended(generation),
        )
        return generation

    def on_discovery_record(
        self, generation: int, raw: Mapping[str, Any]
    ) -> Device | None:
        """Admit one raw discovery record from cycle ``generation``.

        Stale records (superseded or already-ended cycle) and malformed
        records (no endpoint address) are dropped. Duplicates of a known
        address are absorbed; a changed metadata version does not refresh
        the known device.

        Returns:
            The Device when it was newly admitted, else None.
        """
        probe = ProbeData.from_record(raw)

        with LogContext(generation=generation, endpoint=probe.endpoint_address):
            with self._cycle_lock:
                if generation != self._generation or generation <= self._ended_generation:
                    logger.debug("Dropping stale discovery record", current=self._generation)
                    return None
                if not probe.is_valid:
                    logger.debug("Dropping discovery record without endpoint address")
                    return None

                credentials = self._credentials
                device, was_new = self._registry.admit(
                    probe, lambda p: Device(p, credentials, self._driver)
                )

                if not was_new:
                    if device.probe.metadata_version != probe.metadata_version:
                        logger.debug(
                            "Known device announced new metadata version",
                            known=device.probe.metadata_version,
                            announced=probe.metadata_version,
                        )
                    return None

                # A restart during admission has already disposed the device.
                if generation != self._generation:
                    logger.debug(
                        "Dropping device admitted by superseded cycle",
                        current=self._generation,
                    )
                    return None

                self._emit_device_found(device)
                return device

    def on_discovery_ended(self, generation: int) -> bool:
        """Handle the end signal of cycle ``generation``.

        Emits "discovery ended" once for the current cycle. Ends of
        superseded cycles and repeated ends are dropped.

        Returns:
            True if the notification was emitted.
        """
        with self._cycle_lock:
            if generation != self._generation or generation <= self._ended_generation:
                logger.debug(
                    "Dropping stale discovery end",
                    generation=generation,
                    current=self._generation,
                )
                return False
            self._ended_generation = generation
            logger.info(
                "Discovery ended", generation=generation, devices=len(self._registry)
            )
            self._emit_discovery_ended(generation)
            return True

    def set_credentials(self, username: str, password: str) -> int:
        """Replace the credentials and restart discovery.

        Devices built with the old credentials are disposed by the restart;
        none stay reachable through lookup().

        Returns:
            Generation of the restarted cycle.
        """
        with self._cycle_lock:
            self._credentials = Credentials(username, password)
        logger.info("Credentials changed", username=username)
        return self.start_discovery()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch(
        self, address: str, operation: str | Operation, *args: Any, **kwargs: Any
    ) -> DispatchResult:
        """Route a command to the Device at address.

        Unknown addresses fail with UNKNOWN_DEVICE and nothing is invoked.
        Otherwise the Device method's result is returned unchanged in
        ``value``; ``status`` is FAILED when it is False or None. No retry,
        and a failure never removes the device.

        Args:
            address: Endpoint address.
            operation: Operation or its name.
            *args: Positional arguments for the Device method.
            **kwargs: Keyword arguments for the Device method.

        Raises:
            UnknownOperationError: If operation names no command.
        """
        op = Operation.parse(operation)
        device = self._registry.get(address)

        if device is None:
            logger.warning("Dispatch to unknown device", endpoint=address, operation=op.value)
            result = DispatchResult(
                address=address,
                operation=op,
                status=DispatchStatus.UNKNOWN_DEVICE,
                error=f"Device unknown: {address}",
            )
        else:
            start = time.monotonic()
            value = getattr(device, op.value)(*args, **kwargs)
            duration_ms = (time.monotonic() - start) * 1000
            succeeded = value is not None and value is not False
            result = DispatchResult(
                address=address,
                operation=op,
                status=DispatchStatus.OK if succeeded else DispatchStatus.FAILED,
                value=value,
                duration_ms=duration_ms,
            )
            logger.debug(
                "Dispatched",
                endpoint=address,
                operation=op.value,
                status=result.status.value,
                duration_ms=round(duration_ms, 2),
            )

        if self._stats is not None:
            self._stats.record_dispatch(
                address, op.value, result.duration_ms, result.status.value
            )
        return result

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def shutdown(self) -> None:
        """Dispose every device and stop the discovery driver.

        In-flight records and end signals are dropped afterwards. Safe to
        call more than once.
        """
        with self._cycle_lock:
            if self._shut_down:
                return
            self._shut_down = True
            # Supersede the in-flight cycle
            self._generation += 1
            self._ended_generation = self._generation
            disposed = self._registry.clear()

        self._discovery.close()
        logger.info("Device manager shut down", disposed=disposed)


# =============================================================================
# Module-level singleton
# =============================================================================

_default_manager: DeviceManager | None = None


def init_manager(
    discovery: DiscoveryDriver,
    driver: DeviceDriver,
    credentials: Credentials | None = None,
    hooks: ManagerHooks | None = None,
    stats: DispatchStats | None = None,
) -> DeviceManager:
    """Initialize the module-level manager.

    Shuts down a previously initialized manager first.

    Returns:
        The new manager, also returned by get_manager().
    """
    global _default_manager
    if _default_manager is not None:
        _default_manager.shutdown()
    _default_manager = DeviceManager(discovery, driver, credentials, hooks, stats)
    return _default_manager


def get_manager() -> DeviceManager:
    """Get the module-level manager.

    Raises:
        RuntimeError: If init_manager() has not been called.
    """
    if _default_manager is None:
        raise RuntimeError("Manager not initialized. Call init_manager() first.")
    return _default_manager


def shutdown_manager() -> None:
    """Shut down and forget the module-level manager. No-op if none."""
    global _default_manager
    if _default_manager is not None:
        _default_manager.shutdown()
        _default_manager = None
