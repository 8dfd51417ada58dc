"""Device registry: one live Device per endpoint address.

This module provides DeviceRegistry, the single source of truth mapping an
endpoint address to its Device:

- ``admit`` is the only way entries are added, and creates at most one
  Device per address
- ``clear`` disposes every Device and empties the mapping in one exclusive
  step
- lookups and enumeration run under a shared lock and do not block each
  other

Example:
    from onvif_fleet.devices import DeviceRegistry, ProbeData

    registry = DeviceRegistry()
    admission = registry.admit(probe, lambda p: Device(p, creds, driver))
    if admission.was_new:
        print("new device", admission.device)
    registry.clear()
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, NamedTuple

from onvif_fleet.observability import get_logger

if TYPE_CHECKING:
    from onvif_fleet.devices.device import Device
    from onvif_fleet.devices.probe import ProbeData

logger = get_logger(__name__)

#: Builds a Device for a probe admitted for the first time.
DeviceFactory = Callable[["ProbeData"], "Device"]


class _ReadWriteLock:
    """Readers-writer lock built on threading.Condition.

    Any number of readers may hold the lock together; a writer holds it
    alone. Waiting writers block new readers so a stream of lookups cannot
    starve clear(). Not re-entrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class Admission(NamedTuple):
    """Result of DeviceRegistry.admit()."""

    device: Device
    was_new: bool


class DeviceRegistry:
    """Thread-safe mapping of endpoint address to Device.

    Invariant: each address present maps to exactly one live Device, and
    nothing survives a clear().

    Usage:
        registry = DeviceRegistry()
        device, was_new = registry.admit(probe, factory)
        registry.get("urn:uuid:cam-1")
        registry.clear()
    """

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._lock = _ReadWriteLock()

    def __repr__(self) -> str:
        return f"DeviceRegistry(devices={len(self)})"

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._devices)

    def __contains__(self, address: object) -> bool:
        with self._lock.read():
            return address in self._devices

    def exists(self, address: str) -> bool:
        """Check whether address has an entry."""
        return address in self

    def get(self, address: str) -> Device | None:
        """Get the Device for address.

        Returns:
            The Device, or None if the address is unknown. Absence is an
            expected outcome; callers must check.
        """
        with self._lock.read():
            return self._devices.get(address)

    def items(self) -> list[tuple[str, Device]]:
        """Snapshot of (address, Device) pairs."""
        with self._lock.read():
            return list(self._devices.items())

    def addresses(self) -> list[str]:
        """Snapshot of known addresses."""
        with self._lock.read():
            return list(self._devices)

    def admit(self, probe: ProbeData, factory: DeviceFactory) -> Admission:
        """Admit a discovered device, creating it only if the address is new.

        This is the single admission gate. The factory runs under the
        exclusive lock, so it must not block on network I/O (Device
        construction never does).

        Args:
            probe: Normalized snapshot with a non-empty endpoint address.
            factory: Called with probe only when the address is unknown.

        Returns:
            Admission(device, was_new). For a known address, the existing
            Device and was_new=False; the factory is not called.

        Raises:
            ValueError: If probe has no endpoint address.
        """
        address = probe.endpoint_address
        if not address:
            raise ValueError("Cannot admit a probe without an endpoint address")

        with self._lock.write():
            existing = self._devices.get(address)
            if existing is not None:
                return Admission(existing, False)
            device = factory(probe)
            self._devices[address] = device

        logger.info(
            "Device admitted",
            endpoint=address,
            service=probe.device_service_address,
        )
        return Admission(device, True)

    def clear(self) -> int:
        """Dispose every Device and empty the registry.

        Readers observe either the full pre-clear map or the empty one. A
        device whose close() raises is logged and skipped; the sweep goes
        on and the entry is still removed.

        Returns:
            Number of devices disposed.
        """
        with self._lock.write():
            devices = list(self._devices.values())
            self._devices.clear()
            for device in devices:
                try:
                    device.close()
                except Exception as e:  # noqa: BLE001
                    logger.error(
                        "Error disposing device",
                        endpoint=device.endpoint_address,
                        error=str(e),
                    )

        if devices:
            logger.info("Registry cleared", disposed=len(devices))
        return len(devices)
