"""Test helper functions for onvif-fleet.

Provides utilities for protocol compliance verification and a discovery
driver whose probe cycles are driven by hand, so tests can interleave
records, end signals and new cycles in any order.

Example:
    from tests.helpers import ManualDiscoveryDriver, assert_implements_protocol
    from onvif_fleet.drivers.types import DiscoveryDriver

    def test_manual_driver_implements_protocol():
        assert_implements_protocol(ManualDiscoveryDriver(), DiscoveryDriver)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from onvif_fleet.drivers.types import EndedCallback, RecordCallback


def assert_implements_protocol(instance: object, protocol: type[Protocol]) -> None:
    """Assert that an instance implements a Protocol interface.

    Verifies that the given instance satisfies the Protocol contract using
    isinstance() checks (requires @runtime_checkable on the Protocol).

    Business context: Enables unit tests to verify that test doubles and
    real drivers correctly implement their Protocol interfaces. Catches
    missing methods early in testing rather than at runtime.

    Args:
        instance: Object to check for protocol compliance.
        protocol: Protocol class to check against. Must be decorated
            with @runtime_checkable.

    Raises:
        AssertionError: If instance doesn't implement protocol, listing the
            missing public members.

    Example:
        >>> from onvif_fleet.drivers.types import DeviceInstance
        >>> assert_implements_protocol(twin_instance, DeviceInstance)
    """
    if isinstance(instance, protocol):
        return

    object_attrs = set(dir(object))
    protocol_methods = {
        attr
        for attr in set(dir(protocol)) - object_attrs
        if not attr.startswith("_")
    }
    missing = sorted(m for m in protocol_methods if not hasattr(instance, m))
    missing_str = ", ".join(missing) if missing else "unknown"
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {missing_str}"
    )


def make_record(
    ep_address: str,
    service_address: str = "http://10.0.0.1/onvif/device_service",
    metadata_version: str = "1",
    **extra: Any,
) -> dict[str, Any]:
    """Build a raw discovery record with sensible defaults."""
    record = {
        "ep_address": ep_address,
        "types": "dn:NetworkVideoTransmitter",
        "device_ip": "",
        "device_service_address": service_address,
        "scopes": "onvif://www.onvif.org/name/Test",
        "metadata_version": metadata_version,
    }
    record.update(extra)
    return record


@dataclass
class ProbeCycle:
    """Callbacks handed to one ManualDiscoveryDriver.probe() call."""

    on_record: RecordCallback
    on_ended: EndedCallback

    def deliver(self, *records: Mapping[str, Any]) -> None:
        for record in records:
            self.on_record(record)

    def end(self) -> None:
        self.on_ended()


@dataclass
class ManualDiscoveryDriver:
    """DiscoveryDriver that records probe cycles instead of running them.

    Each probe() appends a ProbeCycle; the test decides when (and whether)
    that cycle's records and end signal are delivered.

    Attributes:
        cycles: One ProbeCycle per probe() call, oldest first.
        closed: Whether close() was called.
    """

    cycles: list[ProbeCycle] = field(default_factory=list)
    closed: bool = False

    def probe(self, on_record: RecordCallback, on_ended: EndedCallback) -> None:
        self.cycles.append(ProbeCycle(on_record, on_ended))

    def close(self) -> None:
        self.closed = True

    @property
    def latest(self) -> ProbeCycle:
        """Most recent probe cycle."""
        return self.cycles[-1]
