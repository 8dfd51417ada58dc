"""Tests for the device registry (devices/registry.py)."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from onvif_fleet.devices import Credentials, Device, DeviceRegistry, ProbeData
from onvif_fleet.drivers.types import DeviceDriverError
from tests.helpers import make_record


def _probe(address: str, version: str = "1") -> ProbeData:
    return ProbeData.from_record(make_record(address, metadata_version=version))


@pytest.fixture
def factory(device_driver):
    """Device factory counting its calls."""
    calls = []

    def build(probe: ProbeData) -> Device:
        calls.append(probe)
        return Device(probe, Credentials("admin", ""), device_driver)

    build.calls = calls
    return build


class TestAdmit:
    """Tests for DeviceRegistry.admit()."""

    def test_new_address_creates_device(self, factory):
        """Verifies the first admission of an address builds a Device.

        Arrangement:
        1. Empty registry.
        2. Probe for urn:uuid:a.

        Action:
        Admits the probe.

        Assertion Strategy:
        - was_new is True and the factory ran once.
        - get() returns the admitted Device.
        """
        registry = DeviceRegistry()

        device, was_new = registry.admit(_probe("urn:uuid:a"), factory)

        assert was_new
        assert len(factory.calls) == 1
        assert registry.get("urn:uuid:a") is device
        assert registry.exists("urn:uuid:a")
        assert len(registry) == 1

    def test_known_address_keeps_existing_device(self, factory):
        """Verifies a duplicate admission reuses the first Device.

        Testing Principle:
        At most one Device per endpoint address; the factory is not even
        called for a known address.
        """
        registry = DeviceRegistry()
        first = registry.admit(_probe("urn:uuid:a"), factory)

        second = registry.admit(_probe("urn:uuid:a", version="2"), factory)

        assert not second.was_new
        assert second.device is first.device
        assert len(factory.calls) == 1
        assert second.device.probe.metadata_version == "1"

    def test_empty_address_rejected(self, factory):
        registry = DeviceRegistry()
        with pytest.raises(ValueError, match="endpoint address"):
            registry.admit(ProbeData(endpoint_address=""), factory)
        assert len(registry) == 0
        assert factory.calls == []

    def test_factory_error_leaves_registry_unchanged(self):
        registry = DeviceRegistry()

        def broken(probe):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            registry.admit(_probe("urn:uuid:a"), broken)
        assert "urn:uuid:a" not in registry

    def test_concurrent_admission_creates_one_device(self, factory):
        """Verifies racing admissions of one address build a single Device.

        Arrangement:
        1. 16 threads released together by a barrier.
        2. Each admits the same address.

        Assertion Strategy:
        - Exactly one admission reports was_new.
        - All threads received the same Device object.
        """
        registry = DeviceRegistry()
        barrier = threading.Barrier(16)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            admission = registry.admit(_probe("urn:uuid:race"), factory)
            with lock:
                results.append(admission)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(results) == 16
        assert sum(1 for r in results if r.was_new) == 1
        assert len({id(r.device) for r in results}) == 1
        assert len(factory.calls) == 1


class TestLookup:
    """Tests for get/exists/items/addresses."""

    def test_unknown_address(self):
        registry = DeviceRegistry()
        assert registry.get("urn:uuid:missing") is None
        assert not registry.exists("urn:uuid:missing")

    def test_snapshots(self, factory):
        registry = DeviceRegistry()
        registry.admit(_probe("urn:uuid:a"), factory)
        registry.admit(_probe("urn:uuid:b"), factory)

        assert sorted(registry.addresses()) == ["urn:uuid:a", "urn:uuid:b"]
        items = dict(registry.items())
        assert set(items) == {"urn:uuid:a", "urn:uuid:b"}
        assert all(isinstance(d, Device) for d in items.values())

    def test_repr(self, factory):
        registry = DeviceRegistry()
        registry.admit(_probe("urn:uuid:a"), factory)
        assert repr(registry) == "DeviceRegistry(devices=1)"

    def test_lookups_do_not_block_each_other(self, factory):
        """Verifies a held shared lock does not delay another lookup.

        Arrangement:
        1. Registry holding urn:uuid:a.
        2. One thread holding the read side until released.

        Action:
        get() from a second thread while the first still reads.

        Assertion Strategy:
        The second lookup finishes promptly and finds the device.
        """
        registry = DeviceRegistry()
        device, _ = registry.admit(_probe("urn:uuid:a"), factory)
        holding = threading.Event()
        release = threading.Event()

        def hold_read():
            with registry._lock.read():
                holding.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold_read)
        holder.start()
        assert holding.wait(timeout=5)

        found = []
        lookup = threading.Thread(target=lambda: found.append(registry.get("urn:uuid:a")))
        lookup.start()
        lookup.join(timeout=1)
        try:
            assert not lookup.is_alive()
            assert found == [device]
        finally:
            release.set()
            holder.join(timeout=5)

    def test_waiting_writer_blocks_new_readers(self, factory):
        """Verifies clear() waiting on a reader holds back later lookups.

        Arrangement:
        1. One thread holding the read side.
        2. clear() started on a second thread, waiting for that reader.

        Action:
        get() from a third thread.

        Assertion Strategy:
        - The new lookup blocks while the writer waits.
        - After release it runs after clear() and finds nothing.
        """
        registry = DeviceRegistry()
        registry.admit(_probe("urn:uuid:a"), factory)
        holding = threading.Event()
        release = threading.Event()

        def hold_read():
            with registry._lock.read():
                holding.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold_read)
        holder.start()
        assert holding.wait(timeout=5)

        cleared = []
        writer = threading.Thread(target=lambda: cleared.append(registry.clear()))
        writer.start()
        deadline = time.monotonic() + 5
        while registry._lock._writers_waiting == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert registry._lock._writers_waiting == 1

        found = []
        lookup = threading.Thread(target=lambda: found.append(registry.get("urn:uuid:a")))
        lookup.start()
        lookup.join(timeout=0.2)
        try:
            assert lookup.is_alive()
            assert not cleared
        finally:
            release.set()
            holder.join(timeout=5)
            writer.join(timeout=5)
            lookup.join(timeout=5)

        assert cleared == [1]
        assert found == [None]


class TestClear:
    """Tests for DeviceRegistry.clear()."""

    def test_clear_disposes_every_device(self, factory):
        """Verifies clear() closes each Device and empties the registry.

        Assertion Strategy:
        - Returns the number of disposed devices.
        - Every previously returned Device reports is_closed.
        - No address remains reachable.
        """
        registry = DeviceRegistry()
        a = registry.admit(_probe("urn:uuid:a"), factory).device
        b = registry.admit(_probe("urn:uuid:b"), factory).device

        assert registry.clear() == 2

        assert a.is_closed and b.is_closed
        assert len(registry) == 0
        assert registry.get("urn:uuid:a") is None

    def test_clear_empty_registry(self):
        assert DeviceRegistry().clear() == 0

    def test_close_failure_does_not_stop_sweep(self, factory, log_stream):
        """Verifies a device raising on close is logged and still removed."""
        registry = DeviceRegistry()
        registry.admit(_probe("urn:uuid:a"), factory)
        good = registry.admit(_probe("urn:uuid:b"), factory).device

        bad = MagicMock()
        bad.endpoint_address = "urn:uuid:bad"
        bad.close.side_effect = DeviceDriverError("socket gone")
        registry.admit(_probe("urn:uuid:bad"), lambda p: bad)

        assert registry.clear() == 3

        assert good.is_closed
        assert len(registry) == 0
        assert "Error disposing device" in log_stream.getvalue()

    def test_readers_never_see_partial_clear(self, factory):
        """Verifies concurrent readers observe either the full or empty map.

        Arrangement:
        1. Registry holding 50 devices.
        2. Reader threads repeatedly snapshot the size while clear() runs.

        Assertion Strategy:
        Every observed size is 50 or 0.
        """
        registry = DeviceRegistry()
        for i in range(50):
            registry.admit(_probe(f"urn:uuid:{i}"), factory)

        seen = set()
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                seen.add(len(registry.items()))

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        registry.clear()
        stop.set()
        for t in readers:
            t.join(timeout=5)

        assert seen <= {50, 0}
