"""Pytest configuration and fixtures for onvif-fleet tests.

Every test runs against the digital twin drivers. The module-level driver
factory and device manager are reset around each test so state set by one
test (mode, credentials, a running manager) never leaks into the next.
"""

import io
import logging

import pytest

from onvif_fleet.devices import Credentials, DeviceManager, shutdown_manager
from onvif_fleet.drivers import config
from onvif_fleet.drivers.twin import (
    DEFAULT_FLEET,
    DigitalTwinDeviceDriver,
    DigitalTwinDiscoveryDriver,
)
from onvif_fleet.observability import DispatchStats
from onvif_fleet.observability.logging import ROOT_LOGGER_NAME, StructuredFormatter
from tests.helpers import ManualDiscoveryDriver


@pytest.fixture(autouse=True)
def isolate_globals():
    """Reset the global driver factory and device manager after each test.

    Yields:
        None. Cleanup runs after the test body.
    """
    saved_factory = config._factory
    yield
    shutdown_manager()
    config._factory = saved_factory


@pytest.fixture
def log_stream():
    """Capture onvif_fleet log output at DEBUG level.

    Attaches a StringIO handler to the package logger and lowers its level,
    restoring both afterwards.

    Yields:
        io.StringIO receiving formatted log lines.
    """
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger(ROOT_LOGGER_NAME)
    previous_level = root.level
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    yield stream
    root.removeHandler(handler)
    root.setLevel(previous_level)


@pytest.fixture
def device_driver():
    """Digital twin device driver over DEFAULT_FLEET."""
    return DigitalTwinDeviceDriver()


@pytest.fixture
def manual_discovery():
    """Discovery driver whose cycles the test drives by hand."""
    return ManualDiscoveryDriver()


@pytest.fixture
def manager(manual_discovery, device_driver):
    """DeviceManager over a manual discoverer, twin devices and stats.

    Yields:
        DeviceManager with credentials admin/"" and a DispatchStats
        collector. Shut down after the test.
    """
    mgr = DeviceManager(
        manual_discovery,
        device_driver,
        credentials=Credentials("admin", ""),
        stats=DispatchStats(),
    )
    yield mgr
    mgr.shutdown()


@pytest.fixture
def inline_twin_discovery():
    """Twin discoverer that delivers a whole cycle inside probe()."""
    return DigitalTwinDiscoveryDriver(DEFAULT_FLEET, threaded=False)
