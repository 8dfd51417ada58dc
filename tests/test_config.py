"""Tests for driver configuration and the driver factory (drivers/config.py)."""

import pytest

from onvif_fleet.drivers import config
from onvif_fleet.drivers.config import (
    DEFAULT_USERNAME,
    DriverConfig,
    DriverFactory,
    DriverMode,
    configure,
    get_factory,
    set_default_credentials,
    use_digital_twin,
    use_hardware,
)
from onvif_fleet.drivers.onvif import OnvifDeviceDriver, WSDiscoveryDriver
from onvif_fleet.drivers.twin import (
    DEFAULT_FLEET,
    DigitalTwinDeviceDriver,
    DigitalTwinDiscoveryDriver,
)
from onvif_fleet.drivers.types import DEFAULT_PROBE_TIMEOUT_S


class TestDriverConfig:
    """Tests for DriverConfig defaults and validation."""

    def test_defaults(self):
        cfg = DriverConfig()
        assert cfg.mode == DriverMode.DIGITAL_TWIN
        assert cfg.username == DEFAULT_USERNAME
        assert cfg.password == ""
        assert cfg.probe_timeout_s == DEFAULT_PROBE_TIMEOUT_S
        assert cfg.twin_fleet == DEFAULT_FLEET

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"probe_timeout_s": 0},
            {"probe_timeout_s": -1.0},
            {"twin_duplicate_records": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            DriverConfig(**kwargs)

    def test_mode_from_string(self):
        assert DriverMode("hardware") is DriverMode.HARDWARE


class TestDriverFactory:
    """Tests for DriverFactory driver creation."""

    def test_twin_mode(self):
        """Verifies twin mode yields twin drivers configured from the config.

        Assertion Strategy:
        - Device driver is DigitalTwinDeviceDriver.
        - Discovery driver carries duplicate_records and threaded flags.
        """
        factory = DriverFactory(
            DriverConfig(twin_duplicate_records=3, twin_threaded=False)
        )

        assert isinstance(factory.create_device_driver(), DigitalTwinDeviceDriver)
        discovery = factory.create_discovery_driver()
        assert isinstance(discovery, DigitalTwinDiscoveryDriver)
        assert discovery.duplicate_records == 3
        assert discovery.threaded is False

    def test_hardware_mode(self):
        factory = DriverFactory(
            DriverConfig(mode=DriverMode.HARDWARE, probe_timeout_s=7.5, probe_types=())
        )

        assert isinstance(factory.create_device_driver(), OnvifDeviceDriver)
        discovery = factory.create_discovery_driver()
        assert isinstance(discovery, WSDiscoveryDriver)
        assert discovery.timeout == 7.5
        assert discovery.types == ()

    def test_default_config(self):
        assert DriverFactory().config.mode == DriverMode.DIGITAL_TWIN


class TestGlobalFactory:
    """Tests for the module-level factory helpers."""

    def test_get_factory_creates_default(self):
        config._factory = None
        factory = get_factory()
        assert factory is get_factory()
        assert factory.config.mode == DriverMode.DIGITAL_TWIN

    def test_configure_replaces_factory(self):
        cfg = DriverConfig(username="viewer")
        configure(cfg)
        assert get_factory().config is cfg

    def test_use_hardware_resets_config(self):
        configure(DriverConfig(username="viewer"))
        use_hardware()
        assert get_factory().config.mode == DriverMode.HARDWARE
        assert get_factory().config.username == DEFAULT_USERNAME

    def test_mode_switch_preserves_config(self):
        """Verifies preserve_config keeps credentials across mode switches."""
        configure(DriverConfig(username="viewer", password="pw"))

        use_hardware(preserve_config=True)
        assert get_factory().config.username == "viewer"

        use_digital_twin(preserve_config=True)
        cfg = get_factory().config
        assert cfg.mode == DriverMode.DIGITAL_TWIN
        assert (cfg.username, cfg.password) == ("viewer", "pw")

    def test_use_digital_twin_resets_config(self):
        configure(DriverConfig(mode=DriverMode.HARDWARE, password="pw"))
        use_digital_twin()
        assert get_factory().config.password == ""

    def test_set_default_credentials(self):
        configure(DriverConfig())
        set_default_credentials("operator", "secret")
        cfg = get_factory().config
        assert (cfg.username, cfg.password) == ("operator", "secret")
