"""Tests for discovery record normalization (devices/probe.py)."""

import dataclasses

import pytest

from onvif_fleet.devices.probe import (
    SCOPE_HARDWARE,
    SCOPE_LOCATION,
    SCOPE_NAME,
    ProbeData,
)
from onvif_fleet.drivers.twin import DEFAULT_FLEET


class TestFromRecord:
    """Tests for ProbeData.from_record()."""

    def test_full_record(self):
        """Verifies every record key lands in the matching field.

        Arrangement:
        1. Record produced by the first DEFAULT_FLEET twin.

        Action:
        Normalizes the record.

        Assertion Strategy:
        Validates field mapping by confirming:
        - endpoint_address comes from ep_address.
        - service address, IP, scopes and metadata version are kept.
        """
        spec = DEFAULT_FLEET[0]
        probe = ProbeData.from_record(spec.to_record())

        assert probe.endpoint_address == spec.endpoint_address
        assert probe.device_service_address == spec.service_address
        assert probe.device_ip == spec.device_ip
        assert probe.metadata_version == spec.metadata_version
        assert "dn:NetworkVideoTransmitter" in probe.type_list
        assert probe.is_valid

    def test_values_are_stripped(self):
        """Verifies surrounding whitespace is removed from every value."""
        probe = ProbeData.from_record(
            {"ep_address": "  urn:uuid:1 \n", "metadata_version": " 7 "}
        )
        assert probe.endpoint_address == "urn:uuid:1"
        assert probe.metadata_version == "7"

    def test_missing_keys_become_empty(self):
        """Verifies absent and None values normalize to empty strings.

        Testing Principle:
        Normalization never raises on partial records; invalid ones are
        flagged through is_valid instead.
        """
        probe = ProbeData.from_record({"types": None})

        assert probe.endpoint_address == ""
        assert probe.types == ""
        assert probe.device_service_address == ""
        assert not probe.is_valid

    def test_whitespace_only_address_is_invalid(self):
        assert not ProbeData.from_record({"ep_address": "   "}).is_valid

    def test_first_service_address_is_used(self):
        """Verifies a multi-XAddr record keeps only the first address.

        Arrangement:
        1. Record listing an IPv4 and an IPv6 device service URL.

        Assertion Strategy:
        - device_service_address is the first URL.
        - device_ip is derived from that URL's host.
        """
        probe = ProbeData.from_record(
            {
                "ep_address": "urn:uuid:multi",
                "device_service_address": (
                    "http://10.1.2.3:8080/onvif/device_service "
                    "http://[fe80::1]/onvif/device_service"
                ),
            }
        )
        assert probe.device_service_address == "http://10.1.2.3:8080/onvif/device_service"
        assert probe.device_ip == "10.1.2.3"

    def test_explicit_ip_wins_over_url_host(self):
        probe = ProbeData.from_record(
            {
                "ep_address": "urn:uuid:ip",
                "device_ip": "192.168.0.9",
                "device_service_address": "http://10.1.2.3/onvif/device_service",
            }
        )
        assert probe.device_ip == "192.168.0.9"

    def test_non_string_values_are_converted(self):
        probe = ProbeData.from_record({"ep_address": "urn:uuid:n", "metadata_version": 3})
        assert probe.metadata_version == "3"


class TestProbeDataAccessors:
    """Tests for scope and type helpers."""

    @pytest.fixture
    def probe(self):
        return ProbeData.from_record(DEFAULT_FLEET[1].to_record())

    def test_scope_values(self, probe):
        """Verifies scope_values() returns suffixes of matching scopes."""
        assert probe.scope_values(SCOPE_NAME) == ["Parking_PTZ"]
        assert probe.scope_values(SCOPE_LOCATION) == ["Parking"]
        assert probe.scope_values(SCOPE_HARDWARE) == ["TW-P400"]

    def test_scope_values_no_match(self, probe):
        assert probe.scope_values("onvif://www.onvif.org/Profile/") == []

    def test_to_dict_includes_split_lists(self, probe):
        """Verifies to_dict() adds type_list and scope_list to the fields."""
        data = probe.to_dict()

        assert data["endpoint_address"] == probe.endpoint_address
        assert data["type_list"] == probe.types.split()
        assert data["scope_list"] == probe.scopes.split()
        assert len(data["scope_list"]) == 4

    def test_is_immutable(self, probe):
        with pytest.raises(dataclasses.FrozenInstanceError):
            probe.endpoint_address = "other"  # type: ignore[misc]
