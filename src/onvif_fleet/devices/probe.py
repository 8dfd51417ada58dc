"""Discovery record normalization.

Turns the raw key/value records emitted by a discovery driver into
immutable ProbeData snapshots the registry can admit. Normalization never
raises: a record without a usable endpoint address yields a ProbeData whose
``is_valid`` is False, and the manager drops it.

Example:
    from onvif_fleet.devices.probe import ProbeData

    probe = ProbeData.from_record({
        "ep_address": "urn:uuid:cam-1",
        "device_service_address": "http://10.0.0.5/onvif/device_service",
    })
    assert probe.device_ip == "10.0.0.5"
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import urlparse

# ONVIF scope prefixes used by scope_values()
SCOPE_NAME = "onvif://www.onvif.org/name/"
SCOPE_LOCATION = "onvif://www.onvif.org/location/"
SCOPE_HARDWARE = "onvif://www.onvif.org/hardware/"


def _text(raw: Mapping[str, Any], key: str) -> str:
    """Return raw[key] as a stripped string; missing or None becomes ""."""
    value = raw.get(key)
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True, slots=True)
class ProbeData:
    """Immutable snapshot of one discovery response.

    Attributes:
        endpoint_address: Stable device identifier and registry key. Empty
            means the record was malformed.
        types: Space-separated device type tags.
        device_ip: IP address of the device.
        device_service_address: URL a Device connects to.
        scopes: Space-separated scope URIs.
        metadata_version: Version stamp announced by the device. Shown for
            diagnostics only; admission ignores it.
    """

    endpoint_address: str
    types: str = ""
    device_ip: str = ""
    device_service_address: str = ""
    scopes: str = ""
    metadata_version: str = ""

    @classmethod
    def from_record(cls, raw: Mapping[str, Any]) -> ProbeData:
        """Normalize a raw discovery record.

        Missing keys become empty strings and values are stripped. When the
        record lists several service addresses the first one is used, and a
        missing device IP is taken from that address's host.

        Args:
            raw: Mapping with any of the keys ep_address, types, device_ip,
                device_service_address, scopes, metadata_version.

        Returns:
            ProbeData for the record. Check is_valid before admitting it.

        Example:
            >>> ProbeData.from_record({"ep_address": " ep1 "}).endpoint_address
            'ep1'
        """
        service_addresses = _text(raw, "device_service_address").split()
        service_address = service_addresses[0] if service_addresses else ""

        device_ip = _text(raw, "device_ip")
        if not device_ip and service_address:
            device_ip = urlparse(service_address).hostname or ""

        return cls(
            endpoint_address=_text(raw, "ep_address"),
            types=_text(raw, "types"),
            device_ip=device_ip,
            device_service_address=service_address,
            scopes=_text(raw, "scopes"),
            metadata_version=_text(raw, "metadata_version"),
        )

    @property
    def is_valid(self) -> bool:
        """Whether the snapshot carries an endpoint address."""
        return bool(self.endpoint_address)

    @property
    def type_list(self) -> list[str]:
        return self.types.split()

    @property
    def scope_list(self) -> list[str]:
        return self.scopes.split()

    def scope_values(self, prefix: str) -> list[str]:
        """Return the suffixes of every scope starting with prefix.

        Example:
            >>> probe.scope_values(SCOPE_NAME)
            ['Front_Door']
        """
        return [s[len(prefix):] for s in self.scope_list if s.startswith(prefix)]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict, with split types and scopes."""
        data = asdict(self)
        data["type_list"] = self.type_list
        data["scope_list"] = self.scope_list
        return data
