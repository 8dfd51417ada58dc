"""Integration tests for the FastAPI web application (web/app.py).

Uses FastAPI's TestClient against an explicit manager over the inline
digital twin fleet, plus a few requests against the module-level manager.
"""

import pytest
from fastapi.testclient import TestClient

from onvif_fleet.devices import DeviceManager, init_manager
from onvif_fleet.drivers.twin import (
    DEFAULT_FLEET,
    DigitalTwinDeviceDriver,
    DigitalTwinDiscoveryDriver,
)
from onvif_fleet.observability import DispatchStats
from onvif_fleet.web.app import create_app

DOME, PTZ = DEFAULT_FLEET


@pytest.fixture
def twin_manager():
    """Manager over the inline twin fleet with one completed cycle."""
    manager = DeviceManager(
        DigitalTwinDiscoveryDriver(threaded=False),
        DigitalTwinDeviceDriver(),
        stats=DispatchStats(),
    )
    manager.start_discovery()
    yield manager
    manager.shutdown()


@pytest.fixture
def client(twin_manager):
    """TestClient bound to twin_manager."""
    with TestClient(create_app(twin_manager)) as test_client:
        yield test_client


class TestReadEndpoints:
    """Tests for health, device listing and device lookup."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "generation": 1,
            "discovering": False,
            "devices": 2,
        }

    def test_list_devices(self, client):
        data = client.get("/api/devices").json()

        assert data["count"] == 2
        addresses = {d["endpoint_address"] for d in data["devices"]}
        assert addresses == {s.endpoint_address for s in DEFAULT_FLEET}

    def test_get_device(self, client):
        response = client.get("/api/device", params={"address": PTZ.endpoint_address})

        assert response.status_code == 200
        assert response.json()["probe"]["device_ip"] == PTZ.device_ip

    def test_get_unknown_device(self, client):
        response = client.get("/api/device", params={"address": "urn:uuid:nope"})
        assert response.status_code == 404
        assert "urn:uuid:nope" in response.json()["error"]

    def test_get_device_requires_address(self, client):
        assert client.get("/api/device").status_code == 422


class TestWriteEndpoints:
    """Tests for discovery, credentials and dispatch."""

    def test_start_discovery(self, client, twin_manager):
        response = client.post("/api/discovery")

        assert response.status_code == 200
        assert response.json() == {"generation": 2, "status": "started"}
        assert twin_manager.generation == 2

    def test_set_credentials(self, client, twin_manager):
        """Verifies POST /api/credentials swaps credentials and rediscovers.

        Assertion Strategy:
        - Response echoes the user name, never the password.
        - Rebuilt devices carry the new credentials.
        """
        response = client.post(
            "/api/credentials", json={"username": "operator", "password": "secret"}
        )

        assert response.status_code == 200
        assert "secret" not in response.text
        assert twin_manager.credentials.username == "operator"
        device = twin_manager.lookup(DOME.endpoint_address)
        assert device.credentials.password == "secret"

    @pytest.mark.parametrize(
        ("address", "operation", "arguments", "status_code", "status"),
        [
            (DOME.endpoint_address, "refresh_profiles", {}, 200, "ok"),
            (PTZ.endpoint_address, "continuous_move", {"x": 0.1, "y": 0.1, "z": 0}, 200, "ok"),
            (DOME.endpoint_address, "continuous_move", {"x": 0.1, "y": 0.1, "z": 0}, 502, "failed"),
            ("urn:uuid:nope", "reboot_device", {}, 404, "unknown_device"),
        ],
    )
    def test_dispatch_status_codes(
        self, client, address, operation, arguments, status_code, status
    ):
        """Verifies each dispatch outcome maps to its HTTP status code.

        Testing Principle:
        200 for device success, 502 for device failure, 404 for an
        unknown address; the body is always the dispatch result.
        """
        response = client.post(
            "/api/dispatch",
            json={"address": address, "operation": operation, "arguments": arguments},
        )

        assert response.status_code == status_code
        assert response.json()["status"] == status

    def test_dispatch_invalid_operation(self, client):
        response = client.post(
            "/api/dispatch", json={"address": DOME.endpoint_address, "operation": "explode"}
        )

        assert response.status_code == 400
        assert "reboot_device" in response.json()["valid"]

    def test_dispatch_invalid_arguments(self, client):
        response = client.post(
            "/api/dispatch",
            json={
                "address": DOME.endpoint_address,
                "operation": "set_date_and_time",
                "arguments": {"when": "not a date"},
            },
        )
        assert response.status_code == 400

    def test_stats_after_dispatch(self, client):
        client.post(
            "/api/dispatch",
            json={"address": DOME.endpoint_address, "operation": "refresh_users"},
        )

        data = client.get("/api/stats").json()

        assert data["endpoints"][DOME.endpoint_address]["successful"] == 1


class TestModuleManager:
    """Tests for create_app() without an explicit manager."""

    def test_no_manager_returns_503(self):
        with TestClient(create_app()) as client:
            response = client.get("/api/health")
        assert response.status_code == 503
        assert "not initialized" in response.json()["error"]

    def test_uses_module_manager(self):
        init_manager(
            DigitalTwinDiscoveryDriver(threaded=False), DigitalTwinDeviceDriver()
        ).start_discovery()

        with TestClient(create_app()) as client:
            assert client.get("/api/devices").json()["count"] == 2
            assert client.get("/api/stats").json() == {"endpoints": {}, "timestamp": None}
