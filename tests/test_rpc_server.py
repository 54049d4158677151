"""Tests for the HTTP method surface and the scanned-results WebSocket."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from wifi_bridge.core.models import (
    AccessPoint,
    AssociationState,
    NetworkEvent,
    ScanResultsEvent,
    SecurityMode,
)
from wifi_bridge.services.rpc_server import SCAN_EVENTS_PATH, ConnectRequest, RpcServer


@pytest.fixture
def server(settings, controller, backend):
    return RpcServer(settings, controller, backend)


@pytest.fixture
def client(server):
    with TestClient(server.get_app()) as client:
        yield client


def call(client, method, body=None):
    response = client.post(f"/methods/{method}", json=body)
    assert response.status_code == 200
    return response.json()["result"]


class TestConnectRequest:
    def test_wire_names(self):
        request = ConnectRequest.model_validate(
            {
                "ssid": "Home",
                "password": "secret12",
                "enterpriseCertificate": "WPA3_SAE",
                "bssid": "aa:bb:cc:dd:ee:ff",
                "withInternet": True,
                "timeoutInSeconds": 10,
            }
        )

        intent = request.to_intent()

        assert intent.identifier == "Home"
        assert intent.credential == "secret12"
        assert intent.security_mode == SecurityMode.SAE
        assert intent.peer_identifier == "aa:bb:cc:dd:ee:ff"
        assert intent.requires_internet_capability is True
        assert intent.timeout == 10.0

    def test_defaults(self):
        intent = ConnectRequest(ssid="Home").to_intent()

        assert intent.security_mode == SecurityMode.PSK
        assert intent.requires_internet_capability is False
        assert intent.timeout == 30.0


class TestMethods:
    def test_connect_uses_configured_default_timeout(self, settings, controller, backend):
        backend.auto_event = NetworkEvent.unavailable()
        settings = settings.model_copy(update={"default_timeout": 12.0})
        server = RpcServer(settings, controller, backend)
        with TestClient(server.get_app()) as client:
            client.post("/methods/connect", json={"ssid": "Home"})

        assert backend.requests[0][2] == 12.0

    def test_connect_explicit_timeout(self, client, backend):
        backend.auto_event = NetworkEvent.unavailable()
        call(client, "connect", {"ssid": "Home", "timeoutInSeconds": 7})

        assert backend.requests[0][2] == 7.0

    def test_compat_failure_is_a_false_result(self, client, backend):
        backend.profile_error = TimeoutError()

        assert call(client, "connect", {"ssid": "Home", "forceCompat": True}) is False

    def test_connect_success(self, client, backend, home_handle):
        backend.auto_event = NetworkEvent.available(home_handle)

        assert call(client, "connect", {"ssid": "Home", "password": "secret12"}) is True
        assert backend.bound_network == home_handle

    def test_connect_unavailable(self, client, backend):
        backend.auto_event = NetworkEvent.unavailable("Incorrect password")

        assert call(client, "connect", {"ssid": "Home", "password": "wrong"}) is False

    def test_connect_malformed_bssid(self, client, backend):
        assert call(client, "connect", {"ssid": "Home", "bssid": "nope"}) is False
        assert backend.calls == []

    def test_connect_compat(self, client, backend):
        assert call(client, "connect", {"ssid": "Home", "forceCompat": True}) is True
        assert ("enable_profile", "wifi-bridge-Home") in backend.calls

    @pytest.mark.parametrize("body", [{}, {"ssid": ""}, {"ssid": "   "}, {"ssid": "x" * 33}])
    def test_connect_rejects_bad_ssid(self, client, body):
        response = client.post("/methods/connect", json=body)

        assert response.status_code == 422

    def test_disconnect(self, client, backend, home_handle):
        assert call(client, "disconnect") is False

        backend.auto_event = NetworkEvent.available(home_handle)
        call(client, "connect", {"ssid": "Home"})

        assert call(client, "disconnect") is True
        assert backend.bound_network is None

    def test_can_start_scan(self, client):
        assert call(client, "canStartScan") == 1
        assert call(client, "canStartScan", {"askPermissions": False}) == 2

    def test_can_get_scanned_results(self, client):
        assert call(client, "canGetScannedResults") == 1

    def test_scanned_results(self, client, backend):
        backend.access_points = [AccessPoint(ssid="Home", bssid="AA:BB:CC:DD:EE:01", signal=70)]

        assert call(client, "startScan") is True
        results = call(client, "getScannedResults")

        assert len(results) == 1
        assert results[0]["ssid"] == "Home"
        assert results[0]["signal"] == 70

    def test_current_ssid_and_ip(self, client, backend):
        assert call(client, "getCurrentSSID") is None
        assert call(client, "getCurrentIP") is None

        backend.ssid = "Home"

        assert call(client, "getCurrentSSID") == "Home"
        assert call(client, "getCurrentIP") == "192.168.1.23"


class TestStatus:
    def test_idle(self, client):
        status = client.get("/api/status").json()

        assert status["state"] == AssociationState.IDLE.value
        assert status["ssid"] is None
        assert status["network_handle"] is None
        assert status["capabilities"]["network_request"] is True

    def test_bound(self, client, backend, home_handle):
        backend.auto_event = NetworkEvent.available(home_handle)
        call(client, "connect", {"ssid": "Home"})

        status = client.get("/api/status").json()

        assert status["state"] == "BOUND"
        assert status["ssid"] == "Home"
        assert status["network_handle"]["interface"] == "wlan0"


class TestScanEvents:
    def test_ping(self, client):
        with client.websocket_connect(SCAN_EVENTS_PATH) as websocket:
            websocket.send_text("ping")
            assert websocket.receive_text() == "pong"

    def test_results_are_pushed(self, client, backend):
        with client.websocket_connect(SCAN_EVENTS_PATH) as websocket:
            websocket.send_text("ping")
            websocket.receive_text()

            backend.publish(
                ScanResultsEvent(access_points=[AccessPoint(ssid="Cafe", signal=90)])
            )
            message = websocket.receive_json()

        assert [ap["ssid"] for ap in message] == ["Cafe"]

    def test_error_closes_stream(self, client, backend):
        with client.websocket_connect(SCAN_EVENTS_PATH) as websocket:
            websocket.send_text("ping")
            websocket.receive_text()

            backend.publish(ScanResultsEvent(error="Failed to list access points"))

            assert websocket.receive_json() == {"error": "Failed to list access points"}
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_text()

        assert exc_info.value.code == 1011

    def test_publish_without_subscribers(self, server, backend):
        backend.publish(ScanResultsEvent())
