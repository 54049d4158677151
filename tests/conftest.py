"""
Shared pytest fixtures for the WiFi Bridge test suite.

Provides an in-memory connectivity backend that records every platform call
so tests can assert on registration order and process binding.
"""

import pytest

from wifi_bridge.core.config import Settings
from wifi_bridge.core.controller import AssociationController
from wifi_bridge.core.errors import CallbackNotRegistered
from wifi_bridge.core.models import (
    AccessPoint,
    CanGetScannedResults,
    CanStartScan,
    NetworkEvent,
    NetworkHandle,
    PlatformCapabilities,
    ScanResultsEvent,
)
from wifi_bridge.core.platform import ConnectivityBackend

FULL_CAPABILITIES = PlatformCapabilities(
    network_request=True,
    request_timeout=True,
    profile_association=True,
    process_binding=True,
    version="1.42.4",
)


class FakeBackend(ConnectivityBackend):
    """Records platform calls; events are injected with ``emit``."""

    def __init__(self, capabilities: PlatformCapabilities = FULL_CAPABILITIES):
        self._capabilities = capabilities
        self.calls: list[tuple] = []
        self.registrations: list = []
        self.requests: list[tuple] = []
        self.bind_history: list[NetworkHandle | None] = []
        self._bound: NetworkHandle | None = None
        self.auto_event: NetworkEvent | None = None
        self.request_error: Exception | None = None
        self.profile_id: str | None = "wifi-bridge-Home"
        self.profile_error: Exception | None = None
        self.add_hook = None
        self.enable_result = True
        self.disabled_profiles: list[str] = []
        self.access_points: list[AccessPoint] = []
        self.scan_listeners: list = []
        self.ssid: str | None = None

    @property
    def capabilities(self) -> PlatformCapabilities:
        return self._capabilities

    def request_network(self, capability_filter, callback, timeout=None) -> None:
        self.calls.append(("request", capability_filter.specifier.ssid))
        if self.request_error is not None:
            raise self.request_error
        self.requests.append((capability_filter, callback, timeout))
        self.registrations.append(callback)
        if self.auto_event is not None:
            callback(self.auto_event)

    def unregister_network_callback(self, callback) -> None:
        for index, registered in enumerate(self.registrations):
            if registered is callback:
                del self.registrations[index]
                self.calls.append(("unregister", None))
                return
        raise CallbackNotRegistered("not registered")

    def emit(self, event: NetworkEvent, callback=None) -> None:
        """Deliver ``event`` to ``callback`` (default: most recent request)."""
        if callback is None:
            callback = self.requests[-1][1]
        callback(event)

    def drop_registrations(self) -> None:
        """Simulate the platform tearing registrations down on its own."""
        self.registrations.clear()

    def bind_process_to_network(self, handle) -> bool:
        self.calls.append(("bind", handle))
        self.bind_history.append(handle)
        self._bound = handle
        return True

    @property
    def bound_network(self):
        return self._bound

    def add_network_profile(self, intent) -> str | None:
        self.calls.append(("add_profile", intent.identifier))
        if self.add_hook is not None:
            self.add_hook()
        if self.profile_error is not None:
            raise self.profile_error
        return self.profile_id

    def enable_network_profile(self, profile_id: str) -> bool:
        self.calls.append(("enable_profile", profile_id))
        return self.enable_result

    def disable_network_profile(self, profile_id: str) -> bool:
        self.disabled_profiles.append(profile_id)
        return True

    def can_start_scan(self, ask_permissions: bool = True) -> CanStartScan:
        return CanStartScan.YES if ask_permissions else CanStartScan.NO_PERMISSION

    def start_scan(self) -> bool:
        self.publish(ScanResultsEvent(access_points=self.access_points))
        return True

    def can_get_scanned_results(self, ask_permissions: bool = True) -> CanGetScannedResults:
        return CanGetScannedResults.YES

    def get_scanned_results(self) -> list[AccessPoint]:
        return self.access_points

    def on_scanned_results(self, listener) -> None:
        self.scan_listeners.append(listener)

    def publish(self, event: ScanResultsEvent) -> None:
        for listener in self.scan_listeners:
            listener(event)

    def current_ssid(self) -> str | None:
        return self.ssid

    def current_ip(self) -> str | None:
        return "192.168.1.23" if self.ssid else None


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        backend="nmcli",
        wifi_interface="wlan0",
        monitor_events=False,
        scan_settle_delay=0.0,
        command_timeout=5.0,
        log_dir=tmp_path / "log",
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def controller(backend) -> AssociationController:
    return AssociationController(backend)


@pytest.fixture
def home_handle() -> NetworkHandle:
    return NetworkHandle(id="3f1c", interface="wlan0", connection="wifi-bridge-Home")
