"""Tests for settings, paths and backend selection."""

import socket

import pytest
from pydantic import ValidationError

from wifi_bridge.__main__ import find_available_port
from wifi_bridge.core.config import Settings
from wifi_bridge.core.controller import AssociationController
from wifi_bridge.core.models import CanStartScan, ConnectionIntent
from wifi_bridge.core.nmcli import NmcliBackend
from wifi_bridge.core.platform import UnsupportedBackend, select_backend
from wifi_bridge.paths import get_log_dir


class TestSettings:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = Settings()

        assert settings.backend == "auto"
        assert settings.connection_prefix == "wifi-bridge-"
        assert settings.web_port == 8765
        assert settings.get_base_url() == "http://127.0.0.1:8765"

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("WIFI_BRIDGE_WEB_PORT", "9000")
        monkeypatch.setenv("WIFI_BRIDGE_WIFI_INTERFACE", "wlp2s0")
        monkeypatch.setenv("WIFI_BRIDGE_BACKEND", "none")

        settings = Settings()

        assert settings.web_port == 9000
        assert settings.wifi_interface == "wlp2s0"
        assert settings.backend == "none"

    def test_rejects_unknown_backend(self):
        with pytest.raises(ValidationError):
            Settings(backend="iwd")

    def test_ensure_directories(self, tmp_path):
        settings = Settings(log_dir=tmp_path / "nested" / "log")

        settings.ensure_directories()

        assert settings.log_dir.is_dir()

    def test_log_dir_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("WIFI_BRIDGE_LOG_DIR", str(tmp_path))

        assert get_log_dir() == tmp_path


class TestSelectBackend:
    def test_disabled(self, settings):
        backend = select_backend(settings.model_copy(update={"backend": "none"}))

        assert isinstance(backend, UnsupportedBackend)

    def test_auto_without_nmcli(self, settings, monkeypatch):
        monkeypatch.setattr("wifi_bridge.core.platform.shutil.which", lambda name: None)

        backend = select_backend(settings.model_copy(update={"backend": "auto"}))

        assert isinstance(backend, UnsupportedBackend)

    def test_nmcli(self, settings):
        assert isinstance(select_backend(settings), NmcliBackend)


class TestUnsupportedBackend:
    def test_association_fails_cleanly(self):
        controller = AssociationController(UnsupportedBackend())

        result = controller.connect(ConnectionIntent(identifier="Home"))

        assert result.result() is False
        assert controller.disconnect() is False

    def test_scanning_not_supported(self):
        backend = UnsupportedBackend()

        assert backend.can_start_scan() == CanStartScan.NOT_SUPPORTED
        assert backend.start_scan() is False
        assert backend.get_scanned_results() == []


def test_find_available_port_skips_busy_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        port = busy.getsockname()[1]

        selected = find_available_port("127.0.0.1", port, max_attempts=5)

    assert selected is not None
    assert selected != port
