"""
Platform connectivity abstraction.

A backend is selected once at startup. Every backend exposes the same
request/unregister/bind surface; what differs is reported through
``PlatformCapabilities`` so callers never branch on platform versions
themselves.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from collections.abc import Callable

from .config import Settings
from .errors import CallbackNotRegistered, UnsupportedPlatformVersion
from .models import (
    AccessPoint,
    CanGetScannedResults,
    CanStartScan,
    CapabilityFilter,
    ConnectionIntent,
    NetworkEvent,
    NetworkHandle,
    PlatformCapabilities,
    ScanResultsEvent,
)

logger = logging.getLogger(__name__)

NetworkCallback = Callable[[NetworkEvent], None]
ScanResultsListener = Callable[[ScanResultsEvent], None]


class ConnectivityBackend(ABC):
    """Uniform interface over the platform's connectivity subsystem.

    Callbacks passed to ``request_network`` may be invoked from a thread the
    backend owns. Registrations are matched by callback identity.
    """

    @property
    @abstractmethod
    def capabilities(self) -> PlatformCapabilities: ...

    def start(self) -> None:
        """Acquire platform resources. Called once before first use."""

    def close(self) -> None:
        """Release platform resources."""

    # Network requests

    @abstractmethod
    def request_network(
        self,
        capability_filter: CapabilityFilter,
        callback: NetworkCallback,
        timeout: float | None = None,
    ) -> None:
        """Issue a network request; results arrive through ``callback``.

        Must not block on the association itself.
        """

    @abstractmethod
    def unregister_network_callback(self, callback: NetworkCallback) -> None:
        """Release the request registered with ``callback``.

        Raises CallbackNotRegistered when the platform has no such registration.
        """

    @abstractmethod
    def bind_process_to_network(self, handle: NetworkHandle | None) -> bool:
        """Route process traffic through ``handle``; None clears the binding.

        Must not block: it is called with the controller lock held, possibly
        from the thread that delivers network events.
        """

    @property
    @abstractmethod
    def bound_network(self) -> NetworkHandle | None: ...

    # Profile (compat) association

    def add_network_profile(self, intent: ConnectionIntent) -> str | None:
        raise UnsupportedPlatformVersion("Profile association is not supported")

    def enable_network_profile(self, profile_id: str) -> bool:
        raise UnsupportedPlatformVersion("Profile association is not supported")

    def disable_network_profile(self, profile_id: str) -> bool:
        """Deactivate a profile added by ``add_network_profile``. Must not block."""
        raise UnsupportedPlatformVersion("Profile association is not supported")

    # Scanning and status

    @abstractmethod
    def can_start_scan(self, ask_permissions: bool = True) -> CanStartScan: ...

    @abstractmethod
    def start_scan(self) -> bool: ...

    @abstractmethod
    def can_get_scanned_results(self, ask_permissions: bool = True) -> CanGetScannedResults: ...

    @abstractmethod
    def get_scanned_results(self) -> list[AccessPoint]: ...

    @abstractmethod
    def on_scanned_results(self, listener: ScanResultsListener) -> None: ...

    @abstractmethod
    def current_ssid(self) -> str | None: ...

    @abstractmethod
    def current_ip(self) -> str | None: ...


class UnsupportedBackend(ConnectivityBackend):
    """Backend for hosts without a usable connectivity service.

    Every association request fails and every scan query reports
    NOT_SUPPORTED.
    """

    def __init__(self):
        self._bound: NetworkHandle | None = None

    @property
    def capabilities(self) -> PlatformCapabilities:
        return PlatformCapabilities()

    def request_network(self, capability_filter, callback, timeout=None) -> None:
        raise UnsupportedPlatformVersion("No connectivity backend available")

    def unregister_network_callback(self, callback) -> None:
        # Nothing is ever registered here
        raise CallbackNotRegistered("No connectivity backend available")

    def bind_process_to_network(self, handle: NetworkHandle | None) -> bool:
        self._bound = handle
        return True

    @property
    def bound_network(self) -> NetworkHandle | None:
        return self._bound

    def can_start_scan(self, ask_permissions: bool = True) -> CanStartScan:
        return CanStartScan.NOT_SUPPORTED

    def start_scan(self) -> bool:
        return False

    def can_get_scanned_results(self, ask_permissions: bool = True) -> CanGetScannedResults:
        return CanGetScannedResults.NOT_SUPPORTED

    def get_scanned_results(self) -> list[AccessPoint]:
        return []

    def on_scanned_results(self, listener: ScanResultsListener) -> None:
        pass

    def current_ssid(self) -> str | None:
        return None

    def current_ip(self) -> str | None:
        return None


def select_backend(settings: Settings) -> ConnectivityBackend:
    """Pick the connectivity backend for this host."""
    if settings.backend == "none":
        logger.info("Connectivity backend disabled by configuration")
        return UnsupportedBackend()

    if settings.backend == "auto" and shutil.which("nmcli") is None:
        logger.warning("nmcli not found - association and scanning are unavailable")
        return UnsupportedBackend()

    from .nmcli import NmcliBackend

    logger.info("Using NetworkManager backend")
    return NmcliBackend(settings)
