"""
Network association controller.

Tracks the single outstanding association request, drives it through the
platform backend and resolves its result exactly once.
"""

import logging
import threading
from concurrent.futures import Future
from functools import partial

from .errors import CallbackNotRegistered, MalformedIdentifier, WifiBridgeError
from .models import (
    AssociationState,
    CapabilityFilter,
    ConnectionIntent,
    NetworkEvent,
    NetworkEventKind,
    NetworkHandle,
    NetworkSpecifier,
    SecurityMode,
    parse_peer_identifier,
)
from .platform import ConnectivityBackend, NetworkCallback

logger = logging.getLogger(__name__)


class AssociationSession:
    def __init__(self, intent: ConnectionIntent):
        self.intent = intent
        self.result: Future[bool] = Future()
        self.state = AssociationState.REQUESTING
        self.callback: NetworkCallback | None = None
        self.network_handle: NetworkHandle | None = None
        self.profile_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state in (AssociationState.REQUESTING, AssociationState.BOUND)

    def __repr__(self):
        return f"AssociationSession(ssid={self.intent.identifier}, state={self.state.value})"


def _resolved(value: bool) -> Future:
    future: Future[bool] = Future()
    future.set_result(value)
    return future


def build_capability_filter(intent: ConnectionIntent, bssid: str | None) -> CapabilityFilter:
    """Translate an intent into the filter the backend matches networks against."""
    passphrase = intent.credential
    if passphrase == "":
        logger.warning("Credential should not be empty, requesting without one")
        passphrase = None

    security_mode = intent.security_mode
    if security_mode == SecurityMode.UNSPECIFIED:
        logger.warning("Security mode is unspecified, falling back to PSK")
        security_mode = SecurityMode.PSK

    return CapabilityFilter(
        transport="wifi",
        internet=intent.requires_internet_capability,
        specifier=NetworkSpecifier(
            ssid=intent.identifier,
            bssid=bssid,
            passphrase=passphrase,
            security_mode=security_mode,
        ),
    )


class AssociationController:
    """
    Owns the association session and the process-wide network binding.

    ``connect`` and ``disconnect`` are called from caller threads; network
    events arrive on whatever thread the backend uses. All session mutation
    happens under one lock.
    """

    def __init__(self, backend: ConnectivityBackend):
        self.backend = backend
        self._lock = threading.RLock()
        self._session: AssociationSession | None = None

    @property
    def state(self) -> AssociationState:
        with self._lock:
            return self._session.state if self._session else AssociationState.IDLE

    @property
    def session(self) -> AssociationSession | None:
        with self._lock:
            return self._session

    @property
    def network_handle(self) -> NetworkHandle | None:
        with self._lock:
            return self._session.network_handle if self._session else None

    def status(self) -> dict:
        """Consistent snapshot of state, target SSID and bound handle."""
        with self._lock:
            session = self._session
            handle = session.network_handle if session else None
            return {
                "state": (session.state if session else AssociationState.IDLE).value,
                "ssid": session.intent.identifier if session else None,
                "network_handle": handle.model_dump() if handle else None,
            }

    def connect(self, intent: ConnectionIntent, force_compat: bool = False) -> Future:
        """Request association with the network described by ``intent``.

        Returns a future that resolves True once the network is available and
        process traffic is bound to it, or False on any failure.
        """
        try:
            bssid = parse_peer_identifier(intent.peer_identifier)
        except MalformedIdentifier as e:
            logger.error(f"Rejecting connection to {intent.identifier}: {e}")
            return _resolved(False)

        capabilities = self.backend.capabilities
        if force_compat:
            if not capabilities.profile_association:
                logger.error("Compat association requested but not supported by platform")
                return _resolved(False)
            return self._connect_compat(intent)

        if not capabilities.network_request:
            logger.error("Platform does not support network requests")
            return _resolved(False)

        capability_filter = build_capability_filter(intent, bssid)

        timeout: float | None = intent.timeout
        if not capabilities.request_timeout:
            logger.warning(
                f"Request timeout ({intent.timeout}s) is not supported by this platform, ignoring it"
            )
            timeout = None

        logger.debug(
            f"connect: ssid={intent.identifier}, bssid={bssid}, "
            f"internet={intent.requires_internet_capability}, timeout={timeout}"
        )

        with self._lock:
            self._teardown_current()

            session = AssociationSession(intent)
            session.callback = partial(self._on_network_event, session)
            self._session = session

            try:
                self.backend.request_network(capability_filter, session.callback, timeout)
            except WifiBridgeError as e:
                logger.error(f"Network request for {intent.identifier} failed: {e}")
                session.state = AssociationState.FAILED
                session.callback = None
                self._resolve(session, False)

        return session.result

    def _connect_compat(self, intent: ConnectionIntent) -> Future:
        with self._lock:
            self._teardown_current()

            session = AssociationSession(intent)
            self._session = session

        # Profile calls block on the platform and run unlocked; a connect or
        # disconnect may supersede this session meanwhile.
        profile_id: str | None = None
        enabled = False
        try:
            profile_id = self.backend.add_network_profile(intent)
            if profile_id is None:
                logger.error(f"Could not add network profile for {intent.identifier}")
            else:
                enabled = self.backend.enable_network_profile(profile_id)
        except (WifiBridgeError, TimeoutError) as e:
            logger.error(f"Compat association with {intent.identifier} failed: {e!r}")
            enabled = False

        with self._lock:
            if session is not self._session:
                logger.info(f"Compat association with {intent.identifier} was superseded")
                current = self._session
                same_profile = (
                    current is not None and current.intent.identifier == intent.identifier
                )
                if profile_id is not None and not same_profile:
                    self._disable_profile(profile_id)
                return session.result

            session.profile_id = profile_id
            if enabled:
                session.state = AssociationState.BOUND
                session.network_handle = NetworkHandle(id=profile_id, connection=profile_id)
                logger.info(f"Enabled network profile {profile_id} for {intent.identifier}")
            else:
                session.state = AssociationState.FAILED
            self._resolve(session, enabled)

        return session.result

    def _disable_profile(self, profile_id: str) -> None:
        try:
            self.backend.disable_network_profile(profile_id)
        except (WifiBridgeError, TimeoutError) as e:
            logger.warning(f"Failed to disable network profile {profile_id}: {e!r}")

    def disconnect(self) -> bool:
        """Tear down the current session, if any.

        Returns True if a requesting or bound session was torn down.
        """
        with self._lock:
            session = self._session
            if session is None:
                logger.debug("disconnect: no active session")
                return False

            was_active = session.is_active
            self._teardown_current()
            return was_active

    reset = disconnect

    def bind_process_traffic(self, handle: NetworkHandle | None) -> bool:
        """Bind process traffic to ``handle``, or clear the binding with None."""
        with self._lock:
            if not self.backend.capabilities.process_binding:
                if handle is not None:
                    logger.warning("Platform cannot bind process traffic to a network")
                return False
            logger.debug(f"Binding process traffic to {handle}")
            return self.backend.bind_process_to_network(handle)

    def _teardown_current(self) -> None:
        """Release the current session. Caller holds the lock."""
        session = self._session
        if session is None:
            return

        logger.debug(f"Tearing down {session}")
        self._unregister(session)

        if session.profile_id is not None:
            self._disable_profile(session.profile_id)

        if session.network_handle is not None or session.state == AssociationState.BOUND:
            self.bind_process_traffic(None)

        session.network_handle = None
        session.state = AssociationState.IDLE
        self._resolve(session, False)
        self._session = None

    def _unregister(self, session: AssociationSession) -> None:
        callback = session.callback
        if callback is None:
            return
        session.callback = None
        try:
            self.backend.unregister_network_callback(callback)
        except CallbackNotRegistered as e:
            logger.debug(f"Callback already unregistered: {e}")

    def _resolve(self, session: AssociationSession, value: bool) -> None:
        if session.result.done():
            logger.debug(f"Result for {session.intent.identifier} already resolved, ignoring {value}")
            return
        session.result.set_result(value)

    def _on_network_event(self, session: AssociationSession, event: NetworkEvent) -> None:
        with self._lock:
            if session is not self._session:
                logger.debug(f"Ignoring {event.kind.value} for superseded {session}")
                return

            logger.info(f"Network event for {session.intent.identifier}: {event.kind.value}")

            if event.kind == NetworkEventKind.AVAILABLE:
                self._handle_available(session, event)
            elif event.kind == NetworkEventKind.UNAVAILABLE:
                self._handle_unavailable(session, event)
            elif event.kind == NetworkEventKind.LOST:
                self._handle_lost(session, event)
            elif event.kind == NetworkEventKind.LOSING:
                logger.warning(
                    f"Network {event.handle} is about to be lost "
                    f"(max {event.max_ms_to_live} ms to live)"
                )

    def _handle_available(self, session: AssociationSession, event: NetworkEvent) -> None:
        if session.state not in (AssociationState.REQUESTING, AssociationState.BOUND):
            logger.debug(f"Ignoring AVAILABLE in state {session.state.value}")
            return

        session.network_handle = event.handle
        session.state = AssociationState.BOUND
        self.bind_process_traffic(event.handle)
        self._resolve(session, True)

    def _handle_unavailable(self, session: AssociationSession, event: NetworkEvent) -> None:
        if session.state not in (AssociationState.REQUESTING, AssociationState.BOUND):
            return

        if event.reason:
            logger.warning(f"Network {session.intent.identifier} unavailable: {event.reason}")

        if session.network_handle is not None or session.state == AssociationState.BOUND:
            self.bind_process_traffic(None)
        session.network_handle = None
        session.state = AssociationState.FAILED
        self._unregister(session)
        self._resolve(session, False)

    def _handle_lost(self, session: AssociationSession, event: NetworkEvent) -> None:
        # A result already resolved True stays True
        self._teardown_current()
