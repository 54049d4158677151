"""NetworkManager backend for association requests and scanning."""

import asyncio
import logging
import math
import re
import threading
import time
from concurrent.futures import Future

from .config import Settings
from .errors import (
    CallbackNotRegistered,
    RequestTimeout,
    RequestUnavailable,
    UnsupportedPlatformVersion,
)
from .models import (
    AccessPoint,
    CanGetScannedResults,
    CanStartScan,
    CapabilityFilter,
    ConnectionIntent,
    NetworkEvent,
    NetworkHandle,
    NetworkSpecifier,
    PlatformCapabilities,
    ScanResultsEvent,
    SecurityMode,
)
from .platform import ConnectivityBackend, NetworkCallback, ScanResultsListener

logger = logging.getLogger(__name__)

# `nmcli --wait` appeared in NetworkManager 1.2
MIN_WAIT_VERSION = (1, 2)

# nmcli exit status when --wait expires
NMCLI_TIMEOUT_EXIT_CODE = 3

SCAN_PERMISSION = "org.freedesktop.NetworkManager.wifi.scan"

SCAN_FIELDS = "SSID,BSSID,CHAN,FREQ,SIGNAL,SECURITY,IN-USE"

# Metric given to the bound connection so it wins over other defaults
BOUND_ROUTE_METRIC = 50

# nmcli value restoring the per-device default metric
DEFAULT_ROUTE_METRIC = -1

# All patterns are lowercase since stderr is lowercased for comparison
CONNECTION_ERRORS = {
    "secrets were required": "Incorrect password",
    "no network with ssid": "Network not found or out of range",
    "timeout was reached": "Connection timeout - weak signal",
    "base network connection was interrupted": "Network interference detected",
    "failed to activate": "Unable to activate connection",
    "ip configuration could not be reserved": "DHCP timeout - network busy",
}


def parse_connection_error(stderr: str) -> str:
    """Convert technical nmcli errors to user-friendly messages."""
    stderr_lower = stderr.lower()
    for pattern, message in CONNECTION_ERRORS.items():
        if pattern in stderr_lower:
            return message

    return f"Connection failed: {stderr[:100]}"


def split_terse(line: str) -> list[str]:
    """Split a line of `nmcli -t` output, honouring `\\:` and `\\\\` escapes."""
    fields = []
    current = []
    escaped = False
    for char in line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


def parse_nmcli_version(output: str) -> tuple[int, ...] | None:
    match = re.search(r"version (\d+)\.(\d+)(?:\.(\d+))?", output)
    if not match:
        return None
    return tuple(int(part) for part in match.groups() if part is not None)


def signal_to_dbm(signal: int) -> int:
    """Approximate dBm from NetworkManager's 0-100 signal quality."""
    return signal // 2 - 100


def parse_access_points(stdout: str) -> list[AccessPoint]:
    """Parse `nmcli -t -f SSID,BSSID,CHAN,FREQ,SIGNAL,SECURITY,IN-USE device wifi list`."""
    access_points = []
    for line in stdout.split("\n"):
        if not line:
            continue
        parts = split_terse(line)
        if len(parts) < 7:
            continue

        ssid, bssid, chan, freq, signal_str, security, in_use = parts[:7]
        if not ssid:
            continue

        try:
            signal = int(signal_str) if signal_str else 0
        except ValueError:
            signal = 0

        try:
            channel = int(chan) if chan else None
        except ValueError:
            channel = None

        try:
            frequency = int(freq.split()[0]) if freq else None
        except ValueError:
            frequency = None

        access_points.append(
            AccessPoint(
                ssid=ssid,
                bssid=bssid or None,
                capabilities=security if security and security != "--" else "Open",
                frequency=frequency,
                channel=channel,
                level=signal_to_dbm(signal),
                signal=signal,
                is_connected=in_use == "*",
            )
        )

    access_points.sort(key=lambda ap: ap.signal, reverse=True)
    return access_points


def build_profile_args(
    specifier: NetworkSpecifier,
    name: str,
    device: str,
    internet: bool,
    autoconnect: bool = False,
) -> list[str]:
    """Build the `nmcli connection add` command for a network specifier."""
    cmd = [
        "nmcli",
        "connection",
        "add",
        "type",
        "wifi",
        "con-name",
        name,
        "ifname",
        device,
        "ssid",
        specifier.ssid,
        "autoconnect",
        "yes" if autoconnect else "no",
    ]

    if specifier.bssid:
        cmd += ["802-11-wireless.bssid", specifier.bssid]

    if specifier.passphrase:
        key_mgmt = "sae" if specifier.security_mode == SecurityMode.SAE else "wpa-psk"
        cmd += [
            "802-11-wireless-security.key-mgmt",
            key_mgmt,
            "802-11-wireless-security.psk",
            specifier.passphrase,
        ]

    if not internet:
        # Local-only network: never take over the default route
        cmd += ["ipv4.never-default", "yes", "ipv6.never-default", "yes"]

    return cmd


class _Registration:
    def __init__(self, callback: NetworkCallback, capability_filter: CapabilityFilter):
        self.callback = callback
        self.filter = capability_filter
        self.connection_name: str | None = None
        self.handle: NetworkHandle | None = None
        self.task: Future | None = None

    def __repr__(self):
        return f"_Registration(ssid={self.filter.specifier.ssid}, handle={self.handle})"


class NmcliBackend(ConnectivityBackend):
    """
    Connectivity backend driving NetworkManager through nmcli.

    Runs its own asyncio loop on a daemon thread. Network callbacks and
    scanned-results listeners are invoked from that thread.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.wifi_device: str | None = settings.wifi_interface
        self._device_cache_time = 0.0
        self._device_cache_timeout = 300
        self._capabilities = PlatformCapabilities()
        self._registrations: list[_Registration] = []
        self._scan_listeners: list[ScanResultsListener] = []
        self._last_scan_results: list[AccessPoint] = []
        self._bound: NetworkHandle | None = None
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._monitor_task: Future | None = None
        self._scan_task: asyncio.Task | None = None
        self._binding_task: Future | None = None
        # Loop-thread only
        self._profile_locks: dict[str, asyncio.Lock] = {}
        self._local_only: set[str] = set()

    @property
    def capabilities(self) -> PlatformCapabilities:
        return self._capabilities

    def start(self) -> None:
        if self._loop is not None:
            return

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="nmcli-backend", daemon=True)
        self._thread.start()

        self._call(self._detect_capabilities())
        if self.settings.monitor_events:
            self._monitor_task = self._submit(self.monitor_events())

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def close(self) -> None:
        if self._loop is None:
            return

        with self._lock:
            self._registrations.clear()

        try:
            self._call(self._cancel_pending())
        except Exception as e:
            logger.error(f"Error cancelling backend tasks: {e}")

        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5.0)
        self._loop.close()
        self._loop = None
        self._thread = None
        logger.info("NetworkManager backend stopped")

    async def _cancel_pending(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in asyncio.all_tasks() if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _submit(self, coro) -> Future:
        if self._loop is None:
            coro.close()
            raise RuntimeError("NmcliBackend.start() has not been called")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def _call(self, coro):
        return self._submit(coro).result(timeout=self.settings.command_timeout)

    async def _run_command(self, cmd: list[str]) -> tuple[int | None, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
            stdout, stderr = await process.communicate()

            return (
                process.returncode,
                stdout.decode("utf-8").strip(),
                stderr.decode("utf-8").strip(),
            )
        except Exception as e:
            logger.error(f"Command execution failed: {e}")
            return (1, "", str(e))

    async def _detect_capabilities(self) -> None:
        """Detect which request features this NetworkManager supports."""
        returncode, stdout, stderr = await self._run_command(["nmcli", "--version"])
        if returncode != 0:
            logger.error(f"nmcli is not usable: {stderr}")
            self._capabilities = PlatformCapabilities()
            return

        version = parse_nmcli_version(stdout)
        await self._detect_wifi_device()
        has_device = self.wifi_device is not None
        supports_wait = version is not None and version >= MIN_WAIT_VERSION

        self._capabilities = PlatformCapabilities(
            network_request=has_device,
            request_timeout=has_device and supports_wait,
            profile_association=has_device,
            process_binding=has_device,
            version=".".join(str(part) for part in version) if version else None,
        )

        if has_device:
            logger.info(f"WiFi device detected: {self.wifi_device}")
        else:
            logger.warning("No WiFi device detected")
        logger.info(f"Platform capabilities: {self._capabilities}")

    async def _detect_wifi_device(self) -> None:
        if self.settings.wifi_interface:
            self.wifi_device = self.settings.wifi_interface
            return

        current_time = time.time()
        if (
            self.wifi_device
            and (current_time - self._device_cache_time) < self._device_cache_timeout
        ):
            return

        returncode, stdout, _ = await self._run_command(
            ["nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"]
        )

        if returncode != 0:
            logger.error("Failed to get network devices")
            return

        wifi_devices = []
        for line in stdout.split("\n"):
            if not line:
                continue
            parts = split_terse(line)
            if len(parts) >= 3:
                device, dev_type, state = parts[0], parts[1], parts[2]
                if dev_type == "wifi":
                    wifi_devices.append((device, state))

        # Priority: connected > disconnected > unavailable
        for device, state in wifi_devices:
            if state == "connected":
                self.wifi_device = device
                break
        else:
            for device, state in wifi_devices:
                if state == "disconnected":
                    self.wifi_device = device
                    break
            else:
                if wifi_devices:
                    self.wifi_device = wifi_devices[0][0]

        self._device_cache_time = current_time

    # Network requests

    def request_network(
        self,
        capability_filter: CapabilityFilter,
        callback: NetworkCallback,
        timeout: float | None = None,
    ) -> None:
        if not self._capabilities.network_request:
            raise UnsupportedPlatformVersion("NetworkManager cannot serve network requests")

        registration = _Registration(callback, capability_filter)
        with self._lock:
            if any(r.callback is callback for r in self._registrations):
                raise ValueError("Network callback is already registered")
            self._registrations.append(registration)

        registration.task = self._submit(self._activate(registration, timeout))

    def unregister_network_callback(self, callback: NetworkCallback) -> None:
        with self._lock:
            registration = next((r for r in self._registrations if r.callback is callback), None)
            if registration is None:
                raise CallbackNotRegistered("Network callback was not registered")
            self._registrations.remove(registration)

        logger.debug(f"Unregistered {registration}")

        if registration.task and not registration.task.done():
            registration.task.cancel()

        if registration.connection_name:
            self._submit(self._release(registration.connection_name))

    async def _activate(self, registration: _Registration, timeout: float | None) -> None:
        specifier = registration.filter.specifier
        name = f"{self.settings.connection_prefix}{specifier.ssid}"
        registration.connection_name = name
        if registration.filter.internet:
            self._local_only.discard(name)
        else:
            self._local_only.add(name)

        try:
            # Waits for any release of the same profile queued before us
            async with self._profile_lock(name):
                try:
                    handle = await self._bring_up(name, registration.filter, timeout)
                except asyncio.CancelledError:
                    await self._remove_profile(name)
                    raise
        except RequestUnavailable as e:
            logger.warning(f"Network request for {specifier.ssid} failed: {e.reason}")
            self._dispatch(registration, NetworkEvent.unavailable(e.reason))
            return

        registration.handle = handle
        logger.info(f"Network {specifier.ssid} available on {handle.interface}")
        self._dispatch(registration, NetworkEvent.available(handle))

    async def _bring_up(
        self, name: str, capability_filter: CapabilityFilter, timeout: float | None
    ) -> NetworkHandle:
        if not self.wifi_device:
            await self._detect_wifi_device()
            if not self.wifi_device:
                raise RequestUnavailable("No WiFi device available")

        # Drop any stale profile left by an earlier request
        await self._run_command(["nmcli", "connection", "delete", name])

        cmd = build_profile_args(
            capability_filter.specifier, name, self.wifi_device, capability_filter.internet
        )
        returncode, _, stderr = await self._run_command(cmd)
        if returncode != 0:
            raise RequestUnavailable(f"Failed to create connection profile: {stderr}")

        cmd = ["nmcli"]
        if timeout is not None:
            cmd += ["--wait", str(max(1, math.ceil(timeout)))]
        cmd += ["connection", "up", name]

        returncode, _, stderr = await self._run_command(cmd)
        if returncode != 0:
            await self._run_command(["nmcli", "connection", "delete", name])
            if returncode == NMCLI_TIMEOUT_EXIT_CODE:
                raise RequestTimeout(f"No matching network within {timeout}s")
            raise RequestUnavailable(parse_connection_error(stderr))

        if capability_filter.internet:
            connectivity = await self._check_connectivity()
            if connectivity != "full":
                await self._remove_profile(name)
                raise RequestUnavailable(f"Network has no internet access ({connectivity})")

        returncode, stdout, _ = await self._run_command(
            ["nmcli", "-g", "connection.uuid", "connection", "show", name]
        )
        uuid = stdout if returncode == 0 and stdout else name

        return NetworkHandle(id=uuid, interface=self.wifi_device, connection=name)

    async def _check_connectivity(self) -> str:
        returncode, stdout, _ = await self._run_command(
            ["nmcli", "networking", "connectivity", "check"]
        )
        if returncode != 0:
            return "unknown"
        return stdout.strip().lower()

    def _profile_lock(self, name: str) -> asyncio.Lock:
        """Serialises every command sequence touching the profile ``name``."""
        lock = self._profile_locks.get(name)
        if lock is None:
            lock = self._profile_locks[name] = asyncio.Lock()
        return lock

    async def _release(self, name: str) -> None:
        async with self._profile_lock(name):
            await self._remove_profile(name)

    async def _remove_profile(self, name: str) -> None:
        await self._run_command(["nmcli", "connection", "down", name])
        await self._run_command(["nmcli", "connection", "delete", name])
        logger.debug(f"Released connection profile {name}")

    def _dispatch(self, registration: _Registration, event: NetworkEvent) -> None:
        with self._lock:
            registered = any(r is registration for r in self._registrations)
        if not registered:
            logger.debug(f"Dropping {event.kind.value} for unregistered {registration}")
            return

        try:
            registration.callback(event)
        except Exception as e:
            logger.error(f"Error in network callback: {e}", exc_info=True)

    def bind_process_to_network(self, handle: NetworkHandle | None) -> bool:
        """Make ``handle``'s connection carry default-routed traffic.

        The route change is queued on the backend loop; the previously bound
        connection gets its original routing back first.
        """
        with self._lock:
            if handle == self._bound:
                return True
            previous = self._bound
            self._bound = handle

        self._binding_task = self._submit(self._apply_binding(previous, handle))
        return True

    @property
    def bound_network(self) -> NetworkHandle | None:
        return self._bound

    async def _apply_binding(
        self, previous: NetworkHandle | None, handle: NetworkHandle | None
    ) -> None:
        if previous is not None and previous.connection:
            name = previous.connection
            async with self._profile_lock(name):
                never_default = "yes" if name in self._local_only else "no"
                if await self._set_routing(previous, DEFAULT_ROUTE_METRIC, never_default):
                    logger.info(f"Cleared process network binding from {name}")

        if handle is not None and handle.connection:
            async with self._profile_lock(handle.connection):
                if await self._set_routing(handle, BOUND_ROUTE_METRIC, "no"):
                    logger.info(
                        f"Bound process traffic to {handle.connection} on {handle.interface}"
                    )

    async def _set_routing(self, handle: NetworkHandle, metric: int, never_default: str) -> bool:
        returncode, _, stderr = await self._run_command(
            [
                "nmcli",
                "connection",
                "modify",
                handle.connection,
                "ipv4.route-metric",
                str(metric),
                "ipv6.route-metric",
                str(metric),
                "ipv4.never-default",
                never_default,
                "ipv6.never-default",
                never_default,
            ]
        )
        if returncode != 0:
            # Expected when the profile has already been released
            logger.debug(f"Could not update routing of {handle.connection}: {stderr}")
            return False

        if handle.interface:
            returncode, _, stderr = await self._run_command(
                ["nmcli", "device", "reapply", handle.interface]
            )
            if returncode != 0:
                logger.warning(f"Failed to reapply routing on {handle.interface}: {stderr}")
                return False
        return True

    # Profile (compat) association

    def add_network_profile(self, intent: ConnectionIntent) -> str | None:
        return self._call(self._add_network_profile(intent))

    async def _add_network_profile(self, intent: ConnectionIntent) -> str | None:
        if not self.wifi_device:
            await self._detect_wifi_device()
            if not self.wifi_device:
                logger.error("No WiFi device available")
                return None

        name = f"{self.settings.connection_prefix}{intent.identifier}"
        specifier = NetworkSpecifier(
            ssid=intent.identifier,
            passphrase=intent.credential or None,
            security_mode=SecurityMode.PSK,
        )

        async with self._profile_lock(name):
            self._local_only.discard(name)
            await self._run_command(["nmcli", "connection", "delete", name])
            returncode, _, stderr = await self._run_command(
                build_profile_args(
                    specifier, name, self.wifi_device, internet=True, autoconnect=True
                )
            )
        if returncode != 0:
            logger.error(f"Failed to create connection profile: {stderr}")
            return None
        return name

    def enable_network_profile(self, profile_id: str) -> bool:
        return self._call(self._enable_profile(profile_id))

    async def _enable_profile(self, profile_id: str) -> bool:
        async with self._profile_lock(profile_id):
            # Don't wait for activation
            returncode, _, stderr = await self._run_command(
                ["nmcli", "--wait", "0", "connection", "up", profile_id]
            )
        if returncode != 0:
            logger.error(f"Failed to enable {profile_id}: {parse_connection_error(stderr)}")
        return returncode == 0

    def disable_network_profile(self, profile_id: str) -> bool:
        self._submit(self._disable_profile(profile_id))
        return True

    async def _disable_profile(self, profile_id: str) -> None:
        async with self._profile_lock(profile_id):
            returncode, _, stderr = await self._run_command(
                ["nmcli", "connection", "down", profile_id]
            )
        if returncode != 0:
            logger.warning(f"Failed to disable {profile_id}: {stderr}")

    # Scanning and status

    def can_start_scan(self, ask_permissions: bool = True) -> CanStartScan:
        return self._call(self._scan_readiness(ask_permissions, SCAN_PERMISSION))

    def can_get_scanned_results(self, ask_permissions: bool = True) -> CanGetScannedResults:
        return CanGetScannedResults(self._call(self._scan_readiness(ask_permissions)))

    async def _scan_readiness(
        self, ask_permissions: bool, permission: str | None = None
    ) -> CanStartScan:
        if self._capabilities.version is None:
            return CanStartScan.NOT_SUPPORTED

        if not self.wifi_device:
            await self._detect_wifi_device()
            if not self.wifi_device:
                return CanStartScan.NOT_SUPPORTED

        returncode, stdout, _ = await self._run_command(["nmcli", "radio", "wifi"])
        if returncode != 0:
            return CanStartScan.FAILED

        if stdout.strip() != "enabled":
            if not ask_permissions:
                return CanStartScan.RADIO_DISABLED
            logger.info("WiFi radio is off, turning it on")
            returncode, _, stderr = await self._run_command(["nmcli", "radio", "wifi", "on"])
            if returncode != 0:
                logger.warning(f"Could not enable WiFi radio: {stderr}")
                return CanStartScan.RADIO_DISABLED

        if permission:
            returncode, stdout, _ = await self._run_command(
                ["nmcli", "-t", "-f", "PERMISSION,VALUE", "general", "permissions"]
            )
            if returncode != 0:
                return CanStartScan.FAILED

            permissions = {}
            for line in stdout.split("\n"):
                parts = split_terse(line)
                if len(parts) >= 2:
                    permissions[parts[0]] = parts[1]

            value = permissions.get(permission)
            if value == "no" or (value == "auth" and not ask_permissions):
                return CanStartScan.NO_PERMISSION

        return CanStartScan.YES

    def start_scan(self) -> bool:
        return self._call(self._start_scan())

    async def _start_scan(self) -> bool:
        if not self.wifi_device:
            await self._detect_wifi_device()
            if not self.wifi_device:
                return False

        returncode, _, stderr = await self._run_command(
            ["nmcli", "device", "wifi", "rescan", "ifname", self.wifi_device]
        )
        if returncode != 0:
            logger.warning(f"Network scan failed: {stderr}")
            return False

        self._scan_task = asyncio.get_running_loop().create_task(self._publish_scan_results())
        return True

    async def _publish_scan_results(self) -> None:
        await asyncio.sleep(self.settings.scan_settle_delay)
        try:
            event = ScanResultsEvent(access_points=await self._list_access_points())
        except RequestUnavailable as e:
            event = ScanResultsEvent(error=e.reason)

        for listener in list(self._scan_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in scanned results listener: {e}", exc_info=True)

    async def _list_access_points(self) -> list[AccessPoint]:
        if not self.wifi_device:
            raise RequestUnavailable("No WiFi device available")

        returncode, stdout, stderr = await self._run_command(
            [
                "nmcli",
                "-t",
                "-f",
                SCAN_FIELDS,
                "device",
                "wifi",
                "list",
                "ifname",
                self.wifi_device,
                "--rescan",
                "no",
            ]
        )
        if returncode != 0:
            raise RequestUnavailable(f"Failed to list access points: {stderr}")

        self._last_scan_results = parse_access_points(stdout)
        return self._last_scan_results

    def get_scanned_results(self) -> list[AccessPoint]:
        try:
            return self._call(self._list_access_points())
        except RequestUnavailable as e:
            logger.warning(f"{e.reason} - returning cached results")
            return self._last_scan_results

    def on_scanned_results(self, listener: ScanResultsListener) -> None:
        self._scan_listeners.append(listener)

    def current_ssid(self) -> str | None:
        return self._call(self._current_ssid())

    async def _current_ssid(self) -> str | None:
        if not self.wifi_device:
            return None

        returncode, stdout, _ = await self._run_command(
            [
                "nmcli",
                "-t",
                "-f",
                "ACTIVE,SSID",
                "device",
                "wifi",
                "list",
                "ifname",
                self.wifi_device,
                "--rescan",
                "no",
            ]
        )
        if returncode != 0:
            return None

        for line in stdout.split("\n"):
            parts = split_terse(line)
            if len(parts) >= 2 and parts[0] == "yes" and parts[1]:
                return parts[1]
        return None

    def current_ip(self) -> str | None:
        return self._call(self._current_ip())

    async def _current_ip(self) -> str | None:
        if not self.wifi_device:
            return None

        returncode, stdout, _ = await self._run_command(
            ["nmcli", "-t", "-f", "IP4.ADDRESS", "device", "show", self.wifi_device]
        )
        if returncode != 0:
            return None

        for line in stdout.split("\n"):
            if line.startswith("IP4.ADDRESS"):
                ip_info = line.split(":", 1)[1].strip()
                if "/" in ip_info:
                    return ip_info.split("/")[0]
        return None

    # Event monitoring

    async def monitor_events(self) -> None:
        """Watch `nmcli monitor` and report loss of networks we brought up."""
        logger.info("Starting NetworkManager event monitor")

        while True:
            process = None
            try:
                process = await asyncio.create_subprocess_exec(
                    "nmcli",
                    "monitor",
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )

                while True:
                    line = await process.stdout.readline()
                    if not line:
                        logger.warning("NetworkManager monitor process ended, restarting...")
                        break

                    event = line.decode("utf-8").strip()
                    if event:
                        logger.debug(f"NetworkManager event: {event}")
                        self.handle_monitor_line(event)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"NetworkManager monitor error: {e}", exc_info=True)
            finally:
                if process is not None and process.returncode is None:
                    process.kill()

            logger.info("Restarting NetworkManager event monitor in 5 seconds...")
            await asyncio.sleep(5)

    def handle_monitor_line(self, event: str) -> None:
        """Translate one `nmcli monitor` line into LOSING/LOST events."""
        event_lower = event.lower()

        with self._lock:
            bound = [r for r in self._registrations if r.handle is not None]
        if not bound:
            return

        device_prefix = f"{self.wifi_device}:" if self.wifi_device else None
        targets: list[_Registration] = []
        losing = False

        if device_prefix and event.startswith(device_prefix):
            if "deactivating" in event_lower:
                losing = True
                targets = [r for r in bound if r.handle.interface == self.wifi_device]
            elif "disconnected" in event_lower or "unavailable" in event_lower:
                targets = [r for r in bound if r.handle.interface == self.wifi_device]
        elif "deactivated" in event_lower or "deactivating" in event_lower:
            connection_match = re.search(r"'([^']+)'", event)
            if connection_match:
                name = connection_match.group(1)
                losing = "deactivating" in event_lower
                targets = [r for r in bound if r.handle.connection == name]

        for registration in targets:
            handle = registration.handle
            if losing:
                self._dispatch(registration, NetworkEvent.losing(handle))
            else:
                registration.handle = None
                logger.warning(f"Network {handle.connection} lost")
                self._dispatch(registration, NetworkEvent.lost(handle))
