"""WiFi Bridge.

Wi-Fi scanning and network-association primitives for an application layer,
backed by NetworkManager.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("wifi-bridge")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
