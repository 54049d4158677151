"""Error taxonomy for association and platform failures.

None of these escape the association controller: it converts every failure
into a resolved ``False`` result and logs the cause.
"""


class WifiBridgeError(Exception):
    """Base class for all bridge errors."""


class UnsupportedPlatformVersion(WifiBridgeError):
    """The platform lacks the API needed for the requested operation."""


class MalformedIdentifier(WifiBridgeError, ValueError):
    """A peer identifier (BSSID) is not six colon-separated hex octets."""

    def __init__(self, value: str):
        super().__init__(f"Malformed peer identifier: {value!r}")
        self.value = value


class CallbackNotRegistered(WifiBridgeError):
    """Unregistering a callback the platform no longer knows about.

    Unregistration races against platform-driven teardown, so callers treat
    this as benign.
    """


class RequestUnavailable(WifiBridgeError):
    """The platform could not satisfy a network request."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RequestTimeout(RequestUnavailable):
    """The platform gave up waiting for the network within the request timeout."""
